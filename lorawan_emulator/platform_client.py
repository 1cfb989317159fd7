"""
HTTP client for the monitoring platform sync API

Used by the org-state puller, the push synchronizer and the credential
backfill agent. Every call is bearer-authenticated with the sync API key and
bounded by request_timeout_seconds.
"""
import json
import time
from typing import Optional, Any, Dict

import httpx
import structlog

from .config import Settings, get_settings
from .exceptions import NetworkError
from .envelope import RequestDiagnostics, redact_url
from .secrets import last4

logger = structlog.get_logger(__name__)


class PlatformResponse:
    """Raw outcome of one platform call, before any interpretation"""

    def __init__(
        self,
        endpoint: str,
        url: str,
        status_code: int,
        text: str,
        content_type: Optional[str],
        duration_ms: int,
        api_key: Optional[str] = None,
    ):
        self.endpoint = endpoint
        self.url = url
        self.status_code = status_code
        self.text = text
        self.content_type = content_type
        self.duration_ms = duration_ms
        self._api_key = api_key
        self._json: Any = None
        self._parsed = False

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Parsed body, or None when the body is not JSON"""
        if not self._parsed:
            self._parsed = True
            try:
                self._json = json.loads(self.text) if self.text else None
            except ValueError:
                self._json = None
        return self._json

    def diagnostics(self) -> RequestDiagnostics:
        return RequestDiagnostics.build(
            endpoint=self.endpoint,
            url=self.url,
            duration_ms=self.duration_ms,
            response_status=self.status_code,
            content_type=self.content_type,
            body=self.text,
            api_key=self._api_key,
        )


class PlatformClient:
    """
    Thin async wrapper over httpx for the platform API

    Raises ConfigMissingError when the base URL or sync key is absent, and
    NetworkError when no response was received. HTTP failures are returned,
    not raised.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport

    def _base_url(self) -> str:
        return self.settings.require("platform_base_url")

    def _api_key(self) -> str:
        return self.settings.require("sync_api_key")

    async def request(
        self,
        method: str,
        path: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Any] = None,
    ) -> PlatformResponse:
        base_url = self._base_url()
        api_key = self._api_key()
        url = f"{base_url}/{path.lstrip('/')}"

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.request_timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.request(
                    method, url, params=params, json=payload, headers=headers
                )
        except httpx.TimeoutException as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning(
                "platform_request_timeout",
                endpoint=endpoint,
                duration_ms=duration_ms,
                error=str(e)
            )
            raise NetworkError(
                f"Request to {endpoint} timed out after {duration_ms}ms",
                endpoint=endpoint,
                url=redact_url(url),
                duration_ms=duration_ms
            )
        except httpx.TransportError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning(
                "platform_request_failed",
                endpoint=endpoint,
                duration_ms=duration_ms,
                error=str(e)
            )
            raise NetworkError(
                f"Request to {endpoint} failed: {e}",
                endpoint=endpoint,
                url=redact_url(url),
                duration_ms=duration_ms
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "platform_request_complete",
            endpoint=endpoint,
            method=method,
            status_code=response.status_code,
            duration_ms=duration_ms,
            auth_key_last4=last4(api_key)
        )

        return PlatformResponse(
            endpoint=endpoint,
            url=str(response.request.url),
            status_code=response.status_code,
            text=response.text,
            content_type=response.headers.get("content-type"),
            duration_ms=duration_ms,
            api_key=api_key,
        )

    async def get(self, path: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> PlatformResponse:
        return await self.request("GET", path, endpoint, params=params)

    async def post(self, path: str, endpoint: str, payload: Any) -> PlatformResponse:
        return await self.request("POST", path, endpoint, payload=payload)
