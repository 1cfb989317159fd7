"""
Webhook Secret Validation
Checks the x-webhook-secret header against the secret registered for the
integration application
"""
import hmac
import logging
from typing import Optional

import asyncpg

from .exceptions import AuthError, DatabaseError
from .metrics import track_webhook_auth_failure

logger = logging.getLogger(__name__)

WEBHOOK_SECRET_HEADER = "x-webhook-secret"


async def verify_webhook_secret(
    provided: Optional[str],
    application_id: Optional[str],
    repository,
    require_secret: bool = False
) -> bool:
    """
    Verify the shared webhook secret for an application

    Args:
        provided: Value of the x-webhook-secret header (None if absent)
        application_id: TTN application id from the uplink
        repository: Object with get_webhook_secret(application_id)
        require_secret: Reject applications that have no registered secret

    Returns:
        True if the secret matches or none is registered

    Raises:
        AuthError: AUTH_MISSING when a secret is registered but the header is
            absent, AUTH_INVALID when the header does not match
        DatabaseError: if the secret lookup fails
    """
    expected = None
    if application_id:
        try:
            expected = await repository.get_webhook_secret(application_id)
        except (asyncpg.PostgresError, DatabaseError, OSError) as e:
            logger.error(f"Error loading webhook secret for {application_id}: {e}")
            raise DatabaseError("Failed to verify webhook secret", operation="get_webhook_secret")

    if not expected:
        if require_secret:
            logger.warning(f"Rejecting uplink: no webhook secret registered for application {application_id}")
            track_webhook_auth_failure("not_configured")
            raise AuthError(
                "No webhook secret registered for this application",
                error_code="AUTH_NOT_CONFIGURED"
            )
        logger.debug(f"No webhook secret registered for application {application_id}")
        return True

    if not provided:
        logger.warning(f"Missing webhook secret for application {application_id}")
        track_webhook_auth_failure("missing")
        raise AuthError("Missing webhook secret", error_code="AUTH_MISSING")

    # Constant-time comparison
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.error(f"Invalid webhook secret for application {application_id}")
        track_webhook_auth_failure("invalid")
        raise AuthError("Invalid webhook secret", error_code="AUTH_INVALID")

    logger.debug(f"Webhook secret verified for application {application_id}")
    return True
