"""
Secret Loader

Resolves externally supplied credentials (platform sync key, TTN provisioning
key, webhook secrets) with a fallback chain:
1. Docker secrets (/run/secrets/<secret_name>)
2. Environment variable with _FILE suffix pointing to a file
3. Direct environment variable
4. Default value (if provided)

Secrets are never logged; only the source they were read from.
"""
import os
from pathlib import Path
from typing import Optional
import structlog

logger = structlog.get_logger()

SECRETS_DIR = Path("/run/secrets")


def _read_secret_file(path: Path, secret_name: str, source: str) -> Optional[str]:
    try:
        value = path.read_text().strip()
    except OSError as e:
        logger.error(
            "secret_read_error",
            secret_name=secret_name,
            path=str(path),
            error=str(e)
        )
        return None

    logger.debug("secret_loaded", secret_name=secret_name, source=source)
    return value or None


def load_secret(
    secret_name: str,
    default: Optional[str] = None,
    secrets_dir: Path = SECRETS_DIR
) -> Optional[str]:
    """
    Load secret from Docker secrets, file, or environment variable

    Args:
        secret_name: Name of the secret (e.g., "sync_api_key")
        default: Value returned when no source provides the secret
        secrets_dir: Directory holding mounted secret files

    Returns:
        Secret value, or default when not found

    Raises:
        FileNotFoundError: If <NAME>_FILE points to a non-existent file
    """
    normalized = secret_name.lower().replace("-", "_")
    env_var_name = normalized.upper()

    # 1. Docker secrets
    docker_secret_path = secrets_dir / normalized
    if docker_secret_path.exists():
        value = _read_secret_file(docker_secret_path, normalized, "docker_secret")
        if value:
            return value

    # 2. <NAME>_FILE
    env_file_var = f"{env_var_name}_FILE"
    env_file_path_str = os.getenv(env_file_var)
    if env_file_path_str:
        env_file_path = Path(env_file_path_str)
        if not env_file_path.exists():
            raise FileNotFoundError(
                f"Secret file specified by {env_file_var}={env_file_path_str} does not exist"
            )
        value = _read_secret_file(env_file_path, normalized, "env_file")
        if value:
            return value

    # 3. <NAME>
    env_value = os.getenv(env_var_name)
    if env_value:
        logger.debug("secret_loaded", secret_name=normalized, source="env_var")
        return env_value

    if default is not None:
        logger.debug("secret_loaded", secret_name=normalized, source="default")
        return default

    logger.debug("secret_not_found", secret_name=normalized)
    return None


def last4(secret: Optional[str]) -> Optional[str]:
    """Fingerprint of a secret that is safe to log or return to the UI"""
    if not secret:
        return None
    return secret[-4:]
