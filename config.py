import os
import socket
from typing import Mapping, Optional

from pydantic import BaseModel

from constants import CONNECTION_TTL_SECONDS, MODE_DEVELOPMENT, MODE_PRODUCTION, TRANSPORT_GATEWAY, TRANSPORT_LOCAL
from errors import ConfigError
from logging_config import get_logger

logger = get_logger(__name__)


class Settings(BaseModel):
    mode: str = MODE_DEVELOPMENT
    version: str = "0.1.0"

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None

    stage: str = "unknown"
    metrics_namespace: str = "EphemeralChat"

    # Local transport: base URL the dispatcher uses to reach /dev/conn/{id}/send
    public_base_url: str = "http://localhost:8000"
    local_push_timeout: float = 5.0

    # Managed gateway transport
    gateway_endpoint_url: Optional[str] = None
    aws_region: Optional[str] = None

    connection_ttl_seconds: int = CONNECTION_TTL_SECONDS
    dispatch_timeout_seconds: float = 30.0
    dispatch_batch_size: int = 25
    dispatch_enabled: bool = True
    dispatch_consumer_name: str = "dispatcher"
    dispatch_poll_seconds: float = 1.0
    dispatch_max_redeliveries: int = 3
    dispatch_claim_idle_ms: int = 60000

    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def transport(self) -> str:
        return TRANSPORT_GATEWAY if self.mode == MODE_PRODUCTION else TRANSPORT_LOCAL


def _int(env: Mapping[str, str], name: str, default: int, min_val: int = None) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        val = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if min_val is not None and val < min_val:
        raise ConfigError(f"{name} must be >= {min_val}, got {val}")
    return val


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        val = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if val <= 0:
        raise ConfigError(f"{name} must be positive, got {val}")
    return val


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read the process environment once and validate it.

    Raises ConfigError with a descriptive message for anything missing or
    malformed, so the server refuses to start instead of failing on the
    first request.
    """
    env = os.environ if environ is None else environ

    mode = env.get("APP_MODE", MODE_DEVELOPMENT).strip().lower()
    if mode not in (MODE_DEVELOPMENT, MODE_PRODUCTION):
        raise ConfigError(f"APP_MODE must be '{MODE_DEVELOPMENT}' or '{MODE_PRODUCTION}', got {mode!r}")

    gateway_endpoint_url = env.get("GATEWAY_ENDPOINT_URL") or None
    aws_region = env.get("AWS_REGION") or None
    if mode == MODE_PRODUCTION and not gateway_endpoint_url:
        # Build the management endpoint from its parts, as the gateway documents it
        missing = [name for name in ("WS_API_ID", "WS_STAGE", "AWS_REGION") if not env.get(name)]
        if missing:
            raise ConfigError(
                f"Production mode needs GATEWAY_ENDPOINT_URL or {', '.join(missing)} to be set"
            )
        gateway_endpoint_url = (
            f"https://{env['WS_API_ID']}.execute-api.{env['AWS_REGION']}.amazonaws.com/{env['WS_STAGE']}"
        )

    settings = Settings(
        mode=mode,
        version=env.get("APP_VERSION", "0.1.0"),
        redis_host=env.get("REDIS_HOST", "localhost"),
        redis_port=_int(env, "REDIS_PORT", 6379, min_val=1),
        redis_password=env.get("REDIS_PASSWORD") or None,
        stage=env.get("STAGE", "unknown"),
        metrics_namespace=env.get("METRICS_NAMESPACE", "EphemeralChat"),
        public_base_url=env.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/"),
        local_push_timeout=_float(env, "LOCAL_PUSH_TIMEOUT_SECONDS", 5.0),
        gateway_endpoint_url=gateway_endpoint_url,
        aws_region=aws_region,
        connection_ttl_seconds=_int(env, "CONNECTION_TTL_SECONDS", CONNECTION_TTL_SECONDS, min_val=1),
        dispatch_timeout_seconds=_float(env, "DISPATCH_TIMEOUT_SECONDS", 30.0),
        dispatch_batch_size=_int(env, "DISPATCH_BATCH_SIZE", 25, min_val=1),
        dispatch_enabled=env.get("DISPATCH_ENABLED", "true").lower() == "true",
        # One consumer per process in the shared dispatch group
        dispatch_consumer_name=env.get("DISPATCH_CONSUMER_NAME") or f"{socket.gethostname()}-{os.getpid()}",
        dispatch_poll_seconds=_float(env, "DISPATCH_POLL_SECONDS", 1.0),
        dispatch_max_redeliveries=_int(env, "DISPATCH_MAX_REDELIVERIES", 3, min_val=0),
        dispatch_claim_idle_ms=_int(env, "DISPATCH_CLAIM_IDLE_MS", 60000, min_val=0),
        host=env.get("HOST", "0.0.0.0"),
        port=_int(env, "PORT", 8000, min_val=1),
    )
    logger.info(
        f"Settings loaded: mode={settings.mode}, transport={settings.transport}, "
        f"redis={settings.redis_host}:{settings.redis_port}, stage={settings.stage}"
    )
    return settings
