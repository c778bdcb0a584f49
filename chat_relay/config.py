import logging
import os
from typing import List, Optional


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        return max(minimum, float(os.environ.get(name, str(default))))
    except Exception:
        return default


class Settings:
    def __init__(self) -> None:
        # Language-model backend (OpenAI-compatible chat completions)
        self.backend_base_url: str = os.environ.get("BACKEND_BASE_URL", "http://localhost:11434")
        self.backend_model: str = os.environ.get("BACKEND_MODEL", "llama3.1")
        # Budget for the blocking call form; streaming is bounded by stream_timeout instead.
        self.backend_timeout: float = _float("BACKEND_TIMEOUT", 60.0, minimum=1.0)
        # Absolute wall-clock budget per streaming session, counted from session creation.
        self.stream_timeout: float = _float("STREAM_TIMEOUT_SECONDS", 120.0, minimum=1.0)
        # Machine credential (OAuth2 client_credentials) used when no end-user token is present
        self.token_url: Optional[str] = os.environ.get("TOKEN_URL")
        self.client_id: Optional[str] = os.environ.get("CLIENT_ID")
        self.client_secret: Optional[str] = os.environ.get("CLIENT_SECRET")
        self.token_scope: Optional[str] = os.environ.get("TOKEN_SCOPE")
        self.token_expiry_margin: float = _float("TOKEN_EXPIRY_MARGIN", 30.0)
        # Lifetime assumed when the identity authority omits expires_in
        self.token_default_ttl: float = _float("TOKEN_DEFAULT_TTL", 300.0, minimum=1.0)
        self.require_auth: bool = _flag("REQUIRE_AUTH", "0")
        origins_raw = os.environ.get("CORS_ALLOW_ORIGINS", "*")
        self.cors_allow_origins: List[str] = [o.strip() for o in origins_raw.split(",") if o.strip()]
        self.api_prefix: str = os.environ.get("API_PREFIX", "").rstrip("/")
        # Enable HTTP/2 to improve latency and throughput when supported by upstream.
        self.http2: bool = _flag("PROXY_HTTP2", "1")
        self.host: str = os.environ.get("HOST", "0.0.0.0")
        try:
            self.port: int = int(os.environ.get("PORT", "8080"))
        except Exception:
            self.port = 8080
        self.debug: bool = _flag("DEBUG_RELAY", "0")
        # Log every SSE frame written to clients (very verbose)
        self.debug_sse: bool = _flag("DEBUG_SSE", "0")

    @property
    def machine_identity_configured(self) -> bool:
        return bool(self.token_url and self.client_id)


def setup_logging(settings_: "Settings") -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings_.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # httpx logs every request line at INFO, including token endpoint calls
    logging.getLogger("httpx").setLevel(logging.DEBUG if settings_.debug else logging.WARNING)


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return "<none>"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


settings = Settings()
