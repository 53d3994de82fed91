"""HTTP server configuration."""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from shai_constants import DEFAULT_HTTP_HOST, DEFAULT_HTTP_PORT


@dataclass
class ServerConfig:
    host: str = DEFAULT_HTTP_HOST
    port: int = DEFAULT_HTTP_PORT
    max_sessions: int = 100
    # every session is torn down after its request, even with store=true
    ephemeral: bool = False
    idle_timeout: float = 1800.0
    sweep_interval: float = 60.0
    grace_period: float = 5.0
    event_window: int = 256
    subscriber_buffer: int = 1024
    response_ttl: float = 3600.0
    max_responses: int = 1000
    # browser origins allowed to call the API; none by default
    cors_origins: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__ and v is not None}
        config = cls(**known)
        config.port = int(config.port)
        config.max_sessions = int(config.max_sessions)
        config.ephemeral = bool(config.ephemeral)
        if isinstance(config.cors_origins, str):
            config.cors_origins = [o.strip() for o in config.cors_origins.split(",") if o.strip()]
        else:
            config.cors_origins = list(config.cors_origins)
        return config

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"
