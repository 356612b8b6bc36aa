"""Client configuration."""

import logging
import os
from dataclasses import dataclass

import dotenv
import httpx

from .endpoint import Endpoint, resolve_endpoint
from .errors import ConfigError


def _float_env(name: str, default: float | None) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    if raw.lower() in ("none", "off"):
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {raw!r}")
    return value


@dataclass
class ClientSettings:
    """Client settings with environment variable overrides."""

    # Server; None or empty means http://localhost:11434
    host: str | None = None
    model: str = "granite3-moe:1b"

    # Transport timeouts in seconds; None waits forever
    connect_timeout: float | None = 5.0
    read_timeout: float | None = None

    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "ClientSettings":
        dotenv.load_dotenv(env_file or dotenv.find_dotenv(usecwd=True))
        return cls(
            host=os.getenv("OLLAMA_HOST", cls.host),
            model=os.getenv("OLLAMA_MODEL", cls.model),
            connect_timeout=_float_env("OLLAMA_CONNECT_TIMEOUT", cls.connect_timeout),
            read_timeout=_float_env("OLLAMA_READ_TIMEOUT", cls.read_timeout),
            log_level=os.getenv("OLLAMA_LOG_LEVEL", cls.log_level).upper(),
        )

    def endpoint(self) -> Endpoint:
        return resolve_endpoint(self.host)

    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(None, connect=self.connect_timeout, read=self.read_timeout)


def configure_logging(level: str = "INFO") -> None:
    """Set up stdout logging for applications embedding the client."""
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s", datefmt="%H:%M:%S")
    logging.getLogger("httpx").setLevel(logging.WARNING)
