"""Resolve the base address of the model server."""

from __future__ import annotations

import re
from dataclasses import dataclass

import httpx

from .errors import ConfigError

DEFAULT_ENDPOINT = "http://localhost:11434"

# OLLAMA_HOST is commonly given as "host:port" without a scheme.
_BARE_HOST = re.compile(r"^[A-Za-z0-9._-]+(:\d+)?(/.*)?$|^\[[0-9A-Fa-f:.]+\](:\d+)?(/.*)?$")


@dataclass(frozen=True)
class Endpoint:
    """A validated server base URL, without a trailing slash."""
    url: str

    def url_for(self, path: str) -> str:
        return f"{self.url}/{path.lstrip('/')}"

    def __str__(self) -> str:
        return self.url


def resolve_endpoint(override: str | None = None) -> Endpoint:
    """Return the endpoint for ``override``, or the local default.

    An empty or blank override counts as absent. Raises ConfigError when the
    override is not an absolute http(s) URL with a host.
    """
    raw = (override or "").strip()
    if not raw:
        return Endpoint(DEFAULT_ENDPOINT)
    if "://" not in raw and _BARE_HOST.match(raw):
        raw = f"http://{raw}"

    try:
        url = httpx.URL(raw)
    except (httpx.InvalidURL, ValueError) as exc:
        raise ConfigError(f"invalid endpoint URL {override!r}: {exc}") from exc

    if url.scheme not in ("http", "https"):
        raise ConfigError(f"invalid endpoint URL {override!r}: scheme must be http or https")
    if not url.host:
        raise ConfigError(f"invalid endpoint URL {override!r}: missing host")
    if url.query or url.fragment:
        raise ConfigError(f"invalid endpoint URL {override!r}: query and fragment are not allowed")

    return Endpoint(str(url).rstrip("/"))
