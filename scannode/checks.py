"""Start-up checks of the configured API endpoints."""

from __future__ import annotations

from urllib.parse import urlsplit

_WEBSOCKET_SCHEMES = frozenset({"ws", "wss"})
_HTTP_SCHEMES = frozenset({"http", "https"})


class BadProxyAPIError(ValueError):
    """The proxy API is unusable for a websocket scan API."""

    def __init__(
        self, message: str = "proxy api must be specified as http(s) when scan api is websocket"
    ) -> None:
        super().__init__(message)


def _scheme(raw_url: str, what: str) -> str:
    try:
        return urlsplit(raw_url).scheme
    except ValueError as exc:
        raise ValueError(f"invalid {what} api url: {exc}") from exc


def check_proxy_against_scan(scan: str, proxy: str) -> None:
    """Require an HTTP(S) proxy API when the scan API is a websocket."""
    if _scheme(scan, "scan") not in _WEBSOCKET_SCHEMES:
        return
    if not proxy:
        raise BadProxyAPIError()
    if _scheme(proxy, "proxy") not in _HTTP_SCHEMES:
        raise BadProxyAPIError()