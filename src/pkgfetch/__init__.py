"""HTTP request layer for fetching package index and package data."""

__version__ = "0.1.0"

from pkgfetch.config import NO_PROXY, ProxyConfig, TLSConfig  # noqa: E402
from pkgfetch.fetcher import Fetcher, fetch  # noqa: E402
from pkgfetch.models import PendingRequest, ProxyEndpoint, RequestKind, Response  # noqa: E402

__all__ = [
    "NO_PROXY",
    "Fetcher",
    "PendingRequest",
    "ProxyConfig",
    "ProxyEndpoint",
    "RequestKind",
    "Response",
    "TLSConfig",
    "fetch",
    "__version__",
]
