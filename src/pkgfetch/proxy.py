"""Proxy endpoint resolution."""

import ipaddress
import logging
import re
from functools import lru_cache
from typing import List, Optional, Tuple
from urllib.parse import quote, urlsplit

import idna

from pkgfetch.config import NO_PROXY, ProxyConfig
from pkgfetch.exceptions import ProxyConfigError
from pkgfetch.models import ProxyEndpoint, redact_url

logger = logging.getLogger(__name__)

_NO_PROXY_SPLIT = re.compile(r"[,\s]+")


@lru_cache(maxsize=128)
def _report_config_error(variable: str, value: str, reason: str) -> None:
    # Cached so that each distinct bad value is reported a single time.
    logger.warning(f"Ignoring {variable}={redact_url(value)!r}: {reason}")


def escape_credential(value: Optional[str]) -> Optional[str]:
    """Percent-encode a credential so ``@``, ``\\``, ``:`` and spaces survive in a URI."""
    if value is None:
        return None
    return quote(value, safe="")


def normalize_host(host: str) -> str:
    """Lower-case ASCII form of a host name (IDNA for international names)."""
    host = host.strip().strip("[]").rstrip(".").lower()
    if not host:
        return host
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    try:
        return idna.encode(host, uts46=True).decode("ascii")
    except idna.IDNAError:
        return host


def parse_proxy(raw: str, variable: str = "proxy") -> ProxyEndpoint:
    """
    Parse a proxy string into a ProxyEndpoint.

    A value without a scheme is treated as ``http://``.

    Raises:
        ProxyConfigError: If the value is not a usable proxy URI
    """
    value = raw.strip()
    if "://" not in value:
        value = f"http://{value}"

    try:
        parts = urlsplit(value)
        hostname = parts.hostname
    except ValueError as e:
        raise ProxyConfigError(f"malformed URI ({e})", variable=variable)
    try:
        port = parts.port
    except ValueError as e:
        raise ProxyConfigError(f"invalid port ({e})", variable=variable)
    if not hostname:
        raise ProxyConfigError("missing host", variable=variable)
    if parts.path not in ("", "/") or parts.query or parts.fragment:
        raise ProxyConfigError("unexpected path or query", variable=variable)

    return ProxyEndpoint(
        scheme=parts.scheme.lower(),
        host=hostname,
        port=port,
        user=parts.username,
        password=parts.password,
    )


def parse_no_proxy(value: Optional[str]) -> List[Tuple[str, Optional[int]]]:
    """
    Parse a no_proxy list into (host suffix, port) pairs.

    Malformed entries are reported and skipped. ``*`` is kept as-is.
    """
    entries: List[Tuple[str, Optional[int]]] = []
    if not value:
        return entries

    for entry in _NO_PROXY_SPLIT.split(value.strip()):
        if not entry:
            continue
        if entry == "*":
            entries.append(("*", None))
            continue
        if "/" in entry or "@" in entry:
            _report_config_error("no_proxy", entry, "not a host name")
            continue

        host, port, port_str = entry, None, None
        if entry.startswith("["):
            # [v6addr] or [v6addr]:port
            host, bracket, rest = entry[1:].partition("]")
            if not bracket or (rest and not rest.startswith(":")):
                _report_config_error("no_proxy", entry, "malformed IPv6 address")
                continue
            port_str = rest[1:] if rest else None
        elif entry.count(":") == 1:
            host, _, port_str = entry.partition(":")
        if port_str is not None:
            if not port_str.isdigit():
                _report_config_error("no_proxy", entry, "invalid port")
                continue
            port = int(port_str)

        host = normalize_host(host.lstrip("."))
        if not host:
            _report_config_error("no_proxy", entry, "empty host")
            continue
        entries.append((host, port))
    return entries


class ProxyResolver:
    """
    Derive the effective proxy for a target URI.

    Precedence: explicit proxy (or the configured default), then the
    scheme-specific environment value. A no_proxy match always wins.
    Resolution only reads the config; nothing is cached between calls.
    """

    def __init__(self, config: Optional[ProxyConfig] = None):
        self.config = config if config is not None else ProxyConfig.from_environ()

    def resolve(
        self, target_uri: str, explicit_proxy: Optional[str | ProxyEndpoint] = None
    ) -> Optional[ProxyEndpoint]:
        """
        Resolve the proxy endpoint for ``target_uri``.

        Args:
            target_uri: URI being fetched
            explicit_proxy: Proxy URL, ProxyEndpoint, ``:no_proxy`` or None

        Returns:
            ProxyEndpoint, or None for a direct connection
        """
        parts = urlsplit(target_uri)
        scheme = (parts.scheme or "http").lower()

        if self.bypasses(parts.hostname or "", parts.port):
            logger.debug(f"no_proxy matches {parts.hostname}, connecting directly")
            return None

        candidate = explicit_proxy if explicit_proxy is not None else self.config.default_proxy
        variable = "explicit proxy"
        if candidate is None:
            if scheme not in ("http", "https"):
                scheme = "http"
            candidate = self.config.proxy_for_scheme(scheme)
            variable = f"{scheme}_proxy"

        if candidate is None or candidate == NO_PROXY:
            return None
        if isinstance(candidate, ProxyEndpoint):
            return self._with_credentials(candidate)
        if not candidate.strip():
            # An empty value suppresses the proxy for this scheme.
            return None

        try:
            endpoint = parse_proxy(candidate, variable=variable)
        except ProxyConfigError as e:
            _report_config_error(variable, candidate, str(e))
            return None
        return self._with_credentials(endpoint)

    def _with_credentials(self, endpoint: ProxyEndpoint) -> ProxyEndpoint:
        if endpoint.has_credentials:
            return endpoint
        if self.config.proxy_user is None and self.config.proxy_pass is None:
            return endpoint
        return ProxyEndpoint(
            scheme=endpoint.scheme,
            host=endpoint.host,
            port=endpoint.port,
            user=escape_credential(self.config.proxy_user),
            password=escape_credential(self.config.proxy_pass),
        )

    def bypasses(self, host: str, port: Optional[int] = None) -> bool:
        """Check whether ``host`` matches an entry of no_proxy."""
        if not host:
            return False
        host = normalize_host(host)
        for suffix, entry_port in parse_no_proxy(self.config.no_proxy):
            if suffix == "*":
                return True
            if entry_port is not None and port is not None and entry_port != port:
                continue
            if host == suffix or host.endswith(f".{suffix}"):
                return True
        return False


def resolve(
    target_uri: str,
    explicit_proxy: Optional[str | ProxyEndpoint] = None,
    config: Optional[ProxyConfig] = None,
) -> Optional[ProxyEndpoint]:
    """Resolve a proxy with a one-off resolver."""
    return ProxyResolver(config).resolve(target_uri, explicit_proxy)
