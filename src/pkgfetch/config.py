"""Configuration value objects read once from the environment."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

# Sentinel accepted wherever a proxy can be given explicitly: force a direct connection.
NO_PROXY = ":no_proxy"


def _first_set(environ: Mapping[str, str], *names: str) -> Optional[str]:
    """Return the first variable that is set, even when it is empty."""
    for name in names:
        value = environ.get(name)
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class ProxyConfig:
    """
    Proxy settings, replacing direct environment lookups.

    Each ``*_proxy`` field keeps the difference between "unset" (None) and
    "set to empty" (""), since an empty value suppresses the proxy.
    """

    http_proxy: Optional[str] = None
    https_proxy: Optional[str] = None
    proxy_user: Optional[str] = None
    proxy_pass: Optional[str] = None
    no_proxy: Optional[str] = None
    # Proxy from the client's own configuration file, used when no explicit proxy is passed.
    default_proxy: Optional[str] = None

    @classmethod
    def from_environ(
        cls, environ: Optional[Mapping[str, str]] = None, default_proxy: Optional[str] = None
    ) -> "ProxyConfig":
        """
        Build a ProxyConfig from environment variables.

        Lower-case variants are checked before upper-case ones.

        Args:
            environ: Mapping to read (defaults to os.environ)
            default_proxy: Configured proxy from the client's config file

        Returns:
            ProxyConfig
        """
        if environ is None:
            environ = os.environ
        return cls(
            http_proxy=_first_set(environ, "http_proxy", "HTTP_PROXY"),
            https_proxy=_first_set(environ, "https_proxy", "HTTPS_PROXY"),
            proxy_user=_first_set(environ, "http_proxy_user", "HTTP_PROXY_USER"),
            proxy_pass=_first_set(environ, "http_proxy_pass", "HTTP_PROXY_PASS"),
            no_proxy=_first_set(environ, "no_proxy", "NO_PROXY"),
            default_proxy=default_proxy,
        )

    def proxy_for_scheme(self, scheme: str) -> Optional[str]:
        if scheme.lower() == "https":
            return self.https_proxy
        return self.http_proxy


@dataclass(frozen=True)
class TLSConfig:
    """Certificate store and handshake settings for TLS pool entries."""

    ca_bundle: Optional[Path] = None
    cert_files: Tuple[Path, ...] = field(default_factory=tuple)
    client_cert: Optional[Path] = None
    timeout: float = 10.0

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "TLSConfig":
        if environ is None:
            environ = os.environ
        ca_bundle = environ.get("PKGFETCH_CA_BUNDLE") or None
        client_cert = environ.get("PKGFETCH_CLIENT_CERT") or None
        return cls(
            ca_bundle=Path(ca_bundle) if ca_bundle else None,
            client_cert=Path(client_cert) if client_cert else None,
        )

    @property
    def trust_files(self) -> Tuple[Path, ...]:
        """Certificate files loaded on top of the OS default store."""
        files = list(self.cert_files)
        if self.ca_bundle is not None:
            files.append(self.ca_bundle)
        return tuple(files)
