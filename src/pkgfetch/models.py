"""Data models for the request layer."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from urllib.parse import unquote, urlsplit

if TYPE_CHECKING:
    from pkgfetch.proxy import ProxyResolver

REDACTED = "REDACTED"
OAUTH_BASIC = "x-oauth-basic"

DEFAULT_PORTS = {"http": 80, "https": 443}


class RequestKind(str, Enum):
    """HTTP request class."""

    GET = "GET"
    HEAD = "HEAD"

    @classmethod
    def coerce(cls, kind: Optional["RequestKind | str"]) -> "RequestKind":
        if kind is None:
            return cls.GET
        if isinstance(kind, cls):
            return kind
        return cls(str(kind).upper())

    @property
    def expects_body(self) -> bool:
        return self is not RequestKind.HEAD


def _netloc(host: str, port: Optional[int]) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"{host}:{port}" if port is not None else host


def redact_userinfo(user: Optional[str], password: Optional[str]) -> Optional[str]:
    """
    Redact the credential part of a userinfo component.

    A password is replaced, keeping the user. A bare token (user without
    password) or an OAuth-style ``token:x-oauth-basic`` pair has the user
    slot replaced instead, keeping the marker.

    Returns:
        Redacted userinfo, or None when there is nothing to show
    """
    if user is None and password is None:
        return None
    if password == OAUTH_BASIC:
        return f"{REDACTED}:{OAUTH_BASIC}"
    if password is None:
        return REDACTED
    return f"{user or ''}:{REDACTED}"


def redact_url(url: str) -> str:
    """Return ``url`` with its userinfo redacted."""
    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url
    userinfo, hostinfo = parts.netloc.rsplit("@", 1)
    user, sep, password = userinfo.partition(":")
    redacted = redact_userinfo(user, password if sep else None)
    return parts._replace(netloc=f"{redacted}@{hostinfo}").geturl()


@dataclass(frozen=True, repr=False)
class ProxyEndpoint:
    """Resolved proxy endpoint. Credentials are stored percent-encoded."""

    scheme: str
    host: str
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None

    @property
    def decoded_user(self) -> Optional[str]:
        return unquote(self.user) if self.user is not None else None

    @property
    def decoded_password(self) -> Optional[str]:
        return unquote(self.password) if self.password is not None else None

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        return DEFAULT_PORTS.get(self.scheme, 80)

    @property
    def has_credentials(self) -> bool:
        return self.user is not None or self.password is not None

    def _render(self, userinfo: Optional[str]) -> str:
        prefix = f"{userinfo}@" if userinfo else ""
        return f"{self.scheme}://{prefix}{_netloc(self.host, self.port)}"

    @property
    def url(self) -> str:
        """Full proxy URL, credentials included (percent-encoded)."""
        userinfo = None
        if self.has_credentials:
            userinfo = self.user or ""
            if self.password is not None:
                userinfo += f":{self.password}"
        return self._render(userinfo)

    @property
    def url_without_credentials(self) -> str:
        return self._render(None)

    @property
    def redacted(self) -> str:
        return self._render(redact_userinfo(self.user, self.password))

    def __str__(self) -> str:
        return self.url

    def __repr__(self) -> str:
        return f"ProxyEndpoint({self.redacted!r})"


@dataclass(frozen=True)
class PendingRequest:
    """Outbound request owned by the caller of the fetcher."""

    uri: str
    proxy: Optional[ProxyEndpoint] = None
    last_modified: Optional[datetime] = None
    kind: RequestKind = RequestKind.GET

    @classmethod
    def create(
        cls,
        uri: str,
        kind: Optional[RequestKind | str] = None,
        last_modified: Optional[datetime] = None,
        explicit_proxy: Optional[str | ProxyEndpoint] = None,
        resolver: Optional["ProxyResolver"] = None,
    ) -> "PendingRequest":
        """
        Build a request with its proxy resolved up front.

        Args:
            uri: Target URI
            kind: Request class (defaults to GET)
            last_modified: Timestamp for a conditional GET
            explicit_proxy: Proxy URL, ProxyEndpoint, or the ``:no_proxy`` sentinel
            resolver: ProxyResolver to use (defaults to one built from the environment)

        Returns:
            PendingRequest
        """
        if resolver is None:
            from pkgfetch.proxy import ProxyResolver

            resolver = ProxyResolver()

        return cls(
            uri=uri,
            proxy=resolver.resolve(uri, explicit_proxy),
            last_modified=last_modified,
            kind=RequestKind.coerce(kind),
        )

    @property
    def method(self) -> str:
        return self.kind.value

    def __repr__(self) -> str:
        return (
            f"PendingRequest(uri={redact_url(self.uri)!r}, proxy={self.proxy!r}, "
            f"last_modified={self.last_modified!r}, kind={self.kind.value})"
        )


@dataclass(frozen=True)
class PoolKey:
    """Identity of a reusable connection slot."""

    host: str
    port: int
    proxy: Optional[ProxyEndpoint]
    use_tls: bool

    @classmethod
    def for_request(cls, request: PendingRequest) -> "PoolKey":
        parts = urlsplit(request.uri)
        scheme = (parts.scheme or "http").lower()
        port = parts.port or DEFAULT_PORTS.get(scheme, 80)
        return cls(
            host=(parts.hostname or "").lower(),
            port=port,
            proxy=request.proxy,
            use_tls=scheme == "https",
        )

    def __str__(self) -> str:
        scheme = "https" if self.use_tls else "http"
        via = f" via {self.proxy.redacted}" if self.proxy else ""
        return f"{scheme}://{_netloc(self.host, self.port)}{via}"


@dataclass
class CertificateFailure:
    """A certificate verification failure observed during a TLS handshake."""

    code: int
    depth: int = 0
    subject: Optional[str] = None
    issuer: Optional[str] = None
    not_before: Optional[datetime] = None
    reason: str = ""

    @property
    def has_certificate(self) -> bool:
        return self.subject is not None or self.issuer is not None


@dataclass
class VerifyDecision:
    """Outcome of a verification failure: always abort, with diagnostics."""

    abort: bool = True
    messages: List[str] = field(default_factory=list)


@dataclass
class Response:
    """Response returned to collaborators."""

    code: int
    body: bytes = b""
    headers: Dict[str, Any] = field(default_factory=dict)

    @property
    def not_modified(self) -> bool:
        return self.code == 304
