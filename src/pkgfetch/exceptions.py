"""Structured exception taxonomy for the request layer."""


class FetchError(Exception):
    """Base exception for all pkgfetch errors."""

    pass


class ProxyConfigError(FetchError):
    """Malformed proxy or no_proxy configuration."""

    def __init__(self, message: str, variable: str | None = None):
        super().__init__(message)
        self.variable = variable


class NetworkError(FetchError):
    """Network-related errors (connection, timeout, DNS, etc.)."""

    def __init__(self, message: str, hostname: str | None = None, port: int | None = None):
        super().__init__(message)
        self.hostname = hostname
        self.port = port


# Transport failures are surfaced to callers under this name; they own retries.
TransportError = NetworkError


class ConnectionTimeoutError(NetworkError):
    """Connect or read timeout."""

    pass


class DNSResolutionError(NetworkError):
    """DNS resolution failed."""

    pass


class TLSHandshakeError(NetworkError):
    """TLS handshake failed."""

    pass


class CertificateVerificationError(TLSHandshakeError):
    """Peer certificate chain was rejected during the handshake."""

    def __init__(
        self,
        message: str,
        code: int,
        depth: int = 0,
        messages: list[str] | None = None,
        hostname: str | None = None,
        port: int | None = None,
    ):
        super().__init__(message, hostname=hostname, port=port)
        self.code = code
        self.depth = depth
        self.messages = messages or []


class CertificateError(FetchError):
    """Certificate parsing or loading errors."""

    pass


class CertificateParseError(CertificateError):
    """Error parsing certificate (DER/PEM)."""

    pass
