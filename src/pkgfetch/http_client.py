"""HTTP transport built on httpx, with proxy support."""

import logging
import ssl
from typing import Dict, List, Optional, Protocol

import httpx

from pkgfetch.exceptions import (
    CertificateVerificationError,
    ConnectionTimeoutError,
    NetworkError,
    TLSHandshakeError,
)
from pkgfetch.models import PoolKey, ProxyEndpoint, Response
from pkgfetch.network import fetch_peer_chain

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """A live connection able to carry sequential requests."""

    def send(self, method: str, url: str, headers: Dict[str, str]) -> Response: ...

    def close(self) -> None: ...


class Transport(Protocol):
    """Capability used by the pool and fetcher to reach the network."""

    def connect(self, key: PoolKey, ssl_context: Optional[ssl.SSLContext]) -> Connection: ...

    def peer_chain(self, key: PoolKey) -> List[bytes]: ...


def create_http_client(
    proxy: Optional[ProxyEndpoint] = None,
    timeout: float = 10.0,
    verify: ssl.SSLContext | bool = True,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """
    Create HTTP client for a single pool slot.

    Args:
        proxy: Resolved proxy endpoint or None for a direct connection
        timeout: Connect/read timeout in seconds
        verify: SSL context for TLS destinations
        transport: Replacement httpx transport (tests)

    Returns:
        Configured httpx.Client
    """
    client_kwargs = {
        "timeout": timeout,
        "follow_redirects": False,
        # Proxy resolution is done by ProxyResolver, never by httpx itself.
        "trust_env": False,
        "verify": verify,
    }

    if proxy is not None:
        client_kwargs["proxy"] = proxy.url
    if transport is not None:
        client_kwargs["transport"] = transport

    return httpx.Client(**client_kwargs)


def _find_cause(exc: BaseException, exc_type: type) -> Optional[BaseException]:
    """Walk an exception's cause chain looking for an instance of ``exc_type``."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, exc_type):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None


def find_verification_error(exc: BaseException) -> Optional[ssl.SSLCertVerificationError]:
    return _find_cause(exc, ssl.SSLCertVerificationError)


class HttpxConnection:
    """Connection backed by an httpx.Client (which keeps the socket alive between requests)."""

    def __init__(self, client: httpx.Client, key: PoolKey):
        self.client = client
        self.key = key

    def send(self, method: str, url: str, headers: Dict[str, str]) -> Response:
        hostname, port = self.key.host, self.key.port
        # Bodies are handed over exactly as sent; decompression is left to the caller.
        request_headers = {"Accept-Encoding": "identity", **headers}
        try:
            with self.client.stream(method, url, headers=request_headers) as response:
                body = b"".join(response.iter_raw())
        except httpx.TimeoutException as e:
            raise ConnectionTimeoutError(f"Timeout talking to {self.key}: {e}", hostname=hostname, port=port)
        except httpx.ConnectError as e:
            verify_error = find_verification_error(e)
            if verify_error is not None:
                reason = getattr(verify_error, "verify_message", None) or str(verify_error)
                raise CertificateVerificationError(
                    reason,
                    code=getattr(verify_error, "verify_code", None) or 0,
                    hostname=hostname,
                    port=port,
                )
            if _find_cause(e, ssl.SSLError) is not None:
                raise TLSHandshakeError(f"TLS handshake failed: {e}", hostname=hostname, port=port)
            raise NetworkError(f"Cannot connect to {self.key}: {e}", hostname=hostname, port=port)
        except httpx.TransportError as e:
            raise NetworkError(f"Transport failure talking to {self.key}: {e}", hostname=hostname, port=port)
        except httpx.RequestError as e:
            raise NetworkError(f"Request to {self.key} failed: {e}", hostname=hostname, port=port)

        return Response(
            code=response.status_code,
            body=body,
            headers=dict(response.headers),
        )

    def close(self) -> None:
        self.client.close()


class HttpxTransport:
    """Default Transport: one httpx.Client per pool slot."""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    def connect(self, key: PoolKey, ssl_context: Optional[ssl.SSLContext]) -> HttpxConnection:
        logger.debug(f"Opening connection to {key}")
        client = create_http_client(
            proxy=key.proxy,
            timeout=self.timeout,
            verify=ssl_context if ssl_context is not None else True,
            transport=self._transport,
        )
        return HttpxConnection(client, key)

    def peer_chain(self, key: PoolKey) -> List[bytes]:
        return fetch_peer_chain(key.host, key.port, proxy=key.proxy, timeout=self.timeout)
