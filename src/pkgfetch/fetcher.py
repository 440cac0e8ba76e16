"""Request orchestration: proxy, pooled connection, build, send."""

import logging
import threading
from datetime import datetime
from typing import Optional

from pkgfetch.certificate import CertificateVerifier
from pkgfetch.config import ProxyConfig, TLSConfig
from pkgfetch.exceptions import CertificateVerificationError, NetworkError
from pkgfetch.http_client import Transport
from pkgfetch.models import PendingRequest, PoolKey, ProxyEndpoint, RequestKind, Response
from pkgfetch.pool import ConnectionPool
from pkgfetch.proxy import ProxyResolver
from pkgfetch.request import RequestBuilder

logger = logging.getLogger(__name__)


class Fetcher:
    """
    Fetch remote index and package data.

    Transport and TLS failures are raised; any HTTP status is returned as a
    Response. Nothing is retried here.
    """

    def __init__(
        self,
        proxy_config: Optional[ProxyConfig] = None,
        tls_config: Optional[TLSConfig] = None,
        transport: Optional[Transport] = None,
        builder: Optional[RequestBuilder] = None,
        verifier: Optional[CertificateVerifier] = None,
    ):
        self.resolver = ProxyResolver(proxy_config)
        self.pool = ConnectionPool(transport=transport, tls_config=tls_config)
        self.builder = builder if builder is not None else RequestBuilder()
        self.verifier = verifier if verifier is not None else CertificateVerifier()

    def request(
        self,
        uri: str,
        request_kind: Optional[RequestKind | str] = None,
        last_modified: Optional[datetime] = None,
        explicit_proxy: Optional[str | ProxyEndpoint] = None,
    ) -> PendingRequest:
        """Create a PendingRequest with this fetcher's proxy configuration."""
        return PendingRequest.create(uri, request_kind, last_modified, explicit_proxy, resolver=self.resolver)

    def fetch(self, request: PendingRequest) -> Response:
        """
        Send ``request`` and return the response.

        Args:
            request: Request with its proxy already resolved

        Returns:
            Response (304 and HEAD responses carry an empty body)

        Raises:
            CertificateVerificationError: If the peer chain is rejected
            NetworkError: On connect/read failures and timeouts
        """
        key = PoolKey.for_request(request)
        headers, log_line = self.builder.build(request)
        logger.info(log_line)

        conn = self.pool.acquire(key)
        try:
            response = conn.send(request.method, self.builder.target_url(request), headers)
        except CertificateVerificationError as e:
            self.pool.discard(key, conn)
            raise self._verification_failed(key, e) from e
        except BaseException:
            self.pool.discard(key, conn)
            raise
        self.pool.release(key, conn)

        logger.debug(f"{request.method} {key} -> {response.code}")
        if response.code == 304 or not request.kind.expects_body:
            response.body = b""
        return response

    def _verification_failed(
        self, key: PoolKey, error: CertificateVerificationError
    ) -> CertificateVerificationError:
        reason = str(error)
        try:
            chain = self.pool.transport.peer_chain(key)
        except NetworkError as e:
            logger.debug(f"Could not recover the certificate chain of {key}: {e}")
            chain = []

        decision, depth = self.verifier.diagnose(error.code, reason, chain)
        return CertificateVerificationError(
            "\n".join(decision.messages),
            code=error.code,
            depth=depth,
            messages=decision.messages,
            hostname=key.host,
            port=key.port,
        )

    def close(self) -> None:
        self.pool.close()


_default_fetcher: Optional[Fetcher] = None
_default_lock = threading.Lock()


def get_fetcher() -> Fetcher:
    """Process-wide fetcher configured from the environment."""
    global _default_fetcher
    with _default_lock:
        if _default_fetcher is None:
            _default_fetcher = Fetcher(
                proxy_config=ProxyConfig.from_environ(),
                tls_config=TLSConfig.from_environ(),
            )
        return _default_fetcher


def fetch(
    uri: str,
    request_kind: Optional[RequestKind | str] = None,
    last_modified: Optional[datetime] = None,
    explicit_proxy: Optional[str | ProxyEndpoint] = None,
    fetcher: Optional[Fetcher] = None,
) -> Response:
    """
    Fetch ``uri``; the entry point for collaborators.

    Collaborators own retry policy, redirect handling, and body decoding.
    """
    if fetcher is None:
        fetcher = get_fetcher()
    return fetcher.fetch(fetcher.request(uri, request_kind, last_modified, explicit_proxy))
