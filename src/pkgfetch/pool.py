"""Connection reuse keyed by destination, proxy and TLS."""

import logging
import ssl
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Set

from pkgfetch.config import TLSConfig
from pkgfetch.exceptions import CertificateError
from pkgfetch.http_client import Connection, HttpxTransport, Transport
from pkgfetch.models import PoolKey, Response

logger = logging.getLogger(__name__)


def build_ssl_context(tls_config: Optional[TLSConfig] = None) -> ssl.SSLContext:
    """
    Create the SSL context shared by all TLS pool entries.

    Starts from the OS default store and adds every configured certificate
    file. Peer verification and hostname checking are always on.

    Args:
        tls_config: Certificate files and client certificate

    Returns:
        Configured ssl.SSLContext
    """
    if tls_config is None:
        tls_config = TLSConfig()

    context = ssl.create_default_context()
    context.verify_mode = ssl.CERT_REQUIRED
    context.check_hostname = True

    for cert_file in tls_config.trust_files:
        if not cert_file.is_file():
            logger.warning(f"Certificate file {cert_file} does not exist, skipping")
            continue
        try:
            context.load_verify_locations(cafile=str(cert_file))
        except (OSError, ssl.SSLError) as e:
            raise CertificateError(f"Cannot load trusted certificates from {cert_file}: {e}")
        logger.debug(f"Added trusted certificates from {cert_file}")

    if tls_config.client_cert is not None:
        try:
            context.load_cert_chain(str(tls_config.client_cert))
        except (OSError, ssl.SSLError) as e:
            raise CertificateError(f"Cannot load client certificate {tls_config.client_cert}: {e}")
        logger.debug(f"Using client certificate {tls_config.client_cert}")

    return context


@dataclass(eq=False)
class PooledConnection:
    """A transport connection owned by the pool."""

    key: PoolKey
    connection: Connection
    pooled: bool = True
    in_use: bool = False

    def send(self, method: str, url: str, headers: Dict[str, str]) -> Response:
        return self.connection.send(method, url, headers)

    def close(self) -> None:
        self.connection.close()


class ConnectionPool:
    """
    Reuse one connection per PoolKey across sequential requests.

    A request for a key whose connection is busy gets a fresh connection that
    lives outside the pool and is closed on release, so a connection is never
    handed to two callers at once. Nothing outlives the process.
    """

    def __init__(self, transport: Optional[Transport] = None, tls_config: Optional[TLSConfig] = None):
        self.tls_config = tls_config if tls_config is not None else TLSConfig()
        self.transport = transport if transport is not None else HttpxTransport(timeout=self.tls_config.timeout)
        self._lock = threading.Lock()
        self._idle: Dict[PoolKey, PooledConnection] = {}
        self._busy: Set[PoolKey] = set()
        self._ssl_context: Optional[ssl.SSLContext] = None
        # Certificate files are read under this lock only, never under _lock.
        self._context_lock = threading.Lock()

    @property
    def ssl_context(self) -> ssl.SSLContext:
        """SSL context for TLS keys, built on first use."""
        with self._context_lock:
            if self._ssl_context is None:
                self._ssl_context = build_ssl_context(self.tls_config)
            return self._ssl_context

    def acquire(self, key: PoolKey) -> PooledConnection:
        """
        Check out a connection for ``key``.

        Returns:
            The idle pooled connection for the key, a new pooled connection if
            the key has none, or a pool-external connection if it is busy

        Raises:
            CertificateError: If the configured certificate files cannot be loaded
        """
        context = self.ssl_context if key.use_tls else None

        with self._lock:
            idle = self._idle.pop(key, None)
            if idle is not None:
                idle.in_use = True
                self._busy.add(key)
                logger.debug(f"Reusing connection to {key}")
                return idle
            pooled = key not in self._busy
            if pooled:
                self._busy.add(key)

        if not pooled:
            logger.debug(f"Connection to {key} is busy, opening an extra one")

        try:
            connection = self.transport.connect(key, context)
        except Exception:
            if pooled:
                with self._lock:
                    self._busy.discard(key)
            raise
        return PooledConnection(key=key, connection=connection, pooled=pooled, in_use=True)

    def release(self, key: PoolKey, conn: PooledConnection) -> None:
        """Return a connection after a completed request."""
        conn.in_use = False
        if not conn.pooled:
            conn.close()
            return
        with self._lock:
            self._busy.discard(key)
            self._idle[key] = conn

    def discard(self, key: PoolKey, conn: PooledConnection) -> None:
        """Close a connection that must not be reused (timeouts, TLS failures)."""
        conn.in_use = False
        try:
            conn.close()
        finally:
            if conn.pooled:
                with self._lock:
                    self._busy.discard(key)
                    if self._idle.get(key) is conn:
                        del self._idle[key]
        logger.debug(f"Discarded connection to {key}")

    def close(self) -> None:
        """Close every idle connection."""
        with self._lock:
            idle = list(self._idle.values())
            self._idle.clear()
        for conn in idle:
            conn.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._idle)

    def __contains__(self, key: PoolKey) -> bool:
        with self._lock:
            return key in self._idle or key in self._busy
