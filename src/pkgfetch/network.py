"""Network operations for recovering a peer's certificate chain."""

import logging
import socket
import ssl
import subprocess
from typing import List, Optional

from pkgfetch.exceptions import (
    ConnectionTimeoutError,
    DNSResolutionError,
    NetworkError,
    TLSHandshakeError,
)
from pkgfetch.models import ProxyEndpoint
from pkgfetch.request import basic_auth_header

logger = logging.getLogger(__name__)

_PEM_START = b"-----BEGIN CERTIFICATE-----"
_PEM_END = b"-----END CERTIFICATE-----"


def _extract_chain_via_openssl(
    host: str, port: int, timeout: float, proxy: Optional[ProxyEndpoint] = None
) -> List[bytes]:
    """
    Extract certificate chain using OpenSSL command line tool.
    This is a fallback when the ssl module cannot expose the unverified chain.

    Args:
        host: Target hostname
        port: Target port
        timeout: Connection timeout
        proxy: Proxy to tunnel through (credentials are never put on the command line)

    Returns:
        List of DER-encoded certificates, leaf first
    """
    from cryptography.hazmat.primitives import serialization

    from pkgfetch.certificate import _load_cert_with_cache
    from pkgfetch.exceptions import CertificateParseError

    if proxy is not None and proxy.has_credentials:
        logger.debug("Skipping OpenSSL fallback for an authenticated proxy")
        return []

    openssl_cmd = [
        "openssl", "s_client",
        "-connect", f"{host}:{port}",
        "-servername", host,
        "-showcerts",
    ]
    if proxy is not None:
        openssl_cmd.extend(["-proxy", f"{proxy.host}:{proxy.effective_port}"])

    try:
        result = subprocess.run(
            openssl_cmd,
            input=b"Q\n",  # Send quit command
            capture_output=True,
            timeout=timeout + 2,
            check=False,  # Verification failures give a non-zero exit
        )
    except subprocess.TimeoutExpired:
        logger.debug("OpenSSL command timed out")
        return []
    except FileNotFoundError:
        logger.debug("OpenSSL command not found")
        return []

    output = result.stdout
    if not output:
        return []

    chain_certs_der: List[bytes] = []
    start_idx = 0
    while True:
        start_pos = output.find(_PEM_START, start_idx)
        if start_pos == -1:
            break
        end_pos = output.find(_PEM_END, start_pos)
        if end_pos == -1:
            break

        pem_cert = output[start_pos:end_pos + len(_PEM_END)]
        try:
            cert = _load_cert_with_cache(pem_cert, pem=True)
            chain_certs_der.append(cert.public_bytes(serialization.Encoding.DER))
        except CertificateParseError as e:
            logger.debug(f"Error parsing certificate from OpenSSL output: {e}")

        start_idx = end_pos + len(_PEM_END)

    logger.debug(f"Extracted {len(chain_certs_der)} certificate(s) via OpenSSL")
    return chain_certs_der


def _open_tunnel(sock: socket.socket, host: str, port: int, proxy: ProxyEndpoint) -> None:
    """Issue an HTTP CONNECT through ``proxy`` on an already connected socket."""
    lines = [f"CONNECT {host}:{port} HTTP/1.1", f"Host: {host}:{port}"]
    if proxy.has_credentials:
        lines.append(f"Proxy-Authorization: {basic_auth_header(proxy.user, proxy.password)}")
    sock.sendall(("\r\n".join(lines) + "\r\n\r\n").encode("ascii"))

    # Read byte-wise up to the end of the headers so no TLS data is consumed.
    response = b""
    while not response.endswith(b"\r\n\r\n"):
        chunk = sock.recv(1)
        if not chunk:
            raise NetworkError("Proxy closed the connection during CONNECT", hostname=host, port=port)
        response += chunk
        if len(response) > 65536:
            raise NetworkError("Proxy CONNECT response too large", hostname=host, port=port)

    status_line = response.split(b"\r\n", 1)[0].decode("latin-1")
    parts = status_line.split(" ", 2)
    if len(parts) < 2 or parts[1] != "200":
        raise NetworkError(
            f"Proxy {proxy.redacted} refused CONNECT: {status_line}", hostname=host, port=port
        )
    logger.debug(f"Tunnel established through {proxy.redacted}")


def fetch_peer_chain(
    host: str,
    port: int,
    proxy: Optional[ProxyEndpoint] = None,
    timeout: float = 10.0,
) -> List[bytes]:
    """
    Handshake without verification and return the chain the peer presents.

    Used only to explain a verification failure; no application data is sent.

    Args:
        host: Target hostname
        port: Target port
        proxy: Proxy to tunnel through with HTTP CONNECT
        timeout: Connection timeout in seconds

    Returns:
        List of DER-encoded certificates, leaf first

    Raises:
        DNSResolutionError: If the host (or proxy) cannot be resolved
        ConnectionTimeoutError: If connecting times out
        TLSHandshakeError: If the handshake fails even without verification
    """
    connect_host = proxy.host if proxy is not None else host
    connect_port = proxy.effective_port if proxy is not None else port
    logger.debug(f"Probing certificate chain of {host}:{port} (timeout={timeout}s)")

    try:
        addr_info = socket.getaddrinfo(connect_host, connect_port, 0, socket.SOCK_STREAM)
        if not addr_info:
            raise DNSResolutionError(
                f"Could not resolve {connect_host}:{connect_port}", hostname=host, port=port
            )
    except socket.gaierror as e:
        raise DNSResolutionError(f"DNS resolution failed for {connect_host}: {e}", hostname=host, port=port)

    family, _, _, _, addr = addr_info[0]
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.settimeout(timeout)

    try:
        sock.connect(addr)
        if proxy is not None:
            _open_tunnel(sock, host, port, proxy)

        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        ssl_sock = context.wrap_socket(sock, server_hostname=host)
        try:
            chain_certs_der: List[bytes] = []
            # get_unverified_chain() is only available on Python 3.13+
            if hasattr(ssl_sock, "get_unverified_chain"):
                chain_certs_der = [cert for cert in ssl_sock.get_unverified_chain() or [] if cert]

            if len(chain_certs_der) < 2:
                leaf = ssl_sock.getpeercert(binary_form=True)
                fallback = _extract_chain_via_openssl(host, port, timeout, proxy)
                if fallback:
                    chain_certs_der = fallback
                elif leaf and not chain_certs_der:
                    logger.debug("Only the leaf certificate is available")
                    chain_certs_der = [leaf]
        finally:
            ssl_sock.close()

        logger.debug(f"Received {len(chain_certs_der)} certificate(s) from {host}:{port}")
        return chain_certs_der

    except socket.timeout:
        raise ConnectionTimeoutError(f"Connection timeout after {timeout}s", hostname=host, port=port)
    except ssl.SSLError as e:
        raise TLSHandshakeError(f"TLS handshake failed: {e}", hostname=host, port=port)
    except OSError as e:
        raise NetworkError(f"Connection to {connect_host}:{connect_port} failed: {e}", hostname=host, port=port)
    finally:
        sock.close()
