"""Tests for peer chain recovery."""

import socket
import ssl
import subprocess
from unittest.mock import Mock, patch

import pytest
from cryptography.hazmat.primitives import serialization

from pkgfetch.exceptions import ConnectionTimeoutError, DNSResolutionError, NetworkError
from pkgfetch.models import ProxyEndpoint
from pkgfetch.network import _extract_chain_via_openssl, fetch_peer_chain

ADDR_INFO = [(socket.AF_INET, socket.SOCK_STREAM, 0, "", ("127.0.0.1", 443))]


def recv_bytes(data: bytes):
    """side_effect for sock.recv(1) replaying ``data`` byte by byte."""
    return [bytes([b]) for b in data]


@patch("pkgfetch.network.socket.getaddrinfo", return_value=ADDR_INFO)
@patch("pkgfetch.network.socket.socket")
@patch("pkgfetch.network.ssl.create_default_context")
def test_fetch_peer_chain_success(mock_ssl_context, mock_socket_class, mock_getaddrinfo):
    """The unverified chain is returned, leaf first."""
    mock_sock = Mock()
    mock_socket_class.return_value = mock_sock
    mock_context = Mock()
    mock_ssl_context.return_value = mock_context
    mock_ssl_sock = Mock()
    mock_context.wrap_socket.return_value = mock_ssl_sock
    mock_ssl_sock.get_unverified_chain.return_value = [b"leaf", b"intermediate"]

    chain = fetch_peer_chain("example.com", 443, timeout=10.0)

    assert chain == [b"leaf", b"intermediate"]
    assert mock_context.verify_mode == ssl.CERT_NONE
    assert mock_context.check_hostname is False
    mock_sock.connect.assert_called_once_with(("127.0.0.1", 443))
    mock_context.wrap_socket.assert_called_once_with(mock_sock, server_hostname="example.com")
    mock_ssl_sock.close.assert_called_once()


@patch("pkgfetch.network._extract_chain_via_openssl", return_value=[b"leaf", b"intermediate", b"root"])
@patch("pkgfetch.network.socket.getaddrinfo", return_value=ADDR_INFO)
@patch("pkgfetch.network.socket.socket")
@patch("pkgfetch.network.ssl.create_default_context")
def test_fetch_peer_chain_openssl_fallback(mock_ssl_context, mock_socket_class, mock_getaddrinfo, mock_openssl):
    """When only the leaf is available the OpenSSL fallback supplies the chain."""
    mock_ssl_sock = mock_ssl_context.return_value.wrap_socket.return_value
    mock_ssl_sock.get_unverified_chain.return_value = [b"leaf"]
    mock_ssl_sock.getpeercert.return_value = b"leaf"

    chain = fetch_peer_chain("example.com", 443)

    assert chain == [b"leaf", b"intermediate", b"root"]
    mock_openssl.assert_called_once_with("example.com", 443, 10.0, None)


@patch("pkgfetch.network._extract_chain_via_openssl", return_value=[])
@patch("pkgfetch.network.socket.getaddrinfo", return_value=ADDR_INFO)
@patch("pkgfetch.network.socket.socket")
@patch("pkgfetch.network.ssl.create_default_context")
def test_fetch_peer_chain_leaf_only(mock_ssl_context, mock_socket_class, mock_getaddrinfo, mock_openssl):
    mock_ssl_sock = mock_ssl_context.return_value.wrap_socket.return_value
    mock_ssl_sock.get_unverified_chain.return_value = []
    mock_ssl_sock.getpeercert.return_value = b"leaf"

    assert fetch_peer_chain("example.com", 443) == [b"leaf"]


@patch("pkgfetch.network.socket.getaddrinfo", return_value=ADDR_INFO)
@patch("pkgfetch.network.socket.socket")
@patch("pkgfetch.network.ssl.create_default_context")
def test_fetch_peer_chain_through_proxy(mock_ssl_context, mock_socket_class, mock_getaddrinfo):
    """A proxy is reached first and asked to CONNECT to the target."""
    mock_sock = Mock()
    mock_socket_class.return_value = mock_sock
    mock_sock.recv.side_effect = recv_bytes(b"HTTP/1.1 200 Connection established\r\n\r\n")
    mock_ssl_sock = mock_ssl_context.return_value.wrap_socket.return_value
    mock_ssl_sock.get_unverified_chain.return_value = [b"leaf", b"intermediate"]
    proxy = ProxyEndpoint(scheme="http", host="proxy.example", port=3128, user="foo", password="bar")

    chain = fetch_peer_chain("example.com", 443, proxy=proxy)

    assert chain == [b"leaf", b"intermediate"]
    mock_getaddrinfo.assert_called_once_with("proxy.example", 3128, 0, socket.SOCK_STREAM)
    sent = mock_sock.sendall.call_args.args[0]
    assert sent.startswith(b"CONNECT example.com:443 HTTP/1.1\r\n")
    assert b"Proxy-Authorization: Basic Zm9vOmJhcg==\r\n" in sent


@patch("pkgfetch.network.socket.getaddrinfo", return_value=ADDR_INFO)
@patch("pkgfetch.network.socket.socket")
def test_fetch_peer_chain_proxy_refuses(mock_socket_class, mock_getaddrinfo):
    """A refused CONNECT is a network error without credentials in the text."""
    mock_sock = Mock()
    mock_socket_class.return_value = mock_sock
    mock_sock.recv.side_effect = recv_bytes(b"HTTP/1.1 407 Proxy Authentication Required\r\n\r\n")
    proxy = ProxyEndpoint(scheme="http", host="proxy.example", port=3128, user="foo", password="hunter2")

    with pytest.raises(NetworkError, match="407") as excinfo:
        fetch_peer_chain("example.com", 443, proxy=proxy)

    assert "hunter2" not in str(excinfo.value)
    mock_sock.close.assert_called_once()


@patch("pkgfetch.network.socket.socket")
def test_fetch_peer_chain_timeout(mock_socket_class):
    """Test connection timeout."""
    mock_sock = Mock()
    mock_socket_class.return_value = mock_sock
    mock_sock.connect.side_effect = socket.timeout("Connection timeout")

    with patch("pkgfetch.network.socket.getaddrinfo", return_value=ADDR_INFO):
        with pytest.raises(ConnectionTimeoutError, match="Connection timeout"):
            fetch_peer_chain("example.com", 443, timeout=1.0)


@patch("pkgfetch.network.socket.getaddrinfo")
def test_fetch_peer_chain_dns_failure(mock_getaddrinfo):
    """Test DNS resolution failure."""
    mock_getaddrinfo.side_effect = socket.gaierror("Name or service not known")

    with pytest.raises(DNSResolutionError, match="DNS resolution failed"):
        fetch_peer_chain("nonexistent.example.com", 443)


@patch("pkgfetch.network.subprocess.run")
def test_extract_chain_via_openssl_success(mock_subprocess, make_cert):
    """PEM blocks in the s_client output are returned as DER, leaf first."""
    leaf = make_cert("leaf.example", issuer_cn="OpenSSL Test CA")
    ca = make_cert("OpenSSL Test CA", ca=True)
    output = (
        b"CONNECTED(00000003)\n"
        + leaf.public_bytes(serialization.Encoding.PEM)
        + b" 1 s:CN = OpenSSL Test CA\n"
        + ca.public_bytes(serialization.Encoding.PEM)
    )
    mock_subprocess.return_value = Mock(stdout=output, returncode=1)

    result = _extract_chain_via_openssl("example.com", 443, timeout=10.0)

    assert result == [
        leaf.public_bytes(serialization.Encoding.DER),
        ca.public_bytes(serialization.Encoding.DER),
    ]
    cmd = mock_subprocess.call_args.args[0]
    assert cmd[:4] == ["openssl", "s_client", "-connect", "example.com:443"]
    assert "-proxy" not in cmd


@patch("pkgfetch.network.subprocess.run")
def test_extract_chain_via_openssl_proxy(mock_subprocess):
    mock_subprocess.return_value = Mock(stdout=b"", returncode=1)

    _extract_chain_via_openssl("example.com", 443, 10.0, ProxyEndpoint("http", "proxy", 3128))

    cmd = mock_subprocess.call_args.args[0]
    assert cmd[-2:] == ["-proxy", "proxy:3128"]


@patch("pkgfetch.network.subprocess.run")
def test_extract_chain_via_openssl_authenticated_proxy(mock_subprocess):
    """Proxy credentials are never put on a command line."""
    proxy = ProxyEndpoint("http", "proxy", 3128, user="foo", password="bar")

    assert _extract_chain_via_openssl("example.com", 443, 10.0, proxy) == []
    mock_subprocess.assert_not_called()


@patch("pkgfetch.network.subprocess.run")
def test_extract_chain_via_openssl_timeout(mock_subprocess):
    """Test OpenSSL extraction timeout."""
    mock_subprocess.side_effect = subprocess.TimeoutExpired("openssl", 10.0)

    assert _extract_chain_via_openssl("example.com", 443, timeout=10.0) == []


@patch("pkgfetch.network.subprocess.run")
def test_extract_chain_via_openssl_not_found(mock_subprocess):
    """Test when OpenSSL command is not found."""
    mock_subprocess.side_effect = FileNotFoundError("openssl: command not found")

    assert _extract_chain_via_openssl("example.com", 443, timeout=10.0) == []


@patch("pkgfetch.network.subprocess.run")
def test_extract_chain_via_openssl_no_output(mock_subprocess):
    """Test when OpenSSL produces no output."""
    mock_subprocess.return_value = Mock(stdout=b"", returncode=1)

    assert _extract_chain_via_openssl("example.com", 443, timeout=10.0) == []
