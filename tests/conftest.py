"""Shared fixtures: certificate minting and a fake transport."""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from pkgfetch.models import Response


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


@pytest.fixture(scope="session")
def private_key():
    """One RSA key for every test certificate (key generation is slow)."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def make_cert(private_key):
    """Factory for certificates with a chosen subject, issuer and validity window."""

    def _make_cert(
        common_name: str,
        issuer_cn: str | None = None,
        not_before: datetime | None = None,
        not_after: datetime | None = None,
        ca: bool = False,
    ) -> x509.Certificate:
        now = datetime.now(timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(_name(common_name))
            .issuer_name(_name(issuer_cn or common_name))
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before or now - timedelta(days=1))
            .not_valid_after(not_after or now + timedelta(days=365))
        )
        if ca:
            builder = builder.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        return builder.sign(private_key, hashes.SHA256())

    return _make_cert


class FakeConnection:
    """Connection that records the last request and replays a canned response."""

    def __init__(self, transport):
        self.transport = transport
        self.payload = None
        self.closed = False

    def send(self, method, url, headers):
        self.payload = {"method": method, "url": url, "headers": dict(headers)}
        self.transport.requests.append(self.payload)
        if self.transport.error is not None:
            raise self.transport.error
        response = self.transport.response
        return Response(code=response.code, body=response.body, headers=dict(response.headers))

    def close(self):
        self.closed = True


class FakeTransport:
    """Transport stand-in counting connections and serving canned responses."""

    def __init__(self, response: Response | None = None):
        self.response = response or Response(code=200, body=b"junk")
        self.error: Exception | None = None
        self.chain: list[bytes] = []
        self.connections: list[FakeConnection] = []
        self.connect_calls: list = []
        self.requests: list[dict] = []
        self._lock = threading.Lock()

    def connect(self, key, ssl_context):
        with self._lock:
            self.connect_calls.append((key, ssl_context))
            conn = FakeConnection(self)
            self.connections.append(conn)
            return conn

    def peer_chain(self, key):
        return list(self.chain)


@pytest.fixture
def fake_transport():
    return FakeTransport()
