"""Certificate verification diagnostics."""

import hashlib
import logging
from datetime import datetime, timezone
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from cryptography import x509

from pkgfetch.exceptions import CertificateParseError
from pkgfetch.models import CertificateFailure, VerifyDecision

logger = logging.getLogger(__name__)

# Global certificate cache: sha256(cert_bytes) -> x509.Certificate
_certificate_cache: dict[str, x509.Certificate] = {}


class VerifyCode(IntEnum):
    """OpenSSL X509_V_ERR_* verification result codes."""

    OK = 0
    UNABLE_TO_GET_ISSUER_CERT = 2
    CERT_SIGNATURE_FAILURE = 7
    CERT_NOT_YET_VALID = 9
    CERT_HAS_EXPIRED = 10
    OUT_OF_MEM = 17
    DEPTH_ZERO_SELF_SIGNED_CERT = 18
    SELF_SIGNED_CERT_IN_CHAIN = 19
    UNABLE_TO_GET_ISSUER_CERT_LOCALLY = 20
    UNABLE_TO_VERIFY_LEAF_SIGNATURE = 21
    CERT_CHAIN_TOO_LONG = 22
    CERT_REVOKED = 23
    INVALID_CA = 24
    PATH_LENGTH_EXCEEDED = 25
    INVALID_PURPOSE = 26
    CERT_UNTRUSTED = 27
    CERT_REJECTED = 28
    HOSTNAME_MISMATCH = 62


def _load_cert_with_cache(cert_data: bytes, pem: bool = False) -> x509.Certificate:
    """
    Load a certificate, reusing a previously parsed copy of the same bytes.

    Args:
        cert_data: Certificate data (DER or PEM bytes)
        pem: If True, treat as PEM format; otherwise DER

    Returns:
        Loaded certificate

    Raises:
        CertificateParseError: If the bytes are not a certificate
    """
    cache_key = hashlib.sha256(cert_data).hexdigest()
    if cache_key in _certificate_cache:
        return _certificate_cache[cache_key]

    try:
        if pem:
            cert = x509.load_pem_x509_certificate(cert_data)
        else:
            cert = x509.load_der_x509_certificate(cert_data)
    except ValueError as e:
        raise CertificateParseError(f"Cannot parse certificate: {e}")

    _certificate_cache[cache_key] = cert
    return cert


def _not_valid_before(cert: x509.Certificate) -> datetime:
    try:
        return cert.not_valid_before_utc
    except AttributeError:
        # Fallback for older cryptography versions
        return cert.not_valid_before.replace(tzinfo=timezone.utc)


def _not_valid_after(cert: x509.Certificate) -> datetime:
    try:
        return cert.not_valid_after_utc
    except AttributeError:
        return cert.not_valid_after.replace(tzinfo=timezone.utc)


def describe_certificate(
    cert: x509.Certificate, code: int, depth: int = 0, reason: str = ""
) -> CertificateFailure:
    """Build a CertificateFailure from a parsed certificate."""
    return CertificateFailure(
        code=int(code),
        depth=depth,
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_before=_not_valid_before(cert),
        reason=reason,
    )


def format_time(value: datetime) -> str:
    """ISO 8601 in UTC with a ``Z`` suffix."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


_MESSAGES: Dict[int, Callable[[CertificateFailure], str]] = {
    VerifyCode.CERT_HAS_EXPIRED: lambda c: (
        f"Certificate {c.subject} expired at {format_time(c.not_before)}"
    ),
    VerifyCode.CERT_NOT_YET_VALID: lambda c: (
        f"Certificate {c.subject} not valid until {format_time(c.not_before)}"
    ),
    VerifyCode.CERT_REJECTED: lambda c: f"Certificate {c.subject} is rejected",
    VerifyCode.CERT_UNTRUSTED: lambda c: f"Certificate {c.subject} is not trusted",
    VerifyCode.DEPTH_ZERO_SELF_SIGNED_CERT: lambda c: f"Certificate {c.issuer} is not trusted",
    VerifyCode.INVALID_CA: lambda c: f"Certificate {c.subject} is an invalid CA certificate",
    VerifyCode.INVALID_PURPOSE: lambda c: f"Certificate {c.subject} has an invalid purpose",
    VerifyCode.SELF_SIGNED_CERT_IN_CHAIN: lambda c: f"Root certificate is not trusted ({c.subject})",
    VerifyCode.UNABLE_TO_GET_ISSUER_CERT_LOCALLY: lambda c: (
        f"You must add {c.issuer} to your local trusted store"
    ),
    VerifyCode.UNABLE_TO_VERIFY_LEAF_SIGNATURE: lambda c: (
        f"Cannot verify certificate issued by {c.issuer}"
    ),
}

_TIME_CODES = (VerifyCode.CERT_HAS_EXPIRED, VerifyCode.CERT_NOT_YET_VALID)

# Codes reported against the topmost certificate the handshake could build.
_TOP_OF_CHAIN_CODES = (
    VerifyCode.UNABLE_TO_GET_ISSUER_CERT,
    VerifyCode.UNABLE_TO_GET_ISSUER_CERT_LOCALLY,
    VerifyCode.SELF_SIGNED_CERT_IN_CHAIN,
    VerifyCode.CERT_UNTRUSTED,
)


class CertificateVerifier:
    """
    Translate handshake verification failures into diagnostic text.

    The decision logic is pure: callers hand in the failure code and the
    offending certificate and get messages back. The decision is always to
    abort the connection attempt.
    """

    def message_for(self, code: int, certificate: Optional[CertificateFailure]) -> Optional[str]:
        """
        Specialised explanation for a verification code.

        Args:
            code: Verification result code
            certificate: Offending certificate (None if unavailable)

        Returns:
            Message, or None if the code has no specialised text or no certificate is known
        """
        if certificate is None or not certificate.has_certificate:
            return None
        template = _MESSAGES.get(int(code))
        if template is None:
            return None
        if int(code) in _TIME_CODES and certificate.not_before is None:
            return None
        return template(certificate)

    def on_verify_failure(
        self,
        code: int,
        certificate: Optional[CertificateFailure],
        depth: int = 0,
        reason: str = "",
    ) -> VerifyDecision:
        """
        Handle a verification failure at ``depth`` of the chain.

        Always emits the generic depth/code line, followed by the specialised
        message when there is one. Every message is logged at ERROR.
        """
        if not reason:
            reason = certificate.reason if certificate is not None and certificate.reason else "unknown error"
        messages = [f"SSL verification error at depth {depth}: {reason} ({int(code)})"]

        extra = self.message_for(code, certificate)
        if extra:
            messages.append(extra)

        for message in messages:
            logger.error(message)
        return VerifyDecision(abort=True, messages=messages)

    def locate_failure(
        self,
        code: int,
        reason: str,
        chain_der: Sequence[bytes],
        now: Optional[datetime] = None,
    ) -> Tuple[Optional[CertificateFailure], int]:
        """
        Pick the certificate a verification code refers to.

        Args:
            code: Verification result code
            reason: Library-provided text for the code
            chain_der: Peer chain as sent by the server, leaf first
            now: Reference time for validity checks (defaults to now)

        Returns:
            Tuple of (CertificateFailure or None, chain depth)
        """
        certs: List[x509.Certificate] = []
        for der in chain_der:
            try:
                certs.append(_load_cert_with_cache(der))
            except CertificateParseError as e:
                logger.debug(f"Skipping unparsable chain certificate: {e}")
        if not certs:
            return None, 0

        if now is None:
            now = datetime.now(timezone.utc)

        depth = 0
        if int(code) == VerifyCode.CERT_HAS_EXPIRED:
            depth = next((i for i, c in enumerate(certs) if _not_valid_after(c) < now), 0)
        elif int(code) == VerifyCode.CERT_NOT_YET_VALID:
            depth = next((i for i, c in enumerate(certs) if _not_valid_before(c) > now), 0)
        elif int(code) in _TOP_OF_CHAIN_CODES:
            depth = len(certs) - 1

        return describe_certificate(certs[depth], code, depth=depth, reason=reason), depth

    def diagnose(
        self, code: int, reason: str, chain_der: Sequence[bytes]
    ) -> Tuple[VerifyDecision, int]:
        """Locate the offending certificate and run the failure hook."""
        certificate, depth = self.locate_failure(code, reason, chain_der)
        return self.on_verify_failure(code, certificate, depth=depth, reason=reason), depth


def message_for(code: int, certificate: Optional[CertificateFailure]) -> Optional[str]:
    return CertificateVerifier().message_for(code, certificate)
