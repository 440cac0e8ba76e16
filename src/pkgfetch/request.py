"""Outbound request construction: headers, conditional GET, Basic-Auth and redacted logging."""

import base64
import logging
import platform
import sys
import sysconfig
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Dict, Optional, Tuple
from urllib.parse import unquote, urlsplit

from pkgfetch import __version__
from pkgfetch.models import PendingRequest, redact_url

logger = logging.getLogger(__name__)

PRODUCT = "pkgfetch"
KEEP_ALIVE_SECONDS = 30


@dataclass(frozen=True)
class InterpreterInfo:
    """Interpreter details encoded into the User-Agent."""

    engine: str
    version: str
    release_date: str
    patchlevel: Optional[int] = None
    revision: Optional[str] = None

    @property
    def is_release(self) -> bool:
        return self.patchlevel is not None

    @classmethod
    def current(cls) -> "InterpreterInfo":
        info = sys.version_info
        _, build_date = platform.python_build()
        if info.releaselevel == "final":
            patchlevel, revision = info.micro, None
        else:
            patchlevel = None
            revision = platform.python_revision() or f"{info.releaselevel}{info.serial}"
        return cls(
            engine=platform.python_implementation(),
            version=f"{info.major}.{info.minor}.{info.micro}",
            release_date=_build_date(build_date),
            patchlevel=patchlevel,
            revision=revision,
        )


def _build_date(raw: str) -> str:
    """Convert a build stamp such as ``Jun  6 2024 19:30:16`` to ``2024-06-06``."""
    raw = " ".join(raw.split())
    for fmt in ("%b %d %Y %H:%M:%S", "%b %d %Y"):
        try:
            return datetime.strptime(raw, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    return raw.replace(" ", "-") or "unknown"


def user_agent(
    interpreter: Optional[InterpreterInfo] = None,
    product_version: str = __version__,
    platform_id: Optional[str] = None,
) -> str:
    """
    Build the User-Agent string.

    Layout: ``pkgfetch/<version> <platform> Python/<version>[dev] (<date>
    patchlevel <n>|revision <rev>)[ <engine>]``.
    """
    if interpreter is None:
        interpreter = InterpreterInfo.current()
    if platform_id is None:
        platform_id = sysconfig.get_platform()

    version = interpreter.version
    if not interpreter.is_release:
        version += "dev"

    ua = f"{PRODUCT}/{product_version} {platform_id} Python/{version} ({interpreter.release_date}"
    if interpreter.is_release:
        ua += f" patchlevel {interpreter.patchlevel}"
    else:
        ua += f" revision {interpreter.revision}"
    ua += ")"

    if interpreter.engine.lower() != "cpython":
        ua += f" {interpreter.engine}"
    return ua


def http_date(value: datetime) -> str:
    """RFC 1123 date in GMT. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def basic_auth_header(user: Optional[str], password: Optional[str]) -> str:
    """``Basic`` credentials from percent-encoded URI userinfo."""
    user = unquote(user or "")
    password = unquote(password or "")
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def strip_userinfo(uri: str) -> str:
    """Return ``uri`` without its userinfo component."""
    parts = urlsplit(uri)
    if "@" not in parts.netloc:
        return uri
    return parts._replace(netloc=parts.netloc.rsplit("@", 1)[1]).geturl()


class RequestBuilder:
    """Assemble request headers and the log line for a PendingRequest."""

    def __init__(self, agent: Optional[str] = None):
        self.user_agent = agent if agent is not None else user_agent()

    def build(self, request: PendingRequest) -> Tuple[Dict[str, str], str]:
        """
        Build headers and a redacted log line.

        Args:
            request: Request to build

        Returns:
            Tuple of (headers, log line)
        """
        headers: Dict[str, str] = {
            "User-Agent": self.user_agent,
            "Connection": "keep-alive",
            "Keep-Alive": str(KEEP_ALIVE_SECONDS),
        }

        if request.last_modified is not None:
            headers["If-Modified-Since"] = http_date(request.last_modified)

        parts = urlsplit(request.uri)
        if parts.username is not None:
            headers["Authorization"] = basic_auth_header(parts.username, parts.password)

        log_line = f"{request.method} {redact_url(request.uri)}"
        return headers, log_line

    def target_url(self, request: PendingRequest) -> str:
        """URL put on the wire; credentials travel only in the Authorization header."""
        return strip_userinfo(request.uri)
