"""Shared access signature tokens and the device credential lifecycle.

IoT Hub authenticates both devices and services with SAS tokens::

    SharedAccessSignature sr={resource}&sig={signature}&se={expiry}[&skn={policy}]

where ``signature`` is ``base64(HMAC-SHA256(base64decode(key),
"{url-encoded resource}\\n{expiry}"))`` and ``expiry`` is absolute Unix
time in seconds.

:class:`CredentialManager` holds the device's current token.  It never
renews on its own: the device agent decides when to call
:meth:`~CredentialManager.generate` (strictly before expiry) and
reconnects afterwards, because the broker binds credentials at connect
time.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from urllib.parse import quote

from cadrelay._clock import WallClockPort

logger = logging.getLogger(__name__)


class TokenStatus(IntEnum):
    """Result of :meth:`CredentialManager.generate`; non-zero is failure."""

    OK = 0
    SIGNING_INPUT_FAILED = 1
    KEY_DECODE_FAILED = 2
    SIGNATURE_FAILED = 3
    TOKEN_ASSEMBLY_FAILED = 4


def string_to_sign(resource: str, expiry: int) -> str:
    """Canonical signing input: url-encoded resource, newline, expiry."""
    return f"{quote(resource, safe='')}\n{expiry}"


def decode_key(key_b64: str) -> bytes:
    """Decode a base64 shared key, rejecting anything that is not base64.

    Raises:
        ValueError: If *key_b64* is empty or not valid base64.
    """
    if not key_b64:
        msg = "shared key is empty"
        raise ValueError(msg)
    try:
        return base64.b64decode(key_b64, validate=True)
    except binascii.Error as exc:
        msg = f"shared key is not valid base64: {exc}"
        raise ValueError(msg) from exc


def sign(key: bytes, message: str) -> str:
    """Return the base64 HMAC-SHA256 of *message* under *key*."""
    digest = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def assemble_token(
    resource: str,
    signature: str,
    expiry: int,
    policy_name: str | None = None,
) -> str:
    """Build the ``SharedAccessSignature …`` credential string."""
    token = (
        f"SharedAccessSignature sr={quote(resource, safe='')}"
        f"&sig={quote(signature, safe='')}&se={expiry}"
    )
    if policy_name:
        token += f"&skn={quote(policy_name, safe='')}"
    return token


def build_sas_token(
    resource: str,
    key_b64: str,
    expiry: int,
    policy_name: str | None = None,
) -> str:
    """One-shot SAS token for *resource* valid until *expiry*.

    Used on the service side, where a failure is a configuration error
    and may raise.

    Raises:
        ValueError: If the key cannot be decoded.
    """
    key = decode_key(key_b64)
    signature = sign(key, string_to_sign(resource, expiry))
    return assemble_token(resource, signature, expiry, policy_name)


@dataclass
class CredentialManager:
    """Current SAS token of one device.

    Args:
        host_name: IoT Hub host, e.g. ``myhub.azure-devices.net``.
        device_id: Device identity registered in the hub.
        device_key: Base64 symmetric key of the device.
        clock: Wall clock used for expiry.

    Usage::

        creds = CredentialManager("hub.azure-devices.net", "Relay-1", key, SystemClock())
        if creds.generate(3600) is TokenStatus.OK:
            password = creds.token
    """

    host_name: str
    device_id: str
    device_key: str = field(repr=False)
    clock: WallClockPort = field(repr=False)
    _token: str | None = field(default=None, init=False, repr=False)
    _expiry: int = field(default=0, init=False)

    @property
    def resource(self) -> str:
        """Signed resource URI for this device."""
        return f"{self.host_name}/devices/{self.device_id}"

    @property
    def token(self) -> str | None:
        """The last successfully generated token, if any."""
        return self._token

    @property
    def expiry(self) -> int:
        """Expiry of :attr:`token` in Unix seconds (0 before the first token)."""
        return self._expiry

    def generate(self, lifetime: int) -> TokenStatus:
        """Generate a token valid for *lifetime* seconds from now.

        On any failure the previously stored token and expiry are left
        untouched and a distinct non-zero :class:`TokenStatus` is
        returned.
        """
        expiry = int(self.clock.time()) + int(lifetime)

        if lifetime <= 0 or not self.host_name or not self.device_id:
            logger.error(
                "Cannot build signing input (host=%r, device=%r, lifetime=%s)",
                self.host_name,
                self.device_id,
                lifetime,
            )
            return TokenStatus.SIGNING_INPUT_FAILED
        to_sign = string_to_sign(self.resource, expiry)

        try:
            key = decode_key(self.device_key)
        except ValueError as exc:
            logger.error("Device key rejected: %s", exc)
            return TokenStatus.KEY_DECODE_FAILED

        try:
            signature = sign(key, to_sign)
        except (TypeError, ValueError) as exc:
            logger.error("Signing failed: %s", exc)
            return TokenStatus.SIGNATURE_FAILED

        try:
            token = assemble_token(self.resource, signature, expiry)
        except (TypeError, ValueError) as exc:
            logger.error("Token assembly failed: %s", exc)
            return TokenStatus.TOKEN_ASSEMBLY_FAILED

        self._token = token
        self._expiry = expiry
        logger.info("Generated SAS token for %s, expires at %d", self.device_id, expiry)
        return TokenStatus.OK

    def is_expired(self) -> bool:
        """Whether the clock has reached or passed the token expiry."""
        return self.clock.time() >= self._expiry

    def valid_token(self) -> str | None:
        """The token while it is still valid, otherwise ``None``."""
        if self._token is None or self.is_expired():
            return None
        return self._token

    def remaining(self) -> float:
        """Seconds until expiry (negative once expired)."""
        return self._expiry - self.clock.time()
