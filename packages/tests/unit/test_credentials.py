"""Unit tests for cadrelay._credentials — SAS tokens and device credentials.

Test Techniques Used:
    - Specification-based Testing: Token format and signing input
    - Known-answer Testing: Signature recomputed independently with hmac
    - Boundary Value Analysis: Expiry exactly at / one second before the clock
    - Error Condition Testing: Distinct failure codes, state left untouched
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from urllib.parse import parse_qs, unquote

import pytest

from cadrelay._credentials import (
    CredentialManager,
    TokenStatus,
    build_sas_token,
    decode_key,
    string_to_sign,
)
from cadrelay.testing import FakeClock

KEY = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode()
HOST = "hub.azure-devices.net"


def _fields(token: str) -> dict[str, str]:
    assert token.startswith("SharedAccessSignature ")
    query = token.removeprefix("SharedAccessSignature ")
    return {name: values[0] for name, values in parse_qs(query).items()}


@pytest.fixture
def manager(fake_clock: FakeClock) -> CredentialManager:
    return CredentialManager(host_name=HOST, device_id="Relay-1", device_key=KEY, clock=fake_clock)


class TestSigningPrimitives:
    """Pure helpers.

    Technique: Known-answer Testing.
    """

    def test_string_to_sign_encodes_resource(self) -> None:
        assert string_to_sign(f"{HOST}/devices/Relay-1", 42) == (
            "hub.azure-devices.net%2Fdevices%2FRelay-1\n42"
        )

    def test_signature_matches_hmac_sha256(self) -> None:
        token = build_sas_token(f"{HOST}/devices/Relay-1", KEY, 1_700_003_600)
        expected = base64.b64encode(
            hmac.new(
                base64.b64decode(KEY),
                string_to_sign(f"{HOST}/devices/Relay-1", 1_700_003_600).encode(),
                hashlib.sha256,
            ).digest(),
        ).decode()
        fields = _fields(token)
        assert fields["sig"] == expected
        assert fields["se"] == "1700003600"
        assert unquote(token.split("sr=", 1)[1].split("&", 1)[0]) == f"{HOST}/devices/Relay-1"
        assert "skn" not in fields

    def test_policy_name_appended(self) -> None:
        token = build_sas_token(HOST, KEY, 10, policy_name="service")
        assert token.endswith("&skn=service")

    @pytest.mark.parametrize("bad", ["", "not base64!", "abc"])
    def test_decode_key_rejects_garbage(self, bad: str) -> None:
        with pytest.raises(ValueError):
            decode_key(bad)


class TestGenerate:
    """CredentialManager.generate success path.

    Technique: Specification-based Testing.
    """

    def test_generate_sets_token_and_expiry(
        self,
        manager: CredentialManager,
        fake_clock: FakeClock,
    ) -> None:
        assert manager.generate(3600) is TokenStatus.OK
        assert manager.expiry == int(fake_clock.time()) + 3600
        assert manager.token is not None
        assert _fields(manager.token)["se"] == str(manager.expiry)

    def test_fresh_token_is_not_expired(self, manager: CredentialManager) -> None:
        manager.generate(3600)
        assert not manager.is_expired()
        assert manager.valid_token() == manager.token
        assert manager.remaining() == 3600

    def test_never_generated_counts_as_expired(self, manager: CredentialManager) -> None:
        assert manager.token is None
        assert manager.is_expired()
        assert manager.valid_token() is None


class TestExpiryBoundary:
    """Expiry is inclusive: at ``expiry`` the token is already invalid.

    Technique: Boundary Value Analysis.
    """

    def test_one_second_before_expiry_is_valid(
        self,
        manager: CredentialManager,
        fake_clock: FakeClock,
    ) -> None:
        manager.generate(3600)
        fake_clock.advance(3599)
        assert not manager.is_expired()

    def test_expired_exactly_at_expiry(
        self,
        manager: CredentialManager,
        fake_clock: FakeClock,
    ) -> None:
        manager.generate(3600)
        fake_clock.advance(3600)
        assert manager.is_expired()
        assert manager.valid_token() is None
        assert manager.remaining() == 0


class TestGenerateFailures:
    """Each failing stage has its own status and keeps the old token.

    Technique: Error Condition Testing.
    """

    @pytest.mark.parametrize("lifetime", [0, -5])
    def test_non_positive_lifetime(self, manager: CredentialManager, lifetime: int) -> None:
        assert manager.generate(lifetime) is TokenStatus.SIGNING_INPUT_FAILED

    def test_missing_device_id(self, fake_clock: FakeClock) -> None:
        creds = CredentialManager(host_name=HOST, device_id="", device_key=KEY, clock=fake_clock)
        assert creds.generate(60) is TokenStatus.SIGNING_INPUT_FAILED

    def test_bad_key(self, fake_clock: FakeClock) -> None:
        creds = CredentialManager(host_name=HOST, device_id="R", device_key="%%%", clock=fake_clock)
        assert creds.generate(60) is TokenStatus.KEY_DECODE_FAILED
        assert int(TokenStatus.KEY_DECODE_FAILED) != 0

    def test_failure_keeps_previous_token(
        self,
        manager: CredentialManager,
        fake_clock: FakeClock,
    ) -> None:
        manager.generate(3600)
        token, expiry = manager.token, manager.expiry
        fake_clock.advance(100)

        manager.device_key = "%%%"
        assert manager.generate(3600) is TokenStatus.KEY_DECODE_FAILED

        assert manager.token == token
        assert manager.expiry == expiry

    def test_statuses_are_distinct(self) -> None:
        values = [int(status) for status in TokenStatus]
        assert len(values) == len(set(values))
        assert TokenStatus.OK == 0
