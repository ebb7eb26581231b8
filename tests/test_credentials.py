"""Unit tests for credential verification.

Tests for:
- Password hashing (argon2id) and legacy bcrypt verification
- TOTP generation and the +/-1 step verification window
- Secret encryption and backup code matching
"""

from datetime import datetime, timedelta, timezone

import bcrypt
import pytest

from idbadge.service.credentials import CredentialVerifier
from idbadge.storage.models import PasswordAlgorithm, PasswordCredential

NOW = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def credentials():
    return CredentialVerifier("unit-test-encryption-key-material-0123456789", clock=lambda: NOW)


class TestPasswordHashing:
    """Tests for password hashing."""

    def test_new_hashes_are_argon2id(self, credentials):
        """Test that new passwords are tagged argon2id and stamped with the clock."""
        credential = credentials.hash_password("correct horse battery")
        assert credential.algorithm == PasswordAlgorithm.ARGON2ID.value
        assert credential.hash.startswith("$argon2id$")
        assert credential.created_date == NOW

    def test_verify_roundtrip(self, credentials):
        credential = credentials.hash_password("correct horse battery")
        assert credentials.verify_password("correct horse battery", credential)
        assert not credentials.verify_password("wrong horse battery", credential)

    def test_missing_credential_never_verifies(self, credentials):
        """Test that identities without a password cannot log in with any input."""
        assert not credentials.verify_password("anything", None)
        assert not credentials.verify_password("", None)

    def test_legacy_bcrypt_hash_verifies(self, credentials):
        """Test that historical bcrypt hashes still validate."""
        legacy = PasswordCredential(
            algorithm=PasswordAlgorithm.BCRYPT_10.value,
            hash=bcrypt.hashpw(b"legacy password", bcrypt.gensalt(rounds=10)).decode(),
            created_date=NOW,
        )
        assert credentials.verify_password("legacy password", legacy)
        assert not credentials.verify_password("other password", legacy)


class TestTotp:
    """Tests for TOTP verification windows."""

    def test_rfc6238_reference_vector(self, credentials):
        """Test the SHA1 reference vector (secret '12345678901234567890', t=59)."""
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert credentials.generate_totp(secret, 59) == "287082"

    @pytest.mark.parametrize("offset", [-15, 0, 15])
    def test_codes_within_one_step_accepted(self, credentials, offset):
        secret = credentials.generate_totp_secret()
        code = credentials.generate_totp(secret, (NOW + timedelta(seconds=offset)).timestamp())
        assert credentials.verify_totp(secret, code, at=NOW)

    @pytest.mark.parametrize("offset", [-90.001, -60.001, 60.001, 90.001])
    def test_codes_outside_window_rejected(self, credentials, offset):
        """Test that codes two or more steps away are rejected."""
        secret = credentials.generate_totp_secret()
        code = credentials.generate_totp(secret, (NOW + timedelta(seconds=offset)).timestamp())
        current = {
            credentials.generate_totp(secret, (NOW + timedelta(seconds=30 * step)).timestamp())
            for step in (-1, 0, 1)
        }
        if code in current:
            pytest.skip("code collided with one inside the window")
        assert not credentials.verify_totp(secret, code, at=NOW)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef"])
    def test_malformed_codes_rejected(self, credentials, code):
        secret = credentials.generate_totp_secret()
        assert not credentials.verify_totp(secret, code, at=NOW)

    def test_totp_uri_names_issuer(self, credentials):
        secret = credentials.generate_totp_secret()
        uri = credentials.totp_uri(secret, "user@example.com")
        assert uri.startswith("otpauth://totp/")
        assert f"secret={secret}" in uri


class TestSecretsAndBackupCodes:
    def test_encrypt_decrypt(self, credentials):
        token = credentials.encrypt_secret("JBSWY3DPEHPK3PXP")
        assert token != "JBSWY3DPEHPK3PXP"
        assert credentials.decrypt_secret(token) == "JBSWY3DPEHPK3PXP"

    def test_decrypt_with_other_key_fails(self, credentials):
        other = CredentialVerifier("a-completely-different-key-material-9876543210")
        assert other.decrypt_secret(credentials.encrypt_secret("secret")) is None

    def test_backup_codes_shape(self, credentials):
        codes = credentials.generate_backup_codes(10)
        assert len(codes) == 10
        assert all(len(code) == 8 and code.isalnum() and code.upper() == code for code in codes)

    def test_backup_code_match_is_case_insensitive(self, credentials):
        encrypted = {credentials.encrypt_secret(code): code for code in ["AB12CD34", "ZZ99YY88"]}
        matched = credentials.match_backup_code(" ab12cd34 ", encrypted)
        assert encrypted[matched] == "AB12CD34"
        assert credentials.match_backup_code("NOPE0000", encrypted) is None

    def test_sms_code_alphabet(self, credentials):
        code = credentials.generate_sms_code()
        assert len(code) == 6
        assert code.isalnum() and code.upper() == code
