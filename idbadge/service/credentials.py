from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import string
from datetime import datetime
from typing import Callable, Iterable, List, Optional
from urllib.parse import quote, urlencode

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.fernet import Fernet, InvalidToken

from idbadge.logging import get_logger
from idbadge.storage.common import utc_now
from idbadge.storage.models import PasswordAlgorithm, PasswordCredential

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
_CODE_ALPHABET = string.ascii_uppercase + string.digits


class CredentialVerifier:
    """Password hashing, TOTP and secret encryption.

    New passwords are always hashed with argon2id; verification dispatches on
    the stored algorithm tag so historical bcrypt hashes still validate.
    """

    def __init__(
        self,
        encryption_key: str,
        *,
        issuer: str = "idbadge",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._cipher = Fernet(self._derive_cipher_key(encryption_key))
        self.issuer = issuer
        self._clock = clock

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    # Passwords

    def hash_password(self, plaintext: str) -> PasswordCredential:
        return PasswordCredential(
            algorithm=PasswordAlgorithm.ARGON2ID.value,
            hash=self._pwd_hasher.hash(plaintext),
            created_date=self._clock(),
        )

    def verify_password(self, plaintext: str, credential: Optional[PasswordCredential]) -> bool:
        if credential is None:
            return False
        if credential.algorithm == PasswordAlgorithm.ARGON2ID.value:
            try:
                return self._pwd_hasher.verify(credential.hash, plaintext)
            except (InvalidHash, VerifyMismatchError, VerificationError):
                return False
        elif credential.algorithm == PasswordAlgorithm.BCRYPT_10.value:
            try:
                return bcrypt.checkpw(plaintext.encode(), credential.hash.encode())
            except ValueError:
                logger.warning("password_hash_malformed", algorithm=credential.algorithm)
                return False
        logger.warning("password_algorithm_unknown", algorithm=credential.algorithm)
        return False

    # TOTP (RFC 6238: HMAC-SHA1, 30 second step, 6 digits)

    def generate_totp_secret(self) -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")

    def totp_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}")
        query = urlencode(
            {"secret": secret, "issuer": self.issuer, "algorithm": "SHA1", "digits": TOTP_DIGITS, "period": TOTP_INTERVAL}
        )
        return f"otpauth://totp/{label}?{query}"

    def generate_totp(self, secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def verify_totp(
        self,
        secret: str,
        code: str,
        *,
        at: datetime,
        window: int = 1,
        interval: int = TOTP_INTERVAL,
    ) -> bool:
        """Accept codes from the current step and ``window`` steps either side."""
        if not code or not code.isdigit() or len(code) != TOTP_DIGITS:
            return False
        now = at.timestamp()
        for offset in range(-window, window + 1):
            generated = self.generate_totp(secret, now + offset * interval, interval=interval)
            if generated and hmac.compare_digest(generated.encode(), code.encode()):
                return True
        return False

    # Encrypted secrets and backup codes

    def encrypt_secret(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode()).decode()

    def decrypt_secret(self, token: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None

    def generate_backup_codes(self, count: int = 10, length: int = 8) -> List[str]:
        return [
            "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))
            for _ in range(count)
        ]

    def match_backup_code(self, candidate: str, encrypted_codes: Iterable[str]) -> Optional[str]:
        """Return the stored encrypted code whose plaintext equals ``candidate``."""
        wanted = candidate.strip().upper()
        if not wanted:
            return None
        for encrypted in encrypted_codes:
            plain = self.decrypt_secret(encrypted)
            if plain is not None and hmac.compare_digest(plain.encode(), wanted.encode()):
                return encrypted
        return None

    def generate_sms_code(self, length: int = 6) -> str:
        return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))
