from __future__ import annotations

from typing import Protocol

import bcrypt


class CredentialVerifier(Protocol):
    def verify(self, plain_password: str, password_hash: str) -> bool: ...


class BcryptVerifier:
    """Compare a plaintext password against a bcrypt hash (`$2a$`/`$2b$`/`$2y$`)."""

    def verify(self, plain_password: str, password_hash: str) -> bool:
        if not plain_password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(plain_password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Not a bcrypt hash
            return False


__all__ = ["BcryptVerifier", "CredentialVerifier"]
