import hashlib
import hmac
from typing import Optional, Tuple

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

BCRYPT_PREFIX = "$2"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def is_legacy_hash(stored: Optional[str]) -> bool:
    # Accounts created before hashing was introduced hold the password itself.
    return bool(stored) and not stored.startswith(BCRYPT_PREFIX)


def check_password(password: Optional[str], stored: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Verify `password` against the stored value and return `(ok, new_hash)`.

    `new_hash` is set when the stored value should be replaced: a legacy
    plaintext value, or a bcrypt hash passlib considers outdated. A missing
    stored value never authenticates.
    """
    if not stored or password is None:
        return False, None
    if is_legacy_hash(stored):
        ok = hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))
        return ok, hash_password(password) if ok else None
    return pwd_context.verify_and_update(password, stored)


def verify_password(password: Optional[str], stored: Optional[str]) -> bool:
    return check_password(password, stored)[0]


def hash_session_token(token: str) -> str:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"
