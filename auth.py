"""Password hashing helpers.

Passwords are stored as salted bcrypt hashes; the plaintext never reaches the
database. bcrypt only looks at the first 72 bytes of its input, longer
passwords are rejected up front instead of being silently truncated.
"""

from typing import Optional

import bcrypt

from config import settings
from errors import ValidationError

MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    if not password:
        raise ValidationError("Password cannot be empty.")
    raw = password.encode("utf-8")
    if len(raw) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password cannot be longer than {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode("utf-8")


def verify_password(password: Optional[str], password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    raw = password.encode("utf-8")
    if len(raw) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(raw, password_hash.encode("utf-8"))
    except ValueError:
        # malformed hash in storage
        return False
