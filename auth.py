import hashlib
import hmac
import re
import secrets
from typing import Optional, Tuple

from constants import NAME_MAX_LEN

_PIN_RE = re.compile(r"^\d{4}$")
_PBKDF2_ROUNDS = 100_000


def is_valid_pin(pin) -> bool:
    return isinstance(pin, str) and bool(_PIN_RE.match(pin))


def hash_pin(pin: str, salt: Optional[str] = None) -> Tuple[str, str]:
    """Return ``(salt, hash)`` for a PIN; a fresh salt is drawn when none is given."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), bytes.fromhex(salt), _PBKDF2_ROUNDS)
    return salt, digest.hex()


def verify_pin(pin: str, salt: Optional[str], expected: Optional[str]) -> bool:
    if not salt or not expected or not is_valid_pin(pin):
        return False
    _, actual = hash_pin(pin, salt)
    return hmac.compare_digest(actual, expected)


def clamp_text(value, max_len: int) -> str:
    if not isinstance(value, str):
        return ""
    text = value.strip()
    return text[:max_len] if len(text) > max_len else text


def clean_name(value) -> str:
    return clamp_text(value, NAME_MAX_LEN)


def new_member_id() -> str:
    return secrets.token_urlsafe(10)
