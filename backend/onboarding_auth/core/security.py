"""
Password and one-time-code hashing.

Passwords use Argon2id through the raw-hash API so the derived key and the
salt are stored as separate hex columns. Short codes (backup codes, emailed
OTPs) use bcrypt through passlib.
"""

import hmac
import secrets

from argon2.low_level import Type, hash_secret_raw
from passlib.context import CryptContext

from onboarding_auth.core.config import settings

SALT_BYTES = 16
KEY_BYTES = 32

# Used when the stored values cannot be parsed so the failure path
# still pays for a full derivation.
_DUMMY_SALT = b"\x00" * SALT_BYTES

code_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.CODE_HASH_ROUNDS,
)


def _derive_key(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=settings.ARGON2_TIME_COST,
        memory_cost=settings.ARGON2_MEMORY_COST,
        parallelism=settings.ARGON2_PARALLELISM,
        hash_len=KEY_BYTES,
        type=Type.ID,
    )


def get_password_hash(password: str) -> tuple[str, str]:
    """
    Hash a password with a fresh random salt.

    Returns:
        (hash_hex, salt_hex)
    """
    salt = secrets.token_bytes(SALT_BYTES)
    return _derive_key(password, salt).hex(), salt.hex()


def verify_password(password: str, password_hash: str | None, password_salt: str | None) -> bool:
    """
    Verify a password against a stored hash and salt.

    Malformed stored values return False after the same amount of work
    as a genuine mismatch.
    """
    try:
        expected = bytes.fromhex(password_hash)
        salt = bytes.fromhex(password_salt)
    except (TypeError, ValueError):
        expected, salt = None, _DUMMY_SALT

    if len(salt) < SALT_BYTES:
        expected, salt = None, _DUMMY_SALT

    supplied = _derive_key(password, salt)
    if expected is None:
        hmac.compare_digest(supplied, supplied)
        return False
    return hmac.compare_digest(supplied, expected)


def hash_code(code: str) -> str:
    """Hash a backup code or emailed OTP for storage."""
    return code_context.hash(code)


def verify_code(code: str, hashed: str | None) -> bool:
    """Constant-time check of a code against its stored hash."""
    if not hashed:
        return False
    try:
        return code_context.verify(code, hashed)
    except (TypeError, ValueError):
        return False


def validate_password_complexity(
    password: str,
    user_email: str | None = None,
) -> tuple[bool, str]:
    """
    Validate password meets complexity requirements.

    Requirements:
    - 12 to 128 characters
    - At least one uppercase letter, lowercase letter, number and special character
    - Cannot contain the email username (if provided)
    - No common sequences, long character repeats or well-known passwords

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(password) < 12:
        return False, "Password must be at least 12 characters long"

    if len(password) > 128:
        return False, "Password must not exceed 128 characters"

    if user_email:
        email_username = user_email.split("@")[0].lower()
        if email_username and len(email_username) >= 3 and email_username in password.lower():
            return False, "Password cannot contain your email username"

    if not any(c.isupper() for c in password):
        return False, "Password must contain at least one uppercase letter (A-Z)"

    if not any(c.islower() for c in password):
        return False, "Password must contain at least one lowercase letter (a-z)"

    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one number (0-9)"

    special_chars = "!@#$%^&*()_+-=[]{}|;:',.<>?/`~"
    if not any(c in special_chars for c in password):
        return False, "Password must contain at least one special character"

    password_lower = password.lower()

    sequential_patterns = [
        "123456", "234567", "345678", "456789", "567890",
        "abcde", "bcdef", "cdefg", "defgh", "efghi",
        "qwerty", "asdfgh", "zxcvbn",
    ]
    for pattern in sequential_patterns:
        if pattern in password_lower:
            return False, f"Password cannot contain common patterns like '{pattern}'"

    if any(char * 4 in password_lower for char in "0123456789abcdefghijklmnopqrstuvwxyz"):
        return False, "Password cannot contain repeated characters (e.g., 'aaaa' or '1111')"

    common_passwords = {
        "password", "password123", "password1",
        "qwerty", "qwerty123", "letmein", "letmein123",
        "admin", "admin123", "welcome", "welcome123",
        "secure2send", "cannabis",
    }
    # Strip trailing punctuation so "Password123!" style variants are caught too
    if password_lower.rstrip(special_chars) in common_passwords:
        return False, "Password is too common. Please choose a more secure password"

    return True, ""
