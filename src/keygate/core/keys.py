import secrets
import hashlib
import hmac

from keygate.config import settings

KEY_PREFIX_LEN = 8
KEY_RANDOM_BYTES = 32


def generate_plaintext_key() -> str:
    return f"{settings.key_secret_prefix}{secrets.token_urlsafe(KEY_RANDOM_BYTES)}"


def key_prefix(plain: str) -> str:
    return plain[: len(settings.key_secret_prefix) + KEY_PREFIX_LEN]


def hash_key(plain: str) -> str:
    return hashlib.sha256(plain.encode("utf-8")).hexdigest()


def looks_like_key(plain: str) -> bool:
    # token_urlsafe(32) yields 43 chars; anything shorter was never issued here
    if not plain.startswith(settings.key_secret_prefix):
        return False
    return len(plain) >= len(settings.key_secret_prefix) + 43 and len(plain) <= 255


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
