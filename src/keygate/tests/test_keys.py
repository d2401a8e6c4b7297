from keygate.config import settings
from keygate.core.keys import (
    constant_time_equals,
    generate_plaintext_key,
    hash_key,
    key_prefix,
    looks_like_key,
)


def test_generated_key_has_static_prefix_and_entropy():
    plain = generate_plaintext_key()
    assert plain.startswith(settings.key_secret_prefix)
    # 32 random bytes, urlsafe base64 without padding
    assert len(plain) == len(settings.key_secret_prefix) + 43
    assert looks_like_key(plain)


def test_generated_keys_are_unique():
    assert len({generate_plaintext_key() for _ in range(200)}) == 200


def test_hash_is_deterministic_and_not_the_secret():
    plain = generate_plaintext_key()
    assert hash_key(plain) == hash_key(plain)
    assert plain not in hash_key(plain)
    assert len(hash_key(plain)) == 64
    assert hash_key(plain) != hash_key(generate_plaintext_key())


def test_display_prefix_is_short_fragment():
    plain = generate_plaintext_key()
    prefix = key_prefix(plain)
    assert plain.startswith(prefix)
    assert len(prefix) == len(settings.key_secret_prefix) + 8


def test_looks_like_key_rejects_foreign_shapes():
    assert not looks_like_key("")
    assert not looks_like_key("not-a-key")
    assert not looks_like_key(settings.key_secret_prefix + "short")
    assert not looks_like_key("x" * 60)


def test_constant_time_equals():
    assert constant_time_equals("abc", "abc")
    assert not constant_time_equals("abc", "abd")
