"""
Tests for the shared-key cipher.
"""

import base64

import pytest

from healio_chat.crypto_utils import SALT_HEADER, SharedKeyCipher, evp_bytes_to_key


def test_round_trip(cipher):
    assert cipher.decrypt(cipher.encrypt("Hello there")) == "Hello there"


@pytest.mark.parametrize("text", [
    "I feel better today 😊",
    "مرحبا بك",
    "こんにちは世界",
    "Zażółć gęślą jaźń",
    "👨‍👩‍👧‍👦 family",
    "a" * 1000,
])
def test_round_trip_unicode(cipher, text):
    assert cipher.decrypt(cipher.encrypt(text)) == text


def test_output_is_openssl_salted_base64(cipher):
    raw = base64.b64decode(cipher.encrypt("hi"))
    assert raw.startswith(SALT_HEADER)
    # header + 8 byte salt + one AES block
    assert len(raw) == 8 + 8 + 16


def test_fresh_salt_per_message(cipher):
    assert cipher.encrypt("same text") != cipher.encrypt("same text")


@pytest.mark.parametrize("garbage", [
    "",
    "not base64 at all!!",
    base64.b64encode(b"hello world").decode(),
    base64.b64encode(SALT_HEADER + b"12345678").decode(),
    base64.b64encode(SALT_HEADER + b"12345678" + b"short").decode(),
    "U2FsdGVkX1",
    None,
    12345,
])
def test_decrypt_garbage_returns_empty(cipher, garbage):
    assert cipher.decrypt(garbage) == ""


def test_decrypt_with_wrong_key_returns_empty(cipher):
    token = cipher.encrypt("private note")
    assert SharedKeyCipher("another-key").decrypt(token) == ""


def test_decrypt_corrupted_ciphertext_returns_empty(cipher):
    raw = bytearray(base64.b64decode(cipher.encrypt("Hello there")))
    raw[-1] ^= 0xFF
    assert cipher.decrypt(base64.b64encode(bytes(raw)).decode()) == ""


def test_key_derivation_is_deterministic():
    key, iv = evp_bytes_to_key(b"secret", b"saltsalt")
    assert len(key) == 32
    assert len(iv) == 16
    assert (key, iv) == evp_bytes_to_key(b"secret", b"saltsalt")
    assert key != evp_bytes_to_key(b"secret", b"pepperrr")[0]


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        SharedKeyCipher("")


def test_placeholder_secret_warns(caplog):
    SharedKeyCipher("demo-shared-key-change-me")
    assert "placeholder shared secret" in caplog.text
