import base64
import binascii
import logging
from typing import Tuple

from Crypto.Cipher import AES
from Crypto.Hash import MD5
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad

from . import config
from .errors import CipherDecryptError

logger = logging.getLogger(__name__)

BLOCK_SIZE = AES.block_size
KEY_SIZE = 32
SALT_SIZE = 8
SALT_HEADER = b"Salted__"


def evp_bytes_to_key(passphrase: bytes, salt: bytes, key_len: int = KEY_SIZE, iv_len: int = BLOCK_SIZE) -> Tuple[bytes, bytes]:
    """OpenSSL EVP_BytesToKey with MD5 and a single iteration.

    This is the derivation CryptoJS applies when AES is given a passphrase
    instead of a raw key, so ciphertexts written by the mobile client decrypt
    here and vice versa.
    """
    derived = b""
    block = b""
    while len(derived) < key_len + iv_len:
        block = MD5.new(block + passphrase + salt).digest()
        derived += block
    return derived[:key_len], derived[key_len:key_len + iv_len]


def aes_encrypt_passphrase(plaintext: str, passphrase: str) -> str:
    salt = get_random_bytes(SALT_SIZE)
    key, iv = evp_bytes_to_key(passphrase.encode(), salt)
    cipher = AES.new(key, AES.MODE_CBC, iv)
    ct = cipher.encrypt(pad(plaintext.encode("utf-8"), BLOCK_SIZE))
    return base64.b64encode(SALT_HEADER + salt + ct).decode("ascii")


def aes_decrypt_passphrase(ciphertext: str, passphrase: str) -> str:
    if not isinstance(ciphertext, str) or not ciphertext:
        raise CipherDecryptError("ciphertext must be a non-empty string")
    try:
        raw = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CipherDecryptError(f"not base64: {e}") from e

    header_len = len(SALT_HEADER) + SALT_SIZE
    if not raw.startswith(SALT_HEADER) or len(raw) <= header_len:
        raise CipherDecryptError("missing salt header")
    salt, ct = raw[len(SALT_HEADER):header_len], raw[header_len:]
    if len(ct) % BLOCK_SIZE:
        raise CipherDecryptError("ciphertext is not a whole number of blocks")

    key, iv = evp_bytes_to_key(passphrase.encode(), salt)
    cipher = AES.new(key, AES.MODE_CBC, iv)
    try:
        return unpad(cipher.decrypt(ct), BLOCK_SIZE).decode("utf-8")
    except ValueError as e:
        # bad padding or invalid utf-8, usually a wrong key
        raise CipherDecryptError(str(e)) from e


class SharedKeyCipher:
    """Encrypts message bodies with one pre-shared passphrase.

    The same secret is used for every conversation and every user. There is
    no key rotation and no integrity check beyond what CBC padding gives.
    """

    def __init__(self, secret: str = None):
        self._secret = secret if secret is not None else config.CHAT_SHARED_SECRET
        if not self._secret:
            raise ValueError("shared secret must not be empty")
        if self._secret == config.DEFAULT_SHARED_SECRET:
            logger.warning("[crypto] using the placeholder shared secret, set CHAT_SHARED_SECRET")

    def encrypt(self, plaintext: str) -> str:
        return aes_encrypt_passphrase(plaintext, self._secret)

    def decrypt(self, ciphertext: str) -> str:
        """Return the plaintext, or an empty string if it cannot be recovered."""
        try:
            return aes_decrypt_passphrase(ciphertext, self._secret)
        except CipherDecryptError as e:
            logger.debug("[crypto] decrypt failed: %s", e)
            return ""
