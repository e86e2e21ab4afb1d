import base64
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.padding import MGF1, OAEP
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import load_pem_private_key, load_pem_public_key

logger = logging.getLogger(__name__)

AES_KEY_BYTES = 32
IV_BYTES = 16
BLOCK_BITS = algorithms.AES.block_size


class KeyCustodianError(RuntimeError):
    pass


class MalformedEnvelope(ValueError):
    pass


class DecryptionFailed(ValueError):
    pass


def _oaep() -> OAEP:
    return OAEP(mgf=MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def _load_private_key(pem: bytes) -> rsa.RSAPrivateKey:
    try:
        key = load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyCustodianError("Private key is not a valid PEM-encoded RSA key") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyCustodianError("Private key must be an RSA key")
    return key


def _load_public_key(pem: bytes) -> rsa.RSAPublicKey:
    try:
        key = load_pem_public_key(pem)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise KeyCustodianError("Public key is not a valid PEM-encoded RSA key") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyCustodianError("Public key must be an RSA key")
    return key


def _read_pem(path: str | os.PathLike) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise KeyCustodianError(f"Unable to read key file {path}") from exc


class KeyCustodian:
    """
    Owns the AES key used to seal refresh tokens.

    The key only exists in plaintext inside this object. What may be stored
    at rest is ``wrapped_key``: the same key encrypted with the RSA public key
    (OAEP / SHA-256). One custodian is built at startup and handed to the
    cipher; it is never mutated afterwards.
    """

    def __init__(self, key: bytes, wrapped_key: bytes | None = None):
        if len(key) != AES_KEY_BYTES:
            raise KeyCustodianError(f"Encryption key must be {AES_KEY_BYTES} bytes, got {len(key)}")
        self._key = key
        self.wrapped_key = wrapped_key

    @property
    def key(self) -> bytes:
        return self._key

    @staticmethod
    def wrap(raw_key: bytes, public_key_pem: bytes) -> bytes:
        public_key = _load_public_key(public_key_pem)
        try:
            return public_key.encrypt(raw_key, _oaep())
        except ValueError as exc:
            raise KeyCustodianError("Unable to wrap encryption key") from exc

    @staticmethod
    def unwrap(wrapped_key: bytes, private_key_pem: bytes) -> bytes:
        private_key = _load_private_key(private_key_pem)
        try:
            return private_key.decrypt(wrapped_key, _oaep())
        except ValueError as exc:
            raise KeyCustodianError("Unable to unwrap encryption key") from exc

    @classmethod
    def from_keypair(cls, raw_key: bytes, private_key_pem: bytes, public_key_pem: bytes) -> "KeyCustodian":
        """Wrap ``raw_key`` with the public key, then unwrap it with the private key."""
        wrapped = cls.wrap(raw_key, public_key_pem)
        return cls(cls.unwrap(wrapped, private_key_pem), wrapped_key=wrapped)

    @classmethod
    def from_wrapped(cls, wrapped_key: bytes, private_key_pem: bytes) -> "KeyCustodian":
        return cls(cls.unwrap(wrapped_key, private_key_pem), wrapped_key=wrapped_key)


def load_key_custodian(config) -> KeyCustodian:
    """Build the process key custodian from settings. Any failure is fatal."""
    private_pem = _read_pem(config.PRIVATE_KEY_PATH)

    if config.WRAPPED_ENCRYPTION_KEY:
        try:
            wrapped = base64.b64decode(config.WRAPPED_ENCRYPTION_KEY, validate=True)
        except ValueError as exc:
            raise KeyCustodianError("WRAPPED_ENCRYPTION_KEY is not valid base64") from exc
        custodian = KeyCustodian.from_wrapped(wrapped, private_pem)
    elif config.ENCRYPTION_KEY:
        public_pem = _read_pem(config.PUBLIC_KEY_PATH)
        custodian = KeyCustodian.from_keypair(config.ENCRYPTION_KEY.encode("utf-8"), private_pem, public_pem)
    else:
        raise KeyCustodianError("Either ENCRYPTION_KEY or WRAPPED_ENCRYPTION_KEY must be configured")

    logger.info("Encryption key unwrapped and loaded into memory")
    return custodian


@dataclass(frozen=True)
class Envelope:
    iv: bytes
    ciphertext: bytes

    def to_storage(self) -> str:
        return f"{self.iv.hex()}:{self.ciphertext.hex()}"

    @classmethod
    def from_storage(cls, value: str) -> "Envelope":
        iv_hex, sep, ct_hex = value.partition(":")
        if not sep:
            raise MalformedEnvelope("Envelope is missing the iv delimiter")
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ct_hex)
        except ValueError as exc:
            raise MalformedEnvelope("Envelope is not valid hex") from exc
        if len(iv) != IV_BYTES:
            raise MalformedEnvelope(f"IV must be {IV_BYTES} bytes")
        if not ciphertext or len(ciphertext) % (BLOCK_BITS // 8):
            raise MalformedEnvelope("Ciphertext length is not a multiple of the block size")
        return cls(iv=iv, ciphertext=ciphertext)


class SymmetricCipher:
    """
    AES-256-CBC with PKCS7 padding and a fresh random IV per message.

    CBC carries no MAC: a tampered envelope usually fails unpadding, but it
    can also decrypt to garbage. Callers compare the result against a known
    value rather than trusting it.
    """

    def __init__(self, custodian: KeyCustodian):
        self._custodian = custodian

    def _cipher(self, iv: bytes) -> Cipher:
        return Cipher(algorithms.AES(self._custodian.key), modes.CBC(iv))

    def seal(self, plaintext: bytes) -> Envelope:
        iv = os.urandom(IV_BYTES)
        padder = padding.PKCS7(BLOCK_BITS).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = self._cipher(iv).encryptor()
        return Envelope(iv=iv, ciphertext=encryptor.update(padded) + encryptor.finalize())

    def open(self, envelope: Envelope) -> bytes:
        try:
            decryptor = self._cipher(envelope.iv).decryptor()
            padded = decryptor.update(envelope.ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise DecryptionFailed("Ciphertext could not be decrypted") from exc

    def encrypt(self, plaintext: bytes) -> str:
        return self.seal(plaintext).to_storage()

    def decrypt(self, envelope: str) -> bytes:
        return self.open(Envelope.from_storage(envelope))
