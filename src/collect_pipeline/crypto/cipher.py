"""
Symmetric key and cipher handling for encrypted submissions.

An encrypted submission ships its AES key RSA-encrypted with the form's
public key. Every file of the submission (media files first, in manifest
order, then the submission XML) is encrypted with AES-CFB under the same
key and a different IV; the IVs derive from one seed, so files must be
decrypted in exactly the order they were encrypted.
"""

import base64
import binascii
import hashlib
from pathlib import Path
from typing import Iterator, Optional

from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asymmetric_padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.ciphers import Cipher, CipherContext, algorithms, modes

from collect_pipeline.errors import CryptoError

IV_BYTE_LENGTH = 16
CHUNK_SIZE = 64 * 1024  # 64KB


def _oaep() -> asymmetric_padding.OAEP:
    return asymmetric_padding.OAEP(
        mgf=asymmetric_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def load_private_key(path: Path, password: Optional[bytes] = None) -> RSAPrivateKey:
    """
    Read a PEM-encoded RSA private key.

    Raises:
        CryptoError: If the file isn't a PEM RSA private key
        OSError: If the file can't be read
    """
    data = path.read_bytes()
    try:
        key = serialization.load_pem_private_key(data, password=password)
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Invalid private key file: {path}", cause=e) from e
    if not isinstance(key, RSAPrivateKey):
        raise CryptoError(f"Private key is not RSA: {path}")
    return key


def rsa_decrypt(private_key: RSAPrivateKey, base64_message: str) -> bytes:
    """
    Decrypt a base64 RSA-OAEP (SHA-256, MGF1 SHA-256) message.

    Raises:
        CryptoError: If the message isn't base64 or doesn't decrypt
    """
    try:
        message = base64.b64decode(base64_message, validate=False)
    except (binascii.Error, ValueError) as e:
        raise CryptoError("Encrypted value is not base64", cause=e) from e
    try:
        return private_key.decrypt(message, _oaep())
    except ValueError as e:
        raise CryptoError("Can't decrypt message", cause=e) from e


def derive_symmetric_key(base64_encrypted_key: str, private_key: RSAPrivateKey) -> bytes:
    """Recover the AES key of one submission."""
    return rsa_decrypt(private_key, base64_encrypted_key)


def decrypt_signature(base64_encrypted_signature: str, private_key: RSAPrivateKey) -> bytes:
    """Recover the MD5 digest the client signed the submission with."""
    return rsa_decrypt(private_key, base64_encrypted_signature)


class CipherSequence(Iterator[CipherContext]):
    """
    Ordered AES-CFB decryptors for the files of one submission.

    The IV seed is MD5(instance ID + key) repeated to 16 bytes. Each call
    to next() bumps one seed byte (wrapping at 256), moving one position
    to the right each time, and builds a decryptor with the result.

    Usage:
        ciphers = CipherSequence(instance_id, symmetric_key)
        for media in media_files:
            decrypt_file(media, target_dir / media.stem, next(ciphers))
        decrypt_file(submission_enc, target_dir / "submission.xml", next(ciphers))
    """

    def __init__(self, instance_id: str, symmetric_key: bytes):
        if len(symmetric_key) not in (16, 24, 32):
            raise CryptoError(f"Invalid AES key length: {len(symmetric_key)} bytes")
        self._key = symmetric_key
        digest = hashlib.md5(instance_id.encode("utf-8") + symmetric_key).digest()
        self._seed = bytearray(digest[i % len(digest)] for i in range(IV_BYTE_LENGTH))
        self._counter = 0

    @property
    def counter(self) -> int:
        return self._counter

    def next_iv(self) -> bytes:
        index = self._counter % IV_BYTE_LENGTH
        self._seed[index] = (self._seed[index] + 1) % 256
        self._counter += 1
        return bytes(self._seed)

    def __next__(self) -> CipherContext:
        return Cipher(algorithms.AES(self._key), modes.CFB(self.next_iv())).decryptor()

    def __iter__(self) -> "CipherSequence":
        return self


def decrypt_file(source: Path, destination: Path, decryptor: CipherContext) -> Path:
    """
    Stream-decrypt source into destination, removing PKCS#7 padding.

    Raises:
        CryptoError: If the plaintext padding is invalid
        OSError: If either file can't be accessed
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        with open(source, "rb") as src, open(destination, "wb") as dst:
            for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                dst.write(unpadder.update(decryptor.update(chunk)))
            dst.write(unpadder.update(decryptor.finalize()))
            dst.write(unpadder.finalize())
    except ValueError as e:
        destination.unlink(missing_ok=True)
        raise CryptoError(f"Can't decrypt file {source.name}", cause=e) from e
    return destination


def strip_enc_extension(filename: str) -> str:
    """Drop a trailing ".enc": "photo.jpg.enc" -> "photo.jpg"."""
    return filename[: -len(".enc")] if filename.endswith(".enc") else filename
