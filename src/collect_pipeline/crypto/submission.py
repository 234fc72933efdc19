"""
Decryption and signature validation of pulled submissions.

    parsed = ParsedSubmission.from_metadata(metadata, private_key)
    decrypted = decrypt_submission(parsed, output_dir)
    if decrypted is None:
        ...  # some media file never arrived; skip the submission
    elif decrypted.validation_status is ValidationStatus.NOT_VALID:
        ...  # contents don't match the client's signature

The signature is the MD5 of these lines, each followed by a newline:
form id, form version (only if present), base64 encrypted key, instance ID,
"{name}::{md5}" for every decrypted media file in manifest order and
"submission.xml::{md5}" for the decrypted submission.
"""

import hashlib
import hmac
import logging
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from core.logging.utilities import get_logger, log_with_context

from collect_pipeline.crypto.cipher import (
    CipherSequence,
    decrypt_file,
    decrypt_signature,
    derive_symmetric_key,
    strip_enc_extension,
)
from collect_pipeline.errors import CryptoError, ParsingError
from collect_pipeline.models import SubmissionMetadata, md5_hex
from collect_pipeline.storage.layout import SUBMISSION_FILENAME, safe_name
from collect_pipeline.xmlutil import parse_xml

logger = get_logger(__name__)


class ValidationStatus(Enum):
    NOT_VALIDATED = "not_validated"
    VALID = "valid"
    NOT_VALID = "not_valid"


class ParsedSubmission:
    """
    A submission file loaded for inspection or decryption.

    Attributes:
        metadata: The submission's metadata; submission_file points at the
            file root was parsed from
        root: Parsed XML root element
        cipher_sequence: Ciphers for the submission's files (encrypted only)
        signature: Decrypted MD5 digest to validate against (encrypted only)

    The validation status starts as NOT_VALIDATED and can be set once.
    """

    def __init__(
        self,
        metadata: SubmissionMetadata,
        root: Any,
        cipher_sequence: Optional[CipherSequence] = None,
        signature: Optional[bytes] = None,
    ):
        self.metadata = metadata
        self.root = root
        self.cipher_sequence = cipher_sequence
        self.signature = signature
        self._validation_status = ValidationStatus.NOT_VALIDATED

    @classmethod
    def from_metadata(
        cls,
        metadata: SubmissionMetadata,
        private_key: Optional[RSAPrivateKey] = None,
    ) -> "ParsedSubmission":
        """
        Load the submission file of metadata.

        Cipher sequence and signature are prepared when the submission is
        encrypted and a private key is given.

        Raises:
            ParsingError: If the submission file isn't valid XML
            CryptoError: If the key or signature can't be decrypted
            OSError: If the submission file can't be read
        """
        if metadata.submission_file is None:
            raise ParsingError(f"Submission {metadata.instance_id} has no file")
        root = parse_xml(metadata.submission_file.read_text(encoding="utf-8"))

        cipher_sequence = None
        signature = None
        if metadata.is_encrypted and private_key is not None:
            symmetric_key = derive_symmetric_key(metadata.base64_encrypted_key, private_key)
            cipher_sequence = CipherSequence(metadata.instance_id, symmetric_key)
            if metadata.encrypted_signature:
                signature = decrypt_signature(metadata.encrypted_signature, private_key)

        return cls(metadata, root, cipher_sequence, signature)

    @property
    def validation_status(self) -> ValidationStatus:
        return self._validation_status

    def set_validation_status(self, status: ValidationStatus) -> None:
        """
        Record the outcome of validation.

        Raises:
            ValueError: If the status was already set
        """
        if self._validation_status is not ValidationStatus.NOT_VALIDATED:
            raise ValueError(f"Validation status already set to {self._validation_status.value}")
        self._validation_status = status

    @property
    def submission_dir(self) -> Path:
        return self.metadata.submission_file.parent

    def media_files(self) -> List[Tuple[str, Path]]:
        """
        Declared media files that are actually on disk, in manifest order.

        Each declared name comes paired with the file it was saved as. A name
        that can't be saved at all counts as missing.
        """
        found = []
        for name in self.metadata.attachment_filenames:
            try:
                path = self.submission_dir / safe_name(name)
            except ValueError:
                continue
            if path.exists():
                found.append((name, path))
        return found

    def next_cipher(self):
        if self.cipher_sequence is None:
            raise CryptoError(f"No cipher available for {self.metadata.instance_id}")
        return next(self.cipher_sequence)


def build_signature(
    metadata: SubmissionMetadata, media_files: List[Tuple[str, Path]], submission_file: Path
) -> str:
    """
    Build the signature string of a decrypted submission.

    metadata is the encrypted submission's metadata; media_files pairs the
    name the client gave each decrypted media file with the file itself,
    and submission_file is the decrypted submission.
    """
    if not metadata.base64_encrypted_key:
        raise CryptoError("Missing base64EncryptedKey element in encrypted submission")
    parts = [metadata.form_id]
    if metadata.key.version:
        parts.append(metadata.key.version)
    parts.append(metadata.base64_encrypted_key)
    parts.append(metadata.instance_id)
    for name, media_file in media_files:
        parts.append(f"{name}::{md5_hex(media_file)}")
    parts.append(f"{SUBMISSION_FILENAME}::{md5_hex(submission_file)}")
    return "\n".join(parts) + "\n"


def signature_digest(signature: str) -> bytes:
    return hashlib.md5(signature.encode("utf-8")).digest()


def decrypt_submission(parsed: ParsedSubmission, output_dir: Path) -> Optional[ParsedSubmission]:
    """
    Decrypt an encrypted submission into output_dir and validate it.

    Media files are decrypted first, in manifest order, then the submission
    XML. Returns None when a declared media file is missing, since the
    cipher order can't be recovered then.

    Raises:
        CryptoError: If anything about decrypting this submission fails
    """
    metadata = parsed.metadata
    media_files = parsed.media_files()
    if len(media_files) != len(metadata.attachment_filenames):
        log_with_context(
            logger,
            logging.WARNING,
            "Skipping submission with missing media files",
            form_id=metadata.form_id,
            instance_id=metadata.instance_id,
            total=len(metadata.attachment_filenames),
        )
        return None

    if not metadata.encrypted_xml_filename:
        raise CryptoError(f"Submission {metadata.instance_id} has no encrypted XML file")
    encrypted_file = parsed.submission_dir / metadata.encrypted_xml_filename
    if not encrypted_file.exists():
        raise CryptoError(f"Encrypted file not found: {encrypted_file.name}")

    try:
        decrypted_media = []
        for name, path in media_files:
            name = strip_enc_extension(name)
            target = output_dir / safe_name(name)
            decrypted_media.append((name, decrypt_file(path, target, parsed.next_cipher())))
        decrypted_file = decrypt_file(
            encrypted_file, output_dir / SUBMISSION_FILENAME, parsed.next_cipher()
        )
        root = parse_xml(decrypted_file.read_text(encoding="utf-8"))
    except (ParsingError, UnicodeDecodeError, OSError, ValueError) as e:
        raise CryptoError(f"Can't decrypt submission {metadata.instance_id}", cause=e) from e

    decrypted = ParsedSubmission(
        metadata=SubmissionMetadata(
            key=metadata.key,
            submission_file=decrypted_file,
            submission_date=metadata.submission_date,
            attachment_filenames=[path.name for _, path in decrypted_media],
        ),
        root=root,
    )

    expected = signature_digest(build_signature(metadata, decrypted_media, decrypted_file))
    is_valid = parsed.signature is not None and hmac.compare_digest(parsed.signature, expected)
    decrypted.set_validation_status(ValidationStatus.VALID if is_valid else ValidationStatus.NOT_VALID)
    log_with_context(
        logger,
        logging.DEBUG,
        "Submission decrypted",
        form_id=metadata.form_id,
        instance_id=metadata.instance_id,
        outcome=decrypted.validation_status.value,
    )
    return decrypted
