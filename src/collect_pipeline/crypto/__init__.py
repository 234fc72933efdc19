"""Decryption and validation of encrypted submissions."""

from collect_pipeline.crypto.cipher import (
    CipherSequence,
    decrypt_file,
    decrypt_signature,
    derive_symmetric_key,
    load_private_key,
    strip_enc_extension,
)
from collect_pipeline.crypto.submission import (
    ParsedSubmission,
    ValidationStatus,
    build_signature,
    decrypt_submission,
    signature_digest,
)

__all__ = [
    "CipherSequence",
    "ParsedSubmission",
    "ValidationStatus",
    "build_signature",
    "decrypt_file",
    "decrypt_signature",
    "decrypt_submission",
    "derive_symmetric_key",
    "load_private_key",
    "signature_digest",
    "strip_enc_extension",
]
