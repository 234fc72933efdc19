"""
Tests for submission decryption and signature validation.

Submissions are encrypted here the way a data collection client does it,
with the helpers in encrypted_submissions.
"""

import hashlib

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from collect_pipeline.crypto import (
    CipherSequence,
    ParsedSubmission,
    ValidationStatus,
    decrypt_submission,
    load_private_key,
    strip_enc_extension,
)
from collect_pipeline.errors import CryptoError
from collect_pipeline.models import SubmissionMetadata
from collect_pipeline.storage.layout import safe_name
from encrypted_submissions import encrypted_submission

INSTANCE_ID = "uuid:5ee2ba1c-7a6e-4b2a-9b0d-3a1f0c4e2d11"
SUBMISSION_XML = (
    '<census id="census" version="3"><name>Ada</name>'
    f"<meta><instanceID>{INSTANCE_ID}</instanceID></meta></census>"
)
PHOTO = bytes(range(256)) * 3


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def write_encrypted_submission(directory, private_key, media=None, media_name="photo.jpg"):
    """Lay out an encrypted submission as a pull would leave it on disk."""
    media = PHOTO if media is None else media
    files = encrypted_submission(
        private_key, "census", "3", INSTANCE_ID, SUBMISSION_XML, {media_name: media}
    )
    directory.mkdir(parents=True, exist_ok=True)
    for name, content in files.items():
        (directory / safe_name(name)).write_bytes(content)
    return SubmissionMetadata.from_file(directory / "submission.xml")


class TestCipherSequence:
    def test_ivs_bump_one_byte_at_a_time(self):
        key = bytes(16)
        seed = hashlib.md5(b"uuid:1" + key).digest()
        sequence = CipherSequence("uuid:1", key)

        first = sequence.next_iv()
        second = sequence.next_iv()

        assert first[0] == (seed[0] + 1) % 256
        assert first[1:] == seed[1:]
        assert second[0] == first[0]
        assert second[1] == (seed[1] + 1) % 256
        assert sequence.counter == 2

    def test_wraps_around_after_sixteen(self):
        key = bytes(16)
        seed = hashlib.md5(b"uuid:1" + key).digest()
        sequence = CipherSequence("uuid:1", key)

        for _ in range(17):
            iv = sequence.next_iv()

        assert iv[0] == (seed[0] + 2) % 256
        assert iv[1] == (seed[1] + 1) % 256

    def test_rejects_bad_key_length(self):
        with pytest.raises(CryptoError):
            CipherSequence("uuid:1", b"short")


class TestDecryptSubmission:
    def test_metadata_of_encrypted_submission(self, tmp_path, private_key):
        metadata = write_encrypted_submission(tmp_path / "in", private_key)

        assert metadata.is_encrypted
        assert metadata.instance_id == INSTANCE_ID
        assert metadata.key.version == "3"
        assert metadata.encrypted_xml_filename == "submission.xml.enc"
        assert metadata.attachment_filenames == ["photo.jpg.enc"]

    def test_valid_submission(self, tmp_path, private_key):
        metadata = write_encrypted_submission(tmp_path / "in", private_key)

        parsed = ParsedSubmission.from_metadata(metadata, private_key)
        decrypted = decrypt_submission(parsed, tmp_path / "out")

        assert decrypted.validation_status is ValidationStatus.VALID
        assert (tmp_path / "out" / "submission.xml").read_text() == SUBMISSION_XML
        assert (tmp_path / "out" / "photo.jpg").read_bytes() == PHOTO
        assert decrypted.metadata.attachment_filenames == ["photo.jpg"]

    def test_media_name_saved_under_a_safe_name(self, tmp_path, private_key):
        metadata = write_encrypted_submission(tmp_path / "in", private_key, media_name="photo:1.jpg")

        parsed = ParsedSubmission.from_metadata(metadata, private_key)
        decrypted = decrypt_submission(parsed, tmp_path / "out")

        assert metadata.attachment_filenames == ["photo:1.jpg.enc"]
        assert decrypted.validation_status is ValidationStatus.VALID
        assert (tmp_path / "out" / "photo1.jpg").read_bytes() == PHOTO
        assert decrypted.metadata.attachment_filenames == ["photo1.jpg"]

    def test_tampered_media_is_not_valid(self, tmp_path, private_key):
        metadata = write_encrypted_submission(tmp_path / "in", private_key)
        encrypted_photo = tmp_path / "in" / "photo.jpg.enc"
        data = bytearray(encrypted_photo.read_bytes())
        data[0] ^= 0x01
        encrypted_photo.write_bytes(bytes(data))

        parsed = ParsedSubmission.from_metadata(metadata, private_key)
        decrypted = decrypt_submission(parsed, tmp_path / "out")

        assert decrypted.validation_status is ValidationStatus.NOT_VALID

    def test_flipped_signature_byte_is_not_valid(self, tmp_path, private_key):
        metadata = write_encrypted_submission(tmp_path / "in", private_key)
        parsed = ParsedSubmission.from_metadata(metadata, private_key)
        parsed.signature = bytes([parsed.signature[0] ^ 0x01]) + parsed.signature[1:]

        decrypted = decrypt_submission(parsed, tmp_path / "out")

        assert decrypted.validation_status is ValidationStatus.NOT_VALID
        assert (tmp_path / "out" / "submission.xml").read_text() == SUBMISSION_XML

    def test_missing_media_skips_submission(self, tmp_path, private_key):
        metadata = write_encrypted_submission(tmp_path / "in", private_key)
        (tmp_path / "in" / "photo.jpg.enc").unlink()

        parsed = ParsedSubmission.from_metadata(metadata, private_key)

        assert decrypt_submission(parsed, tmp_path / "out") is None
        assert not (tmp_path / "out").exists()

    def test_wrong_key_raises(self, tmp_path, private_key):
        metadata = write_encrypted_submission(tmp_path / "in", private_key)
        other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

        with pytest.raises(CryptoError):
            ParsedSubmission.from_metadata(metadata, other_key)

    def test_validation_status_is_set_once(self, tmp_path, private_key):
        metadata = write_encrypted_submission(tmp_path / "in", private_key)
        decrypted = decrypt_submission(ParsedSubmission.from_metadata(metadata, private_key), tmp_path / "out")

        with pytest.raises(ValueError):
            decrypted.set_validation_status(ValidationStatus.VALID)


class TestKeyFiles:
    def test_load_pem_key(self, tmp_path, private_key):
        path = tmp_path / "key.pem"
        path.write_bytes(
            private_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )

        loaded = load_private_key(path)

        assert loaded.public_key().public_numbers() == private_key.public_key().public_numbers()

    def test_invalid_key_file(self, tmp_path):
        path = tmp_path / "key.pem"
        path.write_text("not a key")

        with pytest.raises(CryptoError):
            load_private_key(path)

    @pytest.mark.parametrize(
        "name,expected",
        [("photo.jpg.enc", "photo.jpg"), ("submission.xml", "submission.xml")],
    )
    def test_strip_enc_extension(self, name, expected):
        assert strip_enc_extension(name) == expected
