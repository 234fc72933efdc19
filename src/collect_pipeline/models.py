"""
Domain values of the pull engine.

FormMetadata and SubmissionMetadata are the records persisted through the
metadata store; the rest are transient values produced while pulling.
"""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from collect_pipeline.cursor import Cursor, EmptyCursor, cursor_from_dict, parse_datetime
from collect_pipeline.errors import ParsingError
from collect_pipeline.xmlutil import (
    elements,
    find_child,
    find_first,
    first_text,
    iter_named,
    parse_xml,
    serialize,
    text_of,
)


def md5_hex(path: Path) -> str:
    """Lowercase hex MD5 digest of a file, read in chunks."""
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(64 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


# =============================================================================
# Forms
# =============================================================================


@dataclass(frozen=True)
class FormKey:
    """Identifies a form across both server dialects."""

    form_id: str
    version: Optional[str] = None

    def __str__(self) -> str:
        if self.version:
            return f"{self.form_id} (version {self.version})"
        return self.form_id


@dataclass(frozen=True)
class FormMetadata:
    """
    Everything we know locally about one form.

    Attributes:
        key: Form identity
        form_name: Human readable title, when the server gives one
        form_file: Local path of the blank form, once downloaded
        manifest_url: Where the form's attachment manifest lives
        download_url: Where the blank form lives, when the server told us
        cursor: Resume point saved by the last fully enumerated pull
    """

    key: FormKey
    form_name: Optional[str] = None
    form_file: Optional[Path] = None
    manifest_url: Optional[str] = None
    download_url: Optional[str] = None
    cursor: Cursor = field(default_factory=EmptyCursor)

    @property
    def form_id(self) -> str:
        return self.key.form_id

    def with_cursor(self, cursor: Cursor) -> "FormMetadata":
        return replace(self, cursor=cursor)

    def with_form_file(self, form_file: Path) -> "FormMetadata":
        return replace(self, form_file=form_file)

    def merge(self, discovered: "FormMetadata") -> "FormMetadata":
        """
        Combine a stored record with a freshly listed one.

        Server-provided URLs and names win; the local file and cursor are kept.
        """
        return replace(
            self,
            key=discovered.key,
            form_name=discovered.form_name or self.form_name,
            manifest_url=discovered.manifest_url or self.manifest_url,
            download_url=discovered.download_url or self.download_url,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "form_id": self.key.form_id,
            "version": self.key.version,
            "form_name": self.form_name,
            "form_file": str(self.form_file) if self.form_file else None,
            "manifest_url": self.manifest_url,
            "download_url": self.download_url,
            "cursor": self.cursor.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormMetadata":
        return cls(
            key=FormKey(data["form_id"], data.get("version")),
            form_name=data.get("form_name"),
            form_file=Path(data["form_file"]) if data.get("form_file") else None,
            manifest_url=data.get("manifest_url"),
            download_url=data.get("download_url"),
            cursor=cursor_from_dict(data.get("cursor")),
        )


# =============================================================================
# Attachments and batches
# =============================================================================


@dataclass(frozen=True)
class Attachment:
    """A file listed in a form manifest or a submission's media list."""

    filename: str
    hash: Optional[str]
    download_url: str

    def needs_update(self, target: Path) -> bool:
        """
        Whether the local copy at target is missing or stale.

        Only "md5:" hashes can be checked; anything else is always fetched.
        """
        if not self.hash or not self.hash.startswith("md5:"):
            return True
        if not target.exists():
            return True
        return self.hash.lower() != f"md5:{md5_hex(target)}".lower()


@dataclass(frozen=True)
class InstanceIdBatch:
    """One page of instance IDs and the cursor that follows it."""

    instance_ids: List[str]
    cursor: Cursor

    @classmethod
    def placeholder(cls, cursor: Cursor) -> "InstanceIdBatch":
        return cls(instance_ids=[], cursor=cursor)

    def __len__(self) -> int:
        return len(self.instance_ids)


# =============================================================================
# Submissions
# =============================================================================


@dataclass(frozen=True)
class SubmissionKey:
    """Identifies one submission of one form."""

    form_id: str
    version: Optional[str]
    instance_id: str


@dataclass(frozen=True)
class DownloadedSubmission:
    """
    One submission as fetched from the server, before it's persisted.

    Attributes:
        xml: Serialized submission instance
        instance_id: Its instance ID
        form_version: Form version the submission claims
        attachments: Media files listed alongside it, in server order
        file: Local submission file, once written
    """

    xml: str
    instance_id: str
    form_version: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    file: Optional[Path] = None

    def with_file(self, file: Path) -> "DownloadedSubmission":
        return replace(self, file=file)

    @classmethod
    def from_xml(cls, text: str) -> "DownloadedSubmission":
        """
        Parse a legacy downloadSubmission envelope.

            <submission>
              <data><census id="census" instanceID="uuid:...">...</census></data>
              <mediaFile>...</mediaFile>
            </submission>

        Raises:
            ParsingError: If there is no instance under <data> or it has no
                instance ID
        """
        root = parse_xml(text)
        data = find_first(root, "data")
        children = elements(data) if data is not None else []
        if not children:
            raise ParsingError("Submission has no instance under <data>")
        instance = children[0]

        instance_id = first_text(instance, "instanceID") or instance.get("instanceID")
        if not instance_id:
            raise ParsingError("Submission has no instance ID")

        return cls(
            xml=serialize(instance),
            instance_id=instance_id,
            form_version=instance.get("version"),
            attachments=parse_media_files(root),
        )


def parse_media_files(root: Any) -> List[Attachment]:
    """
    Read every <mediaFile> under root.

    Entries missing a filename, hash or download URL are skipped.
    """
    attachments = []
    for media_file in iter_named(root, "mediaFile"):
        filename = text_of(find_child(media_file, "filename"))
        hash_value = text_of(find_child(media_file, "hash"))
        download_url = text_of(find_child(media_file, "downloadUrl"))
        if filename and hash_value and download_url:
            attachments.append(Attachment(filename, hash_value, download_url))
    return attachments


def regularize_datetime(value: str) -> str:
    """
    Give submission dates a full offset.

    "2018-04-26T08:58:20.525Z" -> "2018-04-26T08:58:20.525+00:00"
    "2018-05-13T17:32:57+00"   -> "2018-05-13T17:32:57+00:00"
    """
    if value.endswith("Z"):
        return value[:-1] + "+00:00"
    if len(value) - value.rfind(":") == 3:
        return value
    return value + ":00"


@dataclass(frozen=True)
class SubmissionMetadata:
    """
    Persisted record of one pulled submission.

    Created once, on the first successful pull of the submission; afterwards
    it only answers "has this been pulled already?".
    """

    key: SubmissionKey
    submission_file: Optional[Path] = None
    submission_date: Optional[datetime] = None
    encrypted_xml_filename: Optional[str] = None
    base64_encrypted_key: Optional[str] = None
    encrypted_signature: Optional[str] = None
    attachment_filenames: List[str] = field(default_factory=list)

    @property
    def form_id(self) -> str:
        return self.key.form_id

    @property
    def instance_id(self) -> str:
        return self.key.instance_id

    @property
    def is_encrypted(self) -> bool:
        return self.base64_encrypted_key is not None

    @classmethod
    def from_xml(
        cls, text: str, submission_file: Optional[Path] = None
    ) -> "SubmissionMetadata":
        """
        Read the metadata out of a submission document.

        Raises:
            ParsingError: If the form id or instance ID are missing
        """
        return cls.from_element(parse_xml(text), submission_file)

    @classmethod
    def from_element(cls, root: Any, submission_file: Optional[Path] = None) -> "SubmissionMetadata":
        form_id = root.get("id") or root.get("xmlns")
        if not form_id:
            raise ParsingError("Unable to extract form id")
        instance_id = first_text(root, "instanceID") or root.get("instanceID")
        if not instance_id:
            raise ParsingError("Unable to extract instance ID")

        submission_date = None
        raw_date = root.get("submissionDate")
        if raw_date:
            try:
                submission_date = parse_datetime(regularize_datetime(raw_date))
            except ValueError as e:
                raise ParsingError(f"Invalid submission date: {raw_date!r}", cause=e) from e

        media_names = []
        for media in iter_named(root, "media"):
            file_name = text_of(find_child(media, "file"))
            if file_name:
                media_names.append(file_name)

        return cls(
            key=SubmissionKey(form_id, root.get("version"), instance_id),
            submission_file=submission_file,
            submission_date=submission_date,
            encrypted_xml_filename=first_text(root, "encryptedXmlFile"),
            base64_encrypted_key=first_text(root, "base64EncryptedKey"),
            encrypted_signature=first_text(root, "base64EncryptedElementSignature"),
            attachment_filenames=media_names,
        )

    @classmethod
    def from_file(cls, path: Path) -> "SubmissionMetadata":
        return cls.from_xml(path.read_text(encoding="utf-8"), submission_file=path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "form_id": self.key.form_id,
            "version": self.key.version,
            "instance_id": self.key.instance_id,
            "submission_file": str(self.submission_file) if self.submission_file else None,
            "submission_date": self.submission_date.isoformat() if self.submission_date else None,
            "encrypted_xml_filename": self.encrypted_xml_filename,
            "base64_encrypted_key": self.base64_encrypted_key,
            "encrypted_signature": self.encrypted_signature,
            "attachment_filenames": list(self.attachment_filenames),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubmissionMetadata":
        return cls(
            key=SubmissionKey(data["form_id"], data.get("version"), data["instance_id"]),
            submission_file=Path(data["submission_file"]) if data.get("submission_file") else None,
            submission_date=(
                datetime.fromisoformat(data["submission_date"])
                if data.get("submission_date")
                else None
            ),
            encrypted_xml_filename=data.get("encrypted_xml_filename"),
            base64_encrypted_key=data.get("base64_encrypted_key"),
            encrypted_signature=data.get("encrypted_signature"),
            attachment_filenames=list(data.get("attachment_filenames") or []),
        )
