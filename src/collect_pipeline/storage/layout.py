"""
Local filesystem layout.

    {storage}/forms/{formId}/{formId}.xml
    {storage}/forms/{formId}/form-media/{filename}
    {storage}/forms/{formId}/submissions/{instanceId}/submission.xml
    {storage}/forms/{formId}/submissions/{instanceId}/{attachment}
    {storage}/decrypted/{formId}/{instanceId}/submission.xml

Paths are partitioned by form and instance ID so concurrent writers never
share a file. Names coming from servers are stripped of path separators
before use.
"""

import re
from pathlib import Path

SUBMISSION_FILENAME = "submission.xml"
ENCRYPTED_SUBMISSION_FILENAME = "submission.xml.enc"

_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def safe_name(value: str) -> str:
    """
    Make a server-provided name usable as a single path component.

    "uuid:1234" -> "uuid1234"
    """
    cleaned = _UNSAFE_CHARS.sub("", value).strip()
    if cleaned in ("", ".", ".."):
        raise ValueError(f"Unusable file name: {value!r}")
    return cleaned


def form_dir(storage_dir: Path, form_id: str) -> Path:
    return storage_dir / "forms" / safe_name(form_id)


def form_file(storage_dir: Path, form_id: str) -> Path:
    return form_dir(storage_dir, form_id) / f"{safe_name(form_id)}.xml"


def form_media_dir(storage_dir: Path, form_id: str) -> Path:
    return form_dir(storage_dir, form_id) / "form-media"


def form_media_file(storage_dir: Path, form_id: str, filename: str) -> Path:
    return form_media_dir(storage_dir, form_id) / safe_name(filename)


def submissions_dir(storage_dir: Path, form_id: str) -> Path:
    return form_dir(storage_dir, form_id) / "submissions"


def submission_dir(storage_dir: Path, form_id: str, instance_id: str) -> Path:
    return submissions_dir(storage_dir, form_id) / safe_name(instance_id)


def submission_file(storage_dir: Path, form_id: str, instance_id: str) -> Path:
    return submission_dir(storage_dir, form_id, instance_id) / SUBMISSION_FILENAME


def submission_media_file(
    storage_dir: Path, form_id: str, instance_id: str, filename: str
) -> Path:
    return submission_dir(storage_dir, form_id, instance_id) / safe_name(filename)


def decrypted_submission_dir(storage_dir: Path, form_id: str, instance_id: str) -> Path:
    return storage_dir / "decrypted" / safe_name(form_id) / safe_name(instance_id)
