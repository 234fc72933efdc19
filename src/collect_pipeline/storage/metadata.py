"""
Form and submission metadata stores.

The pull engine only talks to the MetadataStore protocol: it reads a form's
saved cursor, upserts the form at the end of a pull, asks whether an
instance has been pulled already and records each new submission as soon as
it's on disk.

Two implementations:
- InMemoryMetadataStore: for tests and one-shot runs
- JsonFileMetadataStore: a JSON document, rewritten atomically when a form
  is saved, plus an append-only journal of submissions
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from core.logging.utilities import LoggedClass, logged_operation

from collect_pipeline.models import FormKey, FormMetadata, SubmissionMetadata

DEFAULT_METADATA_FILENAME = "metadata.json"
JOURNAL_SUFFIX = ".journal.jsonl"


class MetadataStore(Protocol):
    """Query/command contract of the metadata store."""

    def get_form(self, key: FormKey) -> Optional[FormMetadata]:
        ...

    def upsert_form(self, form: FormMetadata) -> None:
        ...

    def has_been_already_pulled(self, form_id: str, instance_id: str) -> bool:
        ...

    def insert_submission(self, submission: SubmissionMetadata) -> None:
        ...

    def submissions_for(self, form_id: str) -> List[SubmissionMetadata]:
        ...


def _form_key(key: FormKey) -> str:
    return f"{key.form_id}@{key.version}" if key.version else key.form_id


class InMemoryMetadataStore:
    """Dict-backed store."""

    def __init__(self):
        self._forms: Dict[str, FormMetadata] = {}
        self._submissions: Dict[str, Dict[str, SubmissionMetadata]] = {}
        super().__init__()

    def get_form(self, key: FormKey) -> Optional[FormMetadata]:
        return self._forms.get(_form_key(key))

    def upsert_form(self, form: FormMetadata) -> None:
        self._forms[_form_key(form.key)] = form

    def has_been_already_pulled(self, form_id: str, instance_id: str) -> bool:
        return instance_id in self._submissions.get(form_id, {})

    def insert_submission(self, submission: SubmissionMetadata) -> None:
        self._submissions.setdefault(submission.form_id, {})[submission.instance_id] = submission

    def submissions_for(self, form_id: str) -> List[SubmissionMetadata]:
        return list(self._submissions.get(form_id, {}).values())

    def forms(self) -> List[FormMetadata]:
        return list(self._forms.values())


class JsonFileMetadataStore(InMemoryMetadataStore, LoggedClass):
    """
    Store persisted as one JSON document plus a submission journal.

    Forms are few and change once per pull, so every upsert rewrites the
    document atomically. Submissions arrive by the thousand, so each insert
    appends one JSON line to the journal next to the document instead. The
    journal is folded into the document when the store loads and whenever a
    form is saved.

    Memory is only updated after the write succeeded, so a failed write
    never makes a submission look pulled. Methods may be called from worker
    threads (asyncio.to_thread); a lock serializes file access.

    Usage:
        store = JsonFileMetadataStore(Path("storage") / "metadata.json")
        form = store.get_form(FormKey("census"))
        ...
        store.upsert_form(form.with_cursor(new_cursor))

    Document shape:
        {
          "forms": {"census": {...FormMetadata.to_dict()...}},
          "submissions": {"census": {"uuid:1": {...}}}
        }

    Journal shape (metadata.journal.jsonl), one SubmissionMetadata.to_dict()
    per line.
    """

    log_component = "metadata"

    def __init__(self, file_path: Path):
        self.file_path = file_path
        self.journal_path = file_path.with_name(f"{file_path.stem}{JOURNAL_SUFFIX}")
        self._lock = threading.Lock()
        super().__init__()
        self._load()

    def _load(self) -> None:
        document = self._read_document()
        for data in document.get("forms", {}).values():
            form = FormMetadata.from_dict(data)
            self._forms[_form_key(form.key)] = form
        for form_id, submissions in document.get("submissions", {}).items():
            self._submissions[form_id] = {
                instance_id: SubmissionMetadata.from_dict(data)
                for instance_id, data in submissions.items()
            }

        replayed = self._replay_journal()
        if replayed:
            self._compact()

        self._log(
            logging.DEBUG,
            "Loaded metadata",
            file_path=str(self.file_path),
            total=len(self._forms),
            replayed=replayed,
        )

    def _read_document(self) -> Dict[str, Any]:
        if not self.file_path.exists():
            return {}
        text = self.file_path.read_text(encoding="utf-8").strip()
        if not text:
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            self._log_exception(
                e,
                "Invalid metadata file",
                file_path=str(self.file_path),
            )
            raise

    def _replay_journal(self) -> int:
        """Apply journaled submissions; returns how many lines were applied."""
        if not self.journal_path.exists():
            return 0
        lines = self.journal_path.read_text(encoding="utf-8").splitlines()
        replayed = 0
        for number, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                submission = SubmissionMetadata.from_dict(json.loads(line))
            except json.JSONDecodeError as e:
                if number == len(lines):
                    # Interrupted append; that submission gets pulled again
                    self._log(
                        logging.WARNING,
                        "Ignoring truncated journal line",
                        file_path=str(self.journal_path),
                        line=number,
                    )
                    break
                self._log_exception(
                    e,
                    "Invalid metadata journal",
                    file_path=str(self.journal_path),
                    line=number,
                )
                raise
            super().insert_submission(submission)
            replayed += 1
        return replayed

    def _document(self) -> Dict[str, Any]:
        return {
            "forms": {key: form.to_dict() for key, form in self._forms.items()},
            "submissions": {
                form_id: {
                    instance_id: submission.to_dict()
                    for instance_id, submission in submissions.items()
                }
                for form_id, submissions in self._submissions.items()
            },
        }

    def _write_file(self) -> None:
        """Write the document atomically."""
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.file_path.with_suffix(".tmp")
        try:
            temp_path.write_text(
                json.dumps(self._document(), indent=2, sort_keys=True),
                encoding="utf-8",
            )
            temp_path.replace(self.file_path)  # Atomic on POSIX
        except OSError as e:
            self._log_exception(
                e,
                "Failed to write metadata",
                file_path=str(self.file_path),
            )
            if temp_path.exists():
                temp_path.unlink()
            raise

    def _compact(self) -> None:
        """Fold the journal into the document."""
        self._write_file()
        self.journal_path.unlink(missing_ok=True)

    def _append_journal(self, submission: SubmissionMetadata) -> None:
        line = json.dumps(submission.to_dict(), sort_keys=True)
        try:
            self.journal_path.parent.mkdir(parents=True, exist_ok=True)
            with self.journal_path.open("a", encoding="utf-8") as journal:
                journal.write(line + "\n")
        except OSError as e:
            self._log_exception(
                e,
                "Failed to journal submission",
                file_path=str(self.journal_path),
                form_id=submission.form_id,
                instance_id=submission.instance_id,
            )
            raise

    @logged_operation(level=logging.DEBUG)
    def upsert_form(self, form: FormMetadata) -> None:
        key = _form_key(form.key)
        with self._lock:
            previous = self._forms.get(key)
            super().upsert_form(form)
            try:
                self._write_file()
            except OSError:
                if previous is None:
                    del self._forms[key]
                else:
                    self._forms[key] = previous
                raise
            self.journal_path.unlink(missing_ok=True)
        self._log(
            logging.INFO,
            "Form metadata saved",
            form_id=form.form_id,
            cursor=form.cursor.type_name,
        )

    def has_been_already_pulled(self, form_id: str, instance_id: str) -> bool:
        with self._lock:
            return super().has_been_already_pulled(form_id, instance_id)

    def insert_submission(self, submission: SubmissionMetadata) -> None:
        with self._lock:
            self._append_journal(submission)
            super().insert_submission(submission)

    def submissions_for(self, form_id: str) -> List[SubmissionMetadata]:
        with self._lock:
            return super().submissions_for(form_id)
