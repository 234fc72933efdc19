"""
Progress tracking for form pulls.

PullTracker turns every pull lifecycle transition into a PullEvent, hands it
to the callback injected by whoever started the pull, and logs it. Error
transitions also flip the tracker's errored flag, which decides whether the
pull ends as "Success" or "Success with errors".

The tracker is a plain observer: no retries, no blocking, no shared state
beyond one pull.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from core.logging.utilities import LoggedClass

from collect_pipeline import metrics


@dataclass(frozen=True)
class PullEvent:
    """One progress message of one form pull."""

    form_id: str
    message: str
    level: int = logging.INFO
    is_error: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


PullEventCallback = Callable[[PullEvent], None]


def _ignore(event: PullEvent) -> None:
    pass


class PullTracker(LoggedClass):
    """
    Publishes progress events for one form pull.

    Usage:
        events = []
        tracker = PullTracker("census", events.append)
        tracker.track_start()
        ...
        tracker.track_end()
        assert events[-1].message in ("Success", "Success with errors")
    """

    log_component = "tracker"

    def __init__(
        self,
        form_id: str,
        callback: Optional[PullEventCallback] = None,
        server_type: str = "aggregate",
    ):
        self.form_id = form_id
        self.server_type = server_type
        self.errored = False
        self._callback = callback or _ignore
        super().__init__()

    def _notify(self, message: str, level: int = logging.INFO, **extra) -> None:
        self._log(level, f"Pull {self.form_id} - {message}", **extra)
        event = PullEvent(
            form_id=self.form_id,
            message=message,
            level=level,
            is_error=level >= logging.ERROR,
        )
        try:
            self._callback(event)
        except Exception as e:
            self._log_exception(e, "Pull event callback failed", level=logging.WARNING)

    def _error(self, message: str, step: str, reason: Optional[str] = None, **extra) -> None:
        self.errored = True
        metrics.record_pull_error(self.form_id, step)
        if reason:
            message = f"{message}: {reason}"
        self._notify(message, logging.ERROR, step=step, **extra)

    # -------------------------------------------------------------------------
    # Pull lifecycle
    # -------------------------------------------------------------------------

    def track_start(self) -> None:
        self._notify("Start pulling form and submissions")

    def track_end(self) -> None:
        self._notify("Success with errors" if self.errored else "Success")

    def track_cancellation(self, job: str) -> None:
        self._notify(f"Operation cancelled - {job}", logging.WARNING, job=job)

    # -------------------------------------------------------------------------
    # Blank form
    # -------------------------------------------------------------------------

    def track_start_downloading_form(self) -> None:
        self._notify("Start downloading form")

    def track_end_downloading_form(self) -> None:
        self._notify("Form downloaded")

    def track_error_downloading_form(self, reason: Optional[str] = None) -> None:
        self._error("Error downloading form", "form", reason)

    # -------------------------------------------------------------------------
    # Form attachments
    # -------------------------------------------------------------------------

    def track_start_getting_form_manifest(self) -> None:
        self._notify("Start getting form manifest")

    def track_end_getting_form_manifest(self) -> None:
        self._notify("Got the form manifest")

    def track_error_getting_form_manifest(self, reason: Optional[str] = None) -> None:
        self._error("Error getting form manifest", "form_manifest", reason)

    def track_start_getting_form_attachments(self) -> None:
        self._notify("Start getting form attachments")

    def track_end_getting_form_attachments(self) -> None:
        self._notify("Got all form attachments")

    def track_error_getting_form_attachments(self, reason: Optional[str] = None) -> None:
        self._error("Error getting form attachments", "form_attachments", reason)

    def track_ignored_form_attachments(self, skipped: int, total: int) -> None:
        if skipped > 0:
            self._notify(
                f"Skipping {skipped} form attachments that have been already downloaded",
                skipped=skipped,
                total=total,
            )

    def track_non_existing_form_attachments(self, existing: int, total: int) -> None:
        if existing < total:
            self._notify(
                f"Server is missing {total - existing} form attachments",
                logging.WARNING,
                total=total,
            )

    def track_start_downloading_form_attachment(self, index: int, total: int) -> None:
        self._notify(f"Start downloading form attachment {index} of {total}")

    def track_end_downloading_form_attachment(self, index: int, total: int) -> None:
        metrics.record_attachment_downloaded(self.form_id, "form")
        self._notify(f"Form attachment {index} of {total} downloaded")

    def track_error_downloading_form_attachment(
        self, index: int, total: int, reason: Optional[str] = None
    ) -> None:
        self._error(
            f"Error downloading form attachment {index} of {total}",
            "form_attachment",
            reason,
        )

    # -------------------------------------------------------------------------
    # Submission IDs
    # -------------------------------------------------------------------------

    def track_start_getting_submission_ids(self) -> None:
        self._notify("Start getting submission IDs")

    def track_end_getting_submission_ids(self) -> None:
        self._notify("Got all the submission IDs")

    def track_error_getting_submission_ids(self, reason: Optional[str] = None) -> None:
        self._error("Error getting submission IDs", "submission_ids", reason)

    def track_error_getting_instance_id_batches(self, reason: Optional[str] = None) -> None:
        self._error("Error getting batches of instance IDs", "submission_ids", reason)

    def track_no_submissions(self) -> None:
        self._notify("There are no submissions to download")

    # -------------------------------------------------------------------------
    # Submissions
    # -------------------------------------------------------------------------

    def track_submission_already_downloaded(self, index: int, total: int) -> None:
        metrics.record_submission_skipped(self.form_id)
        self._notify(f"Skipping submission {index} of {total}: already downloaded")

    def track_start_downloading_submission(self, index: int, total: int) -> None:
        self._notify(f"Start downloading submission {index} of {total}")

    def track_end_downloading_submission(self, index: int, total: int) -> None:
        metrics.record_submission_downloaded(self.form_id)
        self._notify(f"Submission {index} of {total} downloaded")

    def track_error_downloading_submission(
        self, index: int, total: int, reason: Optional[str] = None
    ) -> None:
        self._error(
            f"Error downloading submission {index} of {total}",
            "submission",
            reason,
        )

    def track_error_saving_submission(
        self, index: int, total: int, reason: Optional[str] = None
    ) -> None:
        self._error(
            f"Error saving submission {index} of {total}",
            "submission",
            reason,
        )

    # -------------------------------------------------------------------------
    # Submission attachments
    # -------------------------------------------------------------------------

    def track_start_getting_submission_attachments(self, index: int, total: int) -> None:
        self._notify(f"Start getting attachments of submission {index} of {total}")

    def track_end_getting_submission_attachments(self, index: int, total: int) -> None:
        self._notify(f"Got all the attachments of submission {index} of {total}")

    def track_error_getting_submission_attachments(
        self, index: int, total: int, reason: Optional[str] = None
    ) -> None:
        self._error(
            f"Error getting attachments of submission {index} of {total}",
            "submission_attachments",
            reason,
        )

    def track_start_downloading_submission_attachment(
        self, index: int, total: int, attachment_index: int, attachment_total: int
    ) -> None:
        self._notify(
            f"Start downloading attachment {attachment_index} of {attachment_total} "
            f"of submission {index} of {total}"
        )

    def track_end_downloading_submission_attachment(
        self, index: int, total: int, attachment_index: int, attachment_total: int
    ) -> None:
        metrics.record_attachment_downloaded(self.form_id, "submission")
        self._notify(
            f"Attachment {attachment_index} of {attachment_total} "
            f"of submission {index} of {total} downloaded"
        )

    def track_error_downloading_submission_attachment(
        self,
        index: int,
        total: int,
        attachment_index: int,
        attachment_total: int,
        reason: Optional[str] = None,
    ) -> None:
        self._error(
            f"Error downloading attachment {attachment_index} of {attachment_total} "
            f"of submission {index} of {total}",
            "submission_attachment",
            reason,
        )
