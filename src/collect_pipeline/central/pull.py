"""
Pull of one form from a REST/JSON server.

The submission ID listing runs concurrently with the blank form and its
attachments. Unlike the legacy dialect there is no paging and no cursor:
the listing is one logical page and the saved cursor is always empty, so
the metadata store alone decides what is new.

A submission is recorded in the metadata store once its XML is on disk and
its attachment listing succeeded; if the listing fails, the next pull picks
the submission up again.
"""

import asyncio
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from core.download.downloader import AttachmentDownloader
from core.download.http_client import Http
from core.download.models import DownloadTask
from core.errors.exceptions import PipelineError
from core.logging.context import set_log_context
from core.logging.utilities import LoggedClass

from collect_pipeline import metrics
from collect_pipeline.central.models import (
    CentralAttachment,
    CentralSubmission,
    parse_model_list,
)
from collect_pipeline.central.server import CentralServer
from collect_pipeline.cursor import Cursor, EmptyCursor
from collect_pipeline.errors import ParsingError
from collect_pipeline.jobs import Job, RunnerStatus, run_parallel
from collect_pipeline.models import FormMetadata, SubmissionKey, SubmissionMetadata
from collect_pipeline.pull import PullOutcome, PullResult, response_reason
from collect_pipeline.storage import layout
from collect_pipeline.storage.metadata import MetadataStore
from collect_pipeline.tracker import PullEventCallback, PullTracker


class _ListingFailed(Exception):
    """A JSON listing could not be fetched or parsed; carries the reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PullFromCentral(LoggedClass):
    """
    Pulls forms from one project of a REST/JSON server.

    Usage:
        token = await server.login(http)
        operation = PullFromCentral(http, server, token, Path("storage"), store)
        result = await operation.pull_form(form, RunnerStatus())
    """

    log_component = "central"
    server_type = "central"

    def __init__(
        self,
        http: Http,
        server: CentralServer,
        token: str,
        storage_dir: Path,
        metadata_store: MetadataStore,
        max_parallel: int = 4,
        callback: Optional[PullEventCallback] = None,
    ):
        self.http = http
        self.server = server
        self.token = token
        self.storage_dir = storage_dir
        self.metadata_store = metadata_store
        self.max_parallel = max_parallel
        self.callback = callback
        self._downloader = AttachmentDownloader(http)
        super().__init__()

    async def list_forms(self) -> List[FormMetadata]:
        return await self.server.list_forms(self.http, self.token)

    def pull(self, form: FormMetadata, cursor: Optional[Cursor] = None) -> Job[PullResult]:
        async def run(status: RunnerStatus) -> PullResult:
            return await self.pull_form(form, status, cursor)

        return Job.supply(run)

    async def pull_form(
        self,
        form: FormMetadata,
        status: RunnerStatus,
        cursor: Optional[Cursor] = None,
    ) -> PullResult:
        """
        Pull form completely.

        cursor is accepted for interface parity and ignored: listings here
        aren't paged.
        """
        started = time.monotonic()
        set_log_context(form_id=form.form_id)
        tracker = PullTracker(form.form_id, self.callback, server_type=self.server_type)
        tracker.track_start()

        saved = self.metadata_store.get_form(form.key)
        target = saved.merge(form) if saved is not None else form

        if status.is_cancelled:
            return self._cancelled(tracker, "Download form", started)

        instance_ids, form_file = await asyncio.gather(
            self._get_submission_ids(form, tracker),
            self._download_form_and_attachments(form, status, tracker),
        )
        if form_file is not None:
            target = target.with_form_file(form_file)

        if status.is_cancelled:
            return self._cancelled(tracker, "Download submissions", started)

        total = len(instance_ids)
        if not instance_ids:
            tracker.track_no_submissions()

        pending = []
        skipped = 0
        for index, instance_id in enumerate(instance_ids, 1):
            if self.metadata_store.has_been_already_pulled(form.form_id, instance_id):
                tracker.track_submission_already_downloaded(index, total)
                skipped += 1
            else:
                pending.append((index, instance_id))

        results = await run_parallel(
            status,
            [
                self._submission_unit(form, instance_id, index, total, status, tracker)
                for index, instance_id in pending
            ],
            self.max_parallel,
        )
        downloaded = sum(1 for result in results if result)

        if status.is_cancelled:
            return self._cancelled(tracker, "Download submissions", started, downloaded, skipped)

        cursor = EmptyCursor()
        try:
            await asyncio.to_thread(self.metadata_store.upsert_form, target.with_cursor(cursor))
        except OSError as e:
            tracker.errored = True
            self._log_exception(e, "Failed to save form metadata", form_id=form.form_id)

        tracker.track_end()
        outcome = PullOutcome.SUCCESS_WITH_ERRORS if tracker.errored else PullOutcome.SUCCESS
        return self._finish(tracker, outcome, started, cursor, downloaded, skipped)

    def _finish(
        self,
        tracker: PullTracker,
        outcome: PullOutcome,
        started: float,
        cursor: Optional[Cursor] = None,
        downloaded: int = 0,
        skipped: int = 0,
    ) -> PullResult:
        elapsed = time.monotonic() - started
        metrics.record_pull_outcome(self.server_type, outcome.value, elapsed)
        self._log(
            logging.INFO,
            "Pull finished",
            form_id=tracker.form_id,
            outcome=outcome.value,
            duration_ms=round(elapsed * 1000, 2),
        )
        return PullResult(
            form_id=tracker.form_id,
            outcome=outcome,
            cursor=cursor,
            submissions_downloaded=downloaded,
            submissions_skipped=skipped,
        )

    def _cancelled(
        self,
        tracker: PullTracker,
        job: str,
        started: float,
        downloaded: int = 0,
        skipped: int = 0,
    ) -> PullResult:
        tracker.track_cancellation(job)
        return self._finish(tracker, PullOutcome.CANCELLED, started, None, downloaded, skipped)

    # -------------------------------------------------------------------------
    # Listings
    # -------------------------------------------------------------------------

    async def _fetch_list(self, request, model) -> list:
        try:
            response = await self.http.execute(request)
        except PipelineError as e:
            raise _ListingFailed(str(e)) from e
        if not response.is_success:
            raise _ListingFailed(response_reason(response))
        try:
            return parse_model_list(model, response.json())
        except (ParsingError, ValueError) as e:
            raise _ListingFailed(str(e)) from e

    async def _get_submission_ids(self, form: FormMetadata, tracker: PullTracker) -> List[str]:
        tracker.track_start_getting_submission_ids()
        try:
            submissions = await self._fetch_list(
                self.server.instance_id_list_request(form.form_id, self.token),
                CentralSubmission,
            )
        except _ListingFailed as e:
            tracker.track_error_getting_submission_ids(e.reason)
            return []
        tracker.track_end_getting_submission_ids()
        return [submission.instance_id for submission in submissions]

    # -------------------------------------------------------------------------
    # Blank form and form attachments
    # -------------------------------------------------------------------------

    async def _download_form_and_attachments(
        self, form: FormMetadata, status: RunnerStatus, tracker: PullTracker
    ) -> Optional[Path]:
        form_file = await self._download_form(form, tracker)

        if status.is_cancelled:
            return form_file
        attachments = await self._get_form_attachments(form, tracker)
        total = len(attachments)
        await run_parallel(
            status,
            [
                self._form_attachment_unit(form, attachment, tracker, index, total)
                for index, attachment in enumerate(attachments, 1)
            ],
            self.max_parallel,
        )
        return form_file

    async def _download(self, request, destination: Path) -> Optional[str]:
        """Download to destination; return the failure reason, None on success."""
        outcome = await self._downloader.download(DownloadTask(request=request, destination=destination))
        return None if outcome.success else outcome.error_message

    async def _download_form(self, form: FormMetadata, tracker: PullTracker) -> Optional[Path]:
        tracker.track_start_downloading_form()
        try:
            form_file = layout.form_file(self.storage_dir, form.form_id)
        except ValueError as e:
            tracker.track_error_downloading_form(str(e))
            return None
        error = await self._download(
            self.server.download_form_request(form.form_id, self.token), form_file
        )
        if error is not None:
            tracker.track_error_downloading_form(error)
            return None
        tracker.track_end_downloading_form()
        return form_file

    async def _get_form_attachments(
        self, form: FormMetadata, tracker: PullTracker
    ) -> List[CentralAttachment]:
        tracker.track_start_getting_form_attachments()
        try:
            attachments = await self._fetch_list(
                self.server.form_attachment_list_request(form.form_id, self.token),
                CentralAttachment,
            )
        except _ListingFailed as e:
            tracker.track_error_getting_form_attachments(e.reason)
            return []

        existing = [attachment for attachment in attachments if attachment.exists]
        tracker.track_end_getting_form_attachments()
        tracker.track_non_existing_form_attachments(len(existing), len(attachments))
        return existing

    def _form_attachment_unit(
        self,
        form: FormMetadata,
        attachment: CentralAttachment,
        tracker: PullTracker,
        index: int,
        total: int,
    ):
        async def unit() -> bool:
            tracker.track_start_downloading_form_attachment(index, total)
            try:
                destination = layout.form_media_file(self.storage_dir, form.form_id, attachment.name)
            except ValueError as e:
                tracker.track_error_downloading_form_attachment(index, total, str(e))
                return False
            error = await self._download(
                self.server.download_form_attachment_request(form.form_id, attachment.name, self.token),
                destination,
            )
            if error is not None:
                tracker.track_error_downloading_form_attachment(index, total, error)
                return False
            tracker.track_end_downloading_form_attachment(index, total)
            return True

        return unit

    # -------------------------------------------------------------------------
    # Submissions
    # -------------------------------------------------------------------------

    def _submission_unit(
        self,
        form: FormMetadata,
        instance_id: str,
        index: int,
        total: int,
        status: RunnerStatus,
        tracker: PullTracker,
    ):
        async def unit() -> bool:
            tracker.track_start_downloading_submission(index, total)
            try:
                submission_file = layout.submission_file(self.storage_dir, form.form_id, instance_id)
            except ValueError as e:
                tracker.track_error_downloading_submission(index, total, str(e))
                return False
            error = await self._download(
                self.server.download_submission_request(form.form_id, instance_id, self.token),
                submission_file,
            )
            if error is not None:
                tracker.track_error_downloading_submission(index, total, error)
                return False
            tracker.track_end_downloading_submission(index, total)

            if status.is_cancelled:
                return True
            tracker.track_start_getting_submission_attachments(index, total)
            try:
                attachments = await self._fetch_list(
                    self.server.submission_attachment_list_request(form.form_id, instance_id, self.token),
                    CentralAttachment,
                )
            except _ListingFailed as e:
                tracker.track_error_getting_submission_attachments(index, total, e.reason)
                return True
            tracker.track_end_getting_submission_attachments(index, total)

            attachment_total = len(attachments)
            await run_parallel(
                status,
                [
                    self._submission_attachment_unit(
                        form, instance_id, attachment, tracker, index, total, attachment_index, attachment_total
                    )
                    for attachment_index, attachment in enumerate(attachments, 1)
                ],
                self.max_parallel,
            )

            attachment_filenames = [
                attachment.name
                for attachment in attachments
                if attachment.name != layout.ENCRYPTED_SUBMISSION_FILENAME
            ]
            metadata = await self._submission_metadata(form, instance_id, submission_file, attachment_filenames)
            try:
                await asyncio.to_thread(self.metadata_store.insert_submission, metadata)
            except OSError as e:
                tracker.track_error_saving_submission(index, total, str(e))
                return False
            return True

        return unit

    def _submission_attachment_unit(
        self,
        form: FormMetadata,
        instance_id: str,
        attachment: CentralAttachment,
        tracker: PullTracker,
        index: int,
        total: int,
        attachment_index: int,
        attachment_total: int,
    ):
        async def unit() -> bool:
            tracker.track_start_downloading_submission_attachment(
                index, total, attachment_index, attachment_total
            )
            try:
                destination = layout.submission_media_file(
                    self.storage_dir, form.form_id, instance_id, attachment.name
                )
            except ValueError as e:
                tracker.track_error_downloading_submission_attachment(
                    index, total, attachment_index, attachment_total, str(e)
                )
                return False
            error = await self._download(
                self.server.download_submission_attachment_request(
                    form.form_id, instance_id, attachment.name, self.token
                ),
                destination,
            )
            if error is not None:
                tracker.track_error_downloading_submission_attachment(
                    index, total, attachment_index, attachment_total, error
                )
                return False
            tracker.track_end_downloading_submission_attachment(
                index, total, attachment_index, attachment_total
            )
            return True

        return unit

    async def _submission_metadata(
        self,
        form: FormMetadata,
        instance_id: str,
        submission_file: Path,
        attachment_filenames: List[str],
    ) -> SubmissionMetadata:
        key = SubmissionKey(form.form_id, form.key.version, instance_id)
        try:
            metadata = await asyncio.to_thread(SubmissionMetadata.from_file, submission_file)
        except (ParsingError, OSError, UnicodeDecodeError) as e:
            self._log(
                logging.DEBUG,
                "Submission metadata incomplete",
                form_id=form.form_id,
                instance_id=instance_id,
                error_message=str(e),
            )
            metadata = SubmissionMetadata(key=key, submission_file=submission_file)
        return replace(
            metadata,
            key=SubmissionKey(form.form_id, metadata.key.version, instance_id),
            attachment_filenames=attachment_filenames,
        )


__all__ = ["PullFromCentral"]
