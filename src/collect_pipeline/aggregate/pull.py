"""
Pull of one form from a legacy REST/XML server.

Phases, in order:
    1. download the blank form
    2. download the form attachments listed in its manifest
    3. enumerate submission IDs page by page from the saved cursor
    4. download every new submission, then its attachments
    5. save the highest cursor seen

Failures in phases 2-4 are tracked and skipped over; a failed blank form
download ends the pull early. Cancellation is checked before every network
step; a cancelled pull never saves its cursor.
"""

import asyncio
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

from core.download.downloader import AttachmentDownloader, write_file
from core.download.http_client import Http
from core.download.models import DownloadTask
from core.errors.exceptions import PipelineError
from core.logging.context import set_log_context
from core.logging.utilities import LoggedClass

from collect_pipeline import metrics
from collect_pipeline.aggregate.batches import DEFAULT_PAGE_SIZE, InstanceIdBatchGetter
from collect_pipeline.aggregate.parsing import parse_manifest
from collect_pipeline.aggregate.server import AggregateServer
from collect_pipeline.aggregate.submission_key import SubmissionKeyGenerator
from collect_pipeline.cursor import Cursor, EmptyCursor, max_cursor
from collect_pipeline.errors import BatchFetchError, ParsingError
from collect_pipeline.jobs import Job, RunnerStatus, run_parallel
from collect_pipeline.models import (
    Attachment,
    DownloadedSubmission,
    FormMetadata,
    InstanceIdBatch,
    SubmissionKey,
    SubmissionMetadata,
)
from collect_pipeline.pull import PullOutcome, PullResult, response_reason
from collect_pipeline.storage import layout
from collect_pipeline.storage.metadata import MetadataStore
from collect_pipeline.tracker import PullEventCallback, PullTracker


def last_cursor(batches: List[InstanceIdBatch]) -> Cursor:
    """Highest cursor among batches."""
    return max_cursor(batch.cursor for batch in batches)


class PullFromAggregate(LoggedClass):
    """
    Pulls forms from one legacy server.

    Usage:
        operation = PullFromAggregate(http, server, Path("storage"), store, callback=print)
        result = await operation.pull_form(form, RunnerStatus())
        # or, as a job for the JobsRunner
        runner.launch([operation.pull(form)])
    """

    log_component = "aggregate"
    server_type = "aggregate"

    def __init__(
        self,
        http: Http,
        server: AggregateServer,
        storage_dir: Path,
        metadata_store: MetadataStore,
        include_incomplete: bool = False,
        max_parallel: int = 4,
        page_size: int = DEFAULT_PAGE_SIZE,
        callback: Optional[PullEventCallback] = None,
    ):
        self.http = http
        self.server = server
        self.storage_dir = storage_dir
        self.metadata_store = metadata_store
        self.include_incomplete = include_incomplete
        self.max_parallel = max_parallel
        self.page_size = page_size
        self.callback = callback
        self._downloader = AttachmentDownloader(http)
        super().__init__()

    async def list_forms(self) -> List[FormMetadata]:
        return await self.server.list_forms(self.http)

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

        Args:
            form: Form as listed by the server
            status: Cancellation token of the caller
            cursor: Where to start enumerating submissions; defaults to the
                cursor saved by the last pull of this form

        Returns:
            PullResult with the terminal outcome
        """
        started = time.monotonic()
        set_log_context(form_id=form.form_id)
        tracker = PullTracker(form.form_id, self.callback, server_type=self.server_type)
        tracker.track_start()

        saved = self.metadata_store.get_form(form.key)
        target = saved.merge(form) if saved is not None else form
        if cursor is None:
            cursor = saved.cursor if saved is not None else EmptyCursor()

        if status.is_cancelled:
            return self._cancelled(tracker, "Download form", started)
        downloaded = await self._download_form(form, tracker)
        if downloaded is None:
            tracker.track_end()
            return self._finish(tracker, PullOutcome.SUCCESS_WITH_ERRORS, started)
        form_file, key_generator = downloaded
        target = target.with_form_file(form_file)

        if status.is_cancelled:
            return self._cancelled(tracker, "Get form attachments", started)
        attachments = await self._get_form_attachments(form, tracker)
        total_attachments = len(attachments)
        await run_parallel(
            status,
            [
                self._form_attachment_unit(form, attachment, tracker, index, total_attachments)
                for index, attachment in enumerate(attachments, 1)
            ],
            self.max_parallel,
        )

        if status.is_cancelled:
            return self._cancelled(tracker, "Get submission IDs", started)
        batches = await self._get_submission_ids(form, cursor, status, tracker)

        instance_ids = [instance_id for batch in batches for instance_id in batch.instance_ids]
        total_submissions = len(instance_ids)
        if not instance_ids:
            tracker.track_no_submissions()

        pending = []
        skipped = 0
        for index, instance_id in enumerate(instance_ids, 1):
            if self.metadata_store.has_been_already_pulled(form.form_id, instance_id):
                tracker.track_submission_already_downloaded(index, total_submissions)
                skipped += 1
            else:
                pending.append((index, instance_id))

        results = await run_parallel(
            status,
            [
                self._submission_unit(
                    form, key_generator, instance_id, index, total_submissions, status, tracker
                )
                for index, instance_id in pending
            ],
            self.max_parallel,
        )
        downloaded_count = sum(1 for result in results if result)

        if status.is_cancelled:
            return self._cancelled(tracker, "Download submissions", started, downloaded_count, skipped)

        new_cursor = last_cursor(batches)
        try:
            await asyncio.to_thread(self.metadata_store.upsert_form, target.with_cursor(new_cursor))
        except OSError as e:
            tracker.errored = True
            self._log_exception(e, "Failed to save form metadata", form_id=form.form_id)

        tracker.track_end()
        outcome = PullOutcome.SUCCESS_WITH_ERRORS if tracker.errored else PullOutcome.SUCCESS
        return self._finish(tracker, outcome, started, new_cursor, downloaded_count, skipped)

    # -------------------------------------------------------------------------
    # Terminal states
    # -------------------------------------------------------------------------

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
    # Blank form
    # -------------------------------------------------------------------------

    async def _download_form(
        self, form: FormMetadata, tracker: PullTracker
    ) -> Optional[Tuple[Path, SubmissionKeyGenerator]]:
        tracker.track_start_downloading_form()
        if form.download_url:
            request = self.server.download_form_request_from_url(form.download_url)
        else:
            request = self.server.download_form_request(form.form_id)

        try:
            response = await self.http.execute(request)
        except PipelineError as e:
            tracker.track_error_downloading_form(str(e))
            return None
        if not response.is_success:
            tracker.track_error_downloading_form(response_reason(response))
            return None

        try:
            form_xml = response.text
            key_generator = SubmissionKeyGenerator.from_form_xml(form_xml)
        except (ParsingError, UnicodeDecodeError) as e:
            tracker.track_error_downloading_form(str(e))
            return None

        try:
            form_file = layout.form_file(self.storage_dir, form.form_id)
            await write_file(form_file, form_xml)
        except (OSError, ValueError) as e:
            tracker.track_error_downloading_form(str(e))
            return None

        tracker.track_end_downloading_form()
        return form_file, key_generator

    # -------------------------------------------------------------------------
    # Form attachments
    # -------------------------------------------------------------------------

    async def _get_form_attachments(
        self, form: FormMetadata, tracker: PullTracker
    ) -> List[Attachment]:
        if not form.manifest_url:
            return []

        tracker.track_start_getting_form_manifest()
        try:
            response = await self.http.execute(self.server.manifest_request(form.manifest_url))
        except PipelineError as e:
            tracker.track_error_getting_form_manifest(str(e))
            return []
        if not response.is_success:
            tracker.track_error_getting_form_manifest(response_reason(response))
            return []

        try:
            attachments = parse_manifest(response.text)
        except (ParsingError, UnicodeDecodeError) as e:
            tracker.track_error_getting_form_manifest(str(e))
            return []

        to_download = await asyncio.to_thread(
            lambda: [attachment for attachment in attachments if self._is_stale(form, attachment)]
        )
        tracker.track_end_getting_form_manifest()
        tracker.track_ignored_form_attachments(len(attachments) - len(to_download), len(attachments))
        return to_download

    def _is_stale(self, form: FormMetadata, attachment: Attachment) -> bool:
        try:
            target = layout.form_media_file(self.storage_dir, form.form_id, attachment.filename)
        except ValueError:
            # Kept so the download step reports the unusable name
            return True
        return attachment.needs_update(target)

    def _form_attachment_unit(
        self,
        form: FormMetadata,
        attachment: Attachment,
        tracker: PullTracker,
        index: int,
        total: int,
    ):
        async def unit() -> bool:
            tracker.track_start_downloading_form_attachment(index, total)
            try:
                destination = layout.form_media_file(self.storage_dir, form.form_id, attachment.filename)
            except ValueError as e:
                tracker.track_error_downloading_form_attachment(index, total, str(e))
                return False
            outcome = await self._downloader.download(
                DownloadTask(
                    request=self.server.attachment_request(attachment.download_url),
                    destination=destination,
                )
            )
            if outcome.success:
                tracker.track_end_downloading_form_attachment(index, total)
            else:
                tracker.track_error_downloading_form_attachment(
                    index, total, outcome.error_message
                )
            return outcome.success

        return unit

    # -------------------------------------------------------------------------
    # Submission IDs
    # -------------------------------------------------------------------------

    async def _get_submission_ids(
        self,
        form: FormMetadata,
        cursor: Cursor,
        status: RunnerStatus,
        tracker: PullTracker,
    ) -> List[InstanceIdBatch]:
        """
        Collect every batch of instance IDs after cursor.

        The first batch is always an empty one carrying cursor, so the saved
        cursor survives a pull with nothing new or a failing listing.
        """
        tracker.track_start_getting_submission_ids()
        batches = [InstanceIdBatch.placeholder(cursor)]
        try:
            getter = await InstanceIdBatchGetter.create(
                self.http,
                self.server,
                form.form_id,
                self.include_incomplete,
                cursor,
                self.page_size,
            )
            while status.is_still_running and getter.has_next():
                batches.append(await getter.next_batch())
        except BatchFetchError as e:
            tracker.track_error_getting_instance_id_batches(_batch_error_reason(e))
            return batches

        tracker.track_end_getting_submission_ids()
        return batches

    # -------------------------------------------------------------------------
    # Submissions
    # -------------------------------------------------------------------------

    def _submission_unit(
        self,
        form: FormMetadata,
        key_generator: SubmissionKeyGenerator,
        instance_id: str,
        index: int,
        total: int,
        status: RunnerStatus,
        tracker: PullTracker,
    ):
        async def unit() -> bool:
            submission = await self._download_submission(
                form, key_generator, instance_id, index, total, tracker
            )
            if submission is None:
                return False

            attachments = submission.attachments
            await run_parallel(
                status,
                [
                    self._submission_attachment_unit(
                        form, instance_id, attachment, tracker, index, total, attachment_index, len(attachments)
                    )
                    for attachment_index, attachment in enumerate(attachments, 1)
                ],
                self.max_parallel,
            )

            metadata = self._submission_metadata(form, instance_id, submission)
            try:
                await asyncio.to_thread(self.metadata_store.insert_submission, metadata)
            except OSError as e:
                tracker.track_error_saving_submission(index, total, str(e))
                return False
            return True

        return unit

    async def _download_submission(
        self,
        form: FormMetadata,
        key_generator: SubmissionKeyGenerator,
        instance_id: str,
        index: int,
        total: int,
        tracker: PullTracker,
    ) -> Optional[DownloadedSubmission]:
        tracker.track_start_downloading_submission(index, total)
        request = self.server.download_submission_request(key_generator.build_key(instance_id))
        try:
            response = await self.http.execute(request)
        except PipelineError as e:
            tracker.track_error_downloading_submission(index, total, str(e))
            return None
        if not response.is_success:
            tracker.track_error_downloading_submission(index, total, response_reason(response))
            return None

        try:
            submission = DownloadedSubmission.from_xml(response.text)
        except (ParsingError, UnicodeDecodeError) as e:
            tracker.track_error_downloading_submission(index, total, str(e))
            return None

        try:
            submission_file = layout.submission_file(self.storage_dir, form.form_id, instance_id)
            await write_file(submission_file, submission.xml)
        except (OSError, ValueError) as e:
            tracker.track_error_downloading_submission(index, total, str(e))
            return None

        tracker.track_end_downloading_submission(index, total)
        return submission.with_file(submission_file)

    def _submission_attachment_unit(
        self,
        form: FormMetadata,
        instance_id: str,
        attachment: Attachment,
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
                    self.storage_dir, form.form_id, instance_id, attachment.filename
                )
            except ValueError as e:
                tracker.track_error_downloading_submission_attachment(
                    index, total, attachment_index, attachment_total, str(e)
                )
                return False
            outcome = await self._downloader.download(
                DownloadTask(
                    request=self.server.attachment_request(attachment.download_url),
                    destination=destination,
                )
            )
            if outcome.success:
                tracker.track_end_downloading_submission_attachment(
                    index, total, attachment_index, attachment_total
                )
            else:
                tracker.track_error_downloading_submission_attachment(
                    index, total, attachment_index, attachment_total, outcome.error_message
                )
            return outcome.success

        return unit

    def _submission_metadata(
        self, form: FormMetadata, instance_id: str, submission: DownloadedSubmission
    ) -> SubmissionMetadata:
        key = SubmissionKey(form.form_id, submission.form_version, instance_id)
        attachment_filenames = [
            attachment.filename
            for attachment in submission.attachments
            if attachment.filename != layout.ENCRYPTED_SUBMISSION_FILENAME
        ]
        try:
            metadata = SubmissionMetadata.from_xml(submission.xml, submission.file)
        except ParsingError as e:
            self._log(
                logging.DEBUG,
                "Submission metadata incomplete",
                form_id=form.form_id,
                instance_id=instance_id,
                error_message=str(e),
            )
            metadata = SubmissionMetadata(key=key, submission_file=submission.file)
        return replace(metadata, key=key, attachment_filenames=attachment_filenames)


def _batch_error_reason(error: BatchFetchError) -> str:
    if error.response is not None and not error.response.is_success:
        return response_reason(error.response)
    return str(error.cause or error)
