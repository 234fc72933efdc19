"""
Tests for PullFromAggregate against the in-memory legacy server.

Test coverage:
- A full pull writes the form, submissions and attachments and saves the cursor
- Resuming from the saved cursor only downloads new submissions
- Already pulled submissions are never downloaded again
- A failed attachment doesn't stop its siblings
- A failed blank form download ends the pull early
- A metadata store that can't be written is tracked, never raised
- Cancellation never saves the cursor
"""

import pytest

from core.download.http_client import Response

from collect_pipeline.aggregate.pull import PullFromAggregate, last_cursor
from collect_pipeline.aggregate.server import AggregateServer
from collect_pipeline.cursor import EmptyCursor
from collect_pipeline.jobs import JobsRunner, RunnerStatus
from collect_pipeline.models import FormKey, InstanceIdBatch
from collect_pipeline.pull import PullOutcome
from collect_pipeline.storage.metadata import JsonFileMetadataStore
from collect_pipeline.tracker import PullTracker

from legacy_stub import BASE_URL, FORM_ID, FORM_VERSION, cursor_at, instance_ids


def messages(events):
    return [event.message for event in events]


def saved_form(store):
    return store.get_form(FormKey(FORM_ID, FORM_VERSION))


class TestFullPull:
    """Happy path."""

    @pytest.mark.asyncio
    async def test_pulls_everything(self, legacy_server, make_operation, metadata_store, events, tmp_path):
        legacy_server.add_submissions(instance_ids(3))
        legacy_server.add_attachment("uuid:00000001", "photo.jpg", b"JPEG")

        result = await make_operation().pull_form(legacy_server.form(), RunnerStatus())

        storage = tmp_path / "storage" / "forms" / FORM_ID
        assert result.outcome == PullOutcome.SUCCESS
        assert result.submissions_downloaded == 3
        assert (storage / f"{FORM_ID}.xml").exists()
        assert (storage / "submissions" / "uuid00000000" / "submission.xml").exists()
        assert (storage / "submissions" / "uuid00000001" / "photo.jpg").read_bytes() == b"JPEG"

        assert saved_form(metadata_store).cursor == cursor_at(3)
        assert saved_form(metadata_store).form_file == storage / f"{FORM_ID}.xml"
        assert result.cursor == cursor_at(3)

        assert messages(events)[0] == "Start pulling form and submissions"
        assert messages(events)[-1] == "Success"
        assert not any(event.is_error for event in events)

    @pytest.mark.asyncio
    async def test_records_submission_metadata(self, legacy_server, make_operation, metadata_store):
        legacy_server.add_submissions(instance_ids(1))
        legacy_server.add_attachment("uuid:00000000", "photo.jpg", b"JPEG")

        await make_operation().pull_form(legacy_server.form(), RunnerStatus())

        [submission] = metadata_store.submissions_for(FORM_ID)
        assert submission.instance_id == "uuid:00000000"
        assert submission.key.version == FORM_VERSION
        assert submission.attachment_filenames == ["photo.jpg"]
        assert submission.submission_date.year == 2020
        assert not submission.is_encrypted

    @pytest.mark.asyncio
    async def test_no_submissions(self, legacy_server, make_operation, metadata_store, events):
        result = await make_operation().pull_form(legacy_server.form(), RunnerStatus())

        assert result.outcome == PullOutcome.SUCCESS
        assert "There are no submissions to download" in messages(events)
        assert saved_form(metadata_store) is not None

    @pytest.mark.asyncio
    async def test_runs_as_job(self, legacy_server, make_operation):
        legacy_server.add_submissions(instance_ids(2))
        results = []

        runner = JobsRunner().launch([make_operation().pull(legacy_server.form())], on_success=results.append)
        await runner.wait_for_completion()

        assert [result.outcome for result in results] == [PullOutcome.SUCCESS]


class TestResume:
    """Cursor and already-pulled bookkeeping."""

    @pytest.mark.asyncio
    async def test_resumes_from_saved_cursor(self, legacy_server, make_operation, metadata_store):
        legacy_server.add_submissions(instance_ids(20))
        operation = make_operation(page_size=10)
        await operation.pull_form(legacy_server.form(), RunnerStatus())

        legacy_server.add_submissions(instance_ids(10, start=20))
        legacy_server.page_cursors.clear()
        legacy_server.downloaded.clear()
        result = await operation.pull_form(legacy_server.form(), RunnerStatus())

        assert legacy_server.page_cursors[0] == cursor_at(20).value
        assert sorted(legacy_server.downloaded) == instance_ids(10, start=20)
        assert result.submissions_downloaded == 10
        assert saved_form(metadata_store).cursor == cursor_at(30)

    @pytest.mark.asyncio
    async def test_second_pull_downloads_nothing(self, legacy_server, make_operation):
        legacy_server.add_submissions(instance_ids(5))
        operation = make_operation()
        await operation.pull_form(legacy_server.form(), RunnerStatus())
        legacy_server.downloaded.clear()

        result = await operation.pull_form(legacy_server.form(), RunnerStatus())

        assert result.outcome == PullOutcome.SUCCESS
        assert legacy_server.downloaded == []
        assert result.submissions_downloaded == 0

    @pytest.mark.asyncio
    async def test_nothing_new_keeps_only_placeholder(self, legacy_server, make_operation):
        legacy_server.add_submissions(instance_ids(3))

        batches = await make_operation()._get_submission_ids(
            legacy_server.form(), cursor_at(3), RunnerStatus(), PullTracker(FORM_ID)
        )

        assert batches == [InstanceIdBatch.placeholder(cursor_at(3))]
        assert last_cursor(batches) == cursor_at(3)

    @pytest.mark.asyncio
    async def test_already_pulled_ids_are_skipped_from_scratch(self, legacy_server, make_operation, events):
        legacy_server.add_submissions(instance_ids(3))
        operation = make_operation()
        await operation.pull_form(legacy_server.form(), RunnerStatus())
        legacy_server.downloaded.clear()
        events.clear()

        result = await operation.pull_form(legacy_server.form(), RunnerStatus(), EmptyCursor())

        assert legacy_server.downloaded == []
        assert result.submissions_skipped == 3
        assert "Skipping submission 1 of 3: already downloaded" in messages(events)

    @pytest.mark.asyncio
    async def test_listing_failure_keeps_saved_cursor(self, fake_http, legacy_server, make_operation, metadata_store):
        legacy_server.add_submissions(instance_ids(4))
        operation = make_operation()
        await operation.pull_form(legacy_server.form(), RunnerStatus())

        fake_http.stub(f"{BASE_URL}/view/submissionList", status=500, reason="Server Error")
        result = await operation.pull_form(legacy_server.form(), RunnerStatus())

        assert result.outcome == PullOutcome.SUCCESS_WITH_ERRORS
        assert saved_form(metadata_store).cursor == cursor_at(4)


class TestPartialFailures:
    """Failures are tracked and skipped over."""

    @pytest.mark.asyncio
    async def test_one_missing_form_attachment(self, legacy_server, make_operation, events, tmp_path):
        legacy_server.add_form_media("a.png", b"a")
        legacy_server.add_form_media("b.png", b"b", status=404)
        legacy_server.add_form_media("c.png", b"c")

        result = await make_operation().pull_form(legacy_server.form(with_manifest=True), RunnerStatus())

        media_dir = tmp_path / "storage" / "forms" / FORM_ID / "form-media"
        assert result.outcome == PullOutcome.SUCCESS_WITH_ERRORS
        assert (media_dir / "a.png").read_bytes() == b"a"
        assert (media_dir / "c.png").read_bytes() == b"c"
        assert not (media_dir / "b.png").exists()
        errors = [event.message for event in events if event.is_error]
        assert errors == ["Error downloading form attachment 2 of 3: Not Found"]
        assert messages(events)[-1] == "Success with errors"

    @pytest.mark.asyncio
    async def test_up_to_date_form_attachments_are_skipped(self, fake_http, legacy_server, make_operation, events):
        legacy_server.add_form_media("a.png", b"a")
        operation = make_operation()
        await operation.pull_form(legacy_server.form(with_manifest=True), RunnerStatus())
        fake_http.requests.clear()
        events.clear()

        await operation.pull_form(legacy_server.form(with_manifest=True), RunnerStatus())

        assert fake_http.requested_urls("formMedia") == []
        assert "Skipping 1 form attachments that have been already downloaded" in messages(events)

    @pytest.mark.asyncio
    async def test_form_attachment_with_unsafe_name_is_not_fetched_twice(
        self, fake_http, legacy_server, make_operation, events, tmp_path
    ):
        legacy_server.add_form_media("logo:1.png", b"a")
        operation = make_operation()
        await operation.pull_form(legacy_server.form(with_manifest=True), RunnerStatus())
        fake_http.requests.clear()

        await operation.pull_form(legacy_server.form(with_manifest=True), RunnerStatus())

        assert (tmp_path / "storage" / "forms" / FORM_ID / "form-media" / "logo1.png").read_bytes() == b"a"
        assert fake_http.requested_urls("formMedia") == []

    @pytest.mark.asyncio
    async def test_failed_submission_attachment_keeps_submission(
        self, fake_http, legacy_server, make_operation, metadata_store
    ):
        legacy_server.add_submissions(instance_ids(1))
        legacy_server.add_attachment("uuid:00000000", "photo.jpg", b"JPEG")
        fake_http.stub(
            f"{BASE_URL}/view/binaryData?blobKey=uuid00000000-photo.jpg", status=500, reason="Server Error"
        )

        result = await make_operation().pull_form(legacy_server.form(), RunnerStatus())

        assert result.outcome == PullOutcome.SUCCESS_WITH_ERRORS
        assert metadata_store.has_been_already_pulled(FORM_ID, "uuid:00000000")

    @pytest.mark.asyncio
    async def test_failed_submission_is_not_recorded(self, fake_http, legacy_server, make_operation, metadata_store):
        legacy_server.add_submissions(instance_ids(2))
        serve = legacy_server._download_submission

        def flaky(request):
            if "uuid%3A00000001" in request.url:
                return Response(url=request.url, status_code=503, reason="Unavailable")
            return serve(request)

        fake_http.stub_handler(f"{BASE_URL}/view/downloadSubmission", flaky)

        result = await make_operation().pull_form(legacy_server.form(), RunnerStatus())

        assert result.outcome == PullOutcome.SUCCESS_WITH_ERRORS
        assert result.submissions_downloaded == 1
        assert metadata_store.has_been_already_pulled(FORM_ID, "uuid:00000000")
        assert not metadata_store.has_been_already_pulled(FORM_ID, "uuid:00000001")

    @pytest.mark.asyncio
    async def test_form_download_failure_ends_pull(self, fake_http, legacy_server, make_operation, metadata_store, events):
        legacy_server.add_submissions(instance_ids(2))
        fake_http.stub(f"{BASE_URL}/formXml", status=500, reason="Server Error")

        result = await make_operation().pull_form(legacy_server.form(), RunnerStatus())

        assert result.outcome == PullOutcome.SUCCESS_WITH_ERRORS
        assert result.cursor is None
        assert fake_http.requested_urls("submissionList") == []
        assert saved_form(metadata_store) is None
        assert "Error downloading form: HTTP 500 Server Error" in messages(events)

    @pytest.mark.asyncio
    async def test_unusable_blank_form_ends_pull(self, fake_http, legacy_server, make_operation):
        fake_http.stub(f"{BASE_URL}/formXml", "<h:html xmlns:h='http://www.w3.org/1999/xhtml'/>")

        result = await make_operation().pull_form(legacy_server.form(), RunnerStatus())

        assert result.outcome == PullOutcome.SUCCESS_WITH_ERRORS
        assert fake_http.requested_urls("submissionList") == []


class TestStoreFailures:
    """The metadata store sits under a regular file, so every write fails."""

    @pytest.fixture
    def metadata_store(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        return JsonFileMetadataStore(blocker / "metadata.json")

    @pytest.mark.asyncio
    async def test_failed_submission_write_is_tracked(self, legacy_server, make_operation, metadata_store, events):
        legacy_server.add_submissions(instance_ids(2))

        result = await make_operation().pull_form(legacy_server.form(), RunnerStatus())

        assert result.outcome == PullOutcome.SUCCESS_WITH_ERRORS
        assert result.submissions_downloaded == 0
        errors = [event.message for event in events if event.is_error]
        assert any(message.startswith("Error saving submission 1 of 2:") for message in errors)
        assert any(message.startswith("Error saving submission 2 of 2:") for message in errors)
        assert not metadata_store.has_been_already_pulled(FORM_ID, "uuid:00000000")
        assert saved_form(metadata_store) is None
        assert messages(events)[-1] == "Success with errors"


class TestCancellation:
    """Cancelled pulls stop issuing requests and never save the cursor."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, fake_http, legacy_server, make_operation, metadata_store, events):
        status = RunnerStatus()
        status.cancel()

        result = await make_operation().pull_form(legacy_server.form(), status)

        assert result.outcome == PullOutcome.CANCELLED
        assert fake_http.requests == []
        assert messages(events)[-1] == "Operation cancelled - Download form"
        assert saved_form(metadata_store) is None

    @pytest.mark.asyncio
    async def test_cancelled_after_listing(self, fake_http, legacy_server, tmp_path, metadata_store):
        legacy_server.add_submissions(instance_ids(5))
        status = RunnerStatus()

        def cancel_after_listing(event):
            if event.message == "Got all the submission IDs":
                status.cancel()

        operation = PullFromAggregate(
            fake_http,
            AggregateServer(BASE_URL),
            tmp_path / "storage",
            metadata_store,
            callback=cancel_after_listing,
        )
        result = await operation.pull_form(legacy_server.form(), status)

        assert result.outcome == PullOutcome.CANCELLED
        assert legacy_server.downloaded == []
        assert saved_form(metadata_store) is None


class TestLastCursor:
    def test_highest_cursor_wins(self):
        batches = [
            InstanceIdBatch.placeholder(cursor_at(5)),
            InstanceIdBatch(instance_ids(2), cursor_at(7)),
            InstanceIdBatch([], cursor_at(6)),
        ]

        assert last_cursor(batches) == cursor_at(7)

    def test_placeholder_only(self):
        assert last_cursor([InstanceIdBatch.placeholder(EmptyCursor())]) == EmptyCursor()
