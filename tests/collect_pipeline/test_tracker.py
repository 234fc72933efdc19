"""Tests for PullTracker events."""

import logging

from collect_pipeline.tracker import PullEvent, PullTracker


def test_lifecycle_messages():
    events = []
    tracker = PullTracker("census", events.append)

    tracker.track_start()
    tracker.track_start_downloading_form()
    tracker.track_end_downloading_form()
    tracker.track_end()

    assert [event.message for event in events] == [
        "Start pulling form and submissions",
        "Start downloading form",
        "Form downloaded",
        "Success",
    ]
    assert all(event.form_id == "census" for event in events)
    assert not tracker.errored


def test_error_flips_outcome_and_carries_reason():
    events = []
    tracker = PullTracker("census", events.append)

    tracker.track_error_downloading_submission(2, 5, "HTTP 500 Server Error")
    tracker.track_end()

    error, end = events
    assert error.message == "Error downloading submission 2 of 5: HTTP 500 Server Error"
    assert error.is_error
    assert error.level == logging.ERROR
    assert end.message == "Success with errors"
    assert tracker.errored


def test_error_without_reason():
    events = []
    PullTracker("census", events.append).track_error_downloading_form()

    assert events[0].message == "Error downloading form"


def test_saving_error():
    events = []
    tracker = PullTracker("census", events.append)

    tracker.track_error_saving_submission(1, 3, "Disk full")

    assert events[0].message == "Error saving submission 1 of 3: Disk full"
    assert events[0].is_error
    assert tracker.errored


def test_cancellation_is_a_warning():
    events = []
    PullTracker("census", events.append).track_cancellation("Download submissions")

    assert events[0].message == "Operation cancelled - Download submissions"
    assert events[0].level == logging.WARNING
    assert not events[0].is_error


def test_ignored_attachments_only_reported_when_any():
    events = []
    tracker = PullTracker("census", events.append)

    tracker.track_ignored_form_attachments(0, 3)
    tracker.track_ignored_form_attachments(2, 3)

    assert [event.message for event in events] == [
        "Skipping 2 form attachments that have been already downloaded"
    ]


def test_attachment_messages():
    events = []
    tracker = PullTracker("census", events.append)

    tracker.track_end_downloading_form_attachment(1, 2)
    tracker.track_end_downloading_submission_attachment(3, 10, 1, 2)

    assert [event.message for event in events] == [
        "Form attachment 1 of 2 downloaded",
        "Attachment 1 of 2 of submission 3 of 10 downloaded",
    ]


def test_failing_callback_does_not_break_pull():
    def explode(event: PullEvent) -> None:
        raise RuntimeError("boom")

    tracker = PullTracker("census", explode)

    tracker.track_start()
    tracker.track_end()


def test_events_are_logged(caplog):
    with caplog.at_level(logging.INFO):
        PullTracker("census").track_start()

    assert "Pull census - Start pulling form and submissions" in caplog.text
