"""
Prewarm Progress Tests (Unit)
=============================

WHAT: State transitions of the in-process prewarm tracker.

REFERENCES:
- backend/metricsync/services/prewarm_progress.py
"""

from metricsync.services.prewarm_progress import NullPrewarmObserver, PrewarmProgressTracker


def test_tracker_follows_latest_state_per_campaign() -> None:
    tracker = PrewarmProgressTracker()

    tracker.mark_running("C1", "camp1")
    tracker.mark_running("C1", "camp2")
    tracker.mark_completed("C1", "camp1")
    tracker.mark_failed("C1", "camp2", "Retry in 10 seconds")
    tracker.mark_running("C2", "camp9")

    progress = tracker.get_progress("C1")

    assert set(progress) == {"camp1", "camp2"}
    assert progress["camp1"].status == "completed"
    assert progress["camp1"].error is None
    assert progress["camp2"].status == "failed"
    assert progress["camp2"].error == "Retry in 10 seconds"


def test_unknown_customer_has_no_progress() -> None:
    assert PrewarmProgressTracker().get_progress("nobody") == {}


def test_null_observer_accepts_every_call() -> None:
    observer = NullPrewarmObserver()

    observer.mark_running("C1", "camp1")
    observer.mark_completed("C1", "camp1")
    observer.mark_failed("C1", "camp1", "boom")
