from kb_api.application.progress_tracker import ProgressTracker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _tracker(cleanup_seconds=300):
    clock = FakeClock()
    return ProgressTracker(cleanup_seconds=cleanup_seconds, clock=clock), clock


def test_lifecycle_until_expiry():
    tracker, clock = _tracker()

    tracker.init("job-1", 10)
    job = tracker.get("job-1")
    assert job.status == "processing"
    assert job.percentage == 0
    assert job.message == "Initializing..."
    assert job.end_time is None

    tracker.update("job-1", 5, "Processing batch 1/2...")
    job = tracker.get("job-1")
    assert job.progress == 5
    assert job.percentage == 50
    assert job.message == "Processing batch 1/2..."

    tracker.complete("job-1", "Successfully ingested 10 records into docs")
    job = tracker.get("job-1")
    assert job.status == "completed"
    assert job.progress == 10
    assert job.percentage == 100
    assert job.end_time is not None
    assert job.end_time >= job.start_time

    clock.advance(299)
    assert tracker.get("job-1") is not None
    clock.advance(1)
    assert tracker.get("job-1") is None
    assert not tracker.exists("job-1")


def test_update_without_message_keeps_previous_message():
    tracker, _ = _tracker()
    tracker.init("job", 4)
    tracker.update("job", 1, "Processing batch 1/4...")
    tracker.update("job", 3)

    job = tracker.get("job")
    assert job.message == "Processing batch 1/4..."
    assert job.percentage == 75


def test_percentage_is_floored_and_capped():
    tracker, _ = _tracker()
    tracker.init("job", 3)
    tracker.update("job", 1)
    assert tracker.get("job").percentage == 33
    tracker.update("job", 7)
    assert tracker.get("job").percentage == 100


def test_zero_total_reports_zero_percent():
    tracker, _ = _tracker()
    tracker.init("job", 0)
    tracker.update("job", 5)
    assert tracker.get("job").percentage == 0


def test_unknown_job_operations_are_noops():
    tracker, _ = _tracker()

    tracker.update("ghost", 3, "nope")
    tracker.complete("ghost")
    tracker.fail("ghost", "nope")

    assert tracker.get("ghost") is None
    assert not tracker.exists("ghost")


def test_fail_keeps_progress_and_expires():
    tracker, clock = _tracker(cleanup_seconds=60)
    tracker.init("job", 10)
    tracker.update("job", 4)

    tracker.fail("job", "Could not read CSV file")
    job = tracker.get("job")
    assert job.status == "failed"
    assert job.message == "Could not read CSV file"
    assert job.progress == 4
    assert job.end_time is not None

    clock.advance(61)
    assert tracker.get("job") is None


def test_terminal_state_is_final():
    tracker, _ = _tracker()
    tracker.init("job", 2)
    tracker.complete("job", "done")

    tracker.update("job", 1, "late update")
    tracker.fail("job", "late failure")

    job = tracker.get("job")
    assert job.status == "completed"
    assert job.message == "done"
    assert job.progress == 2


def test_init_overwrites_existing_record():
    tracker, clock = _tracker(cleanup_seconds=10)
    tracker.init("job", 5)
    tracker.fail("job", "boom")

    tracker.init("job", 8)
    clock.advance(60)

    job = tracker.get("job")
    assert job.status == "processing"
    assert job.total == 8
    assert job.progress == 0


def test_get_returns_snapshot():
    tracker, _ = _tracker()
    tracker.init("job", 10)

    snapshot = tracker.get("job")
    snapshot.progress = 9

    assert tracker.get("job").progress == 0


def test_cleanup_expired_removes_only_finished_jobs():
    tracker, clock = _tracker(cleanup_seconds=5)
    tracker.init("running", 3)
    tracker.init("done", 3)
    tracker.init("failed", 3)
    tracker.complete("done")
    tracker.fail("failed", "boom")

    clock.advance(5)
    assert tracker.cleanup_expired() == 2
    assert tracker.exists("running")
    assert not tracker.exists("done")
    assert tracker.cleanup_expired() == 0


def test_new_job_sweeps_expired_records():
    tracker, clock = _tracker(cleanup_seconds=300)
    for i in range(1000):
        tracker.init(f"job-{i}", 1)
        tracker.complete(f"job-{i}")

    clock.advance(301)
    tracker.init("new-job", 5)
    tracker.update("new-job", 1)

    assert list(tracker._jobs) == ["new-job"]
    assert tracker._expires_at == {}


def test_finishing_a_job_sweeps_expired_records():
    tracker, clock = _tracker(cleanup_seconds=10)
    tracker.init("old", 1)
    tracker.fail("old", "boom")
    tracker.init("running", 1)

    clock.advance(11)
    tracker.complete("running")

    assert "old" not in tracker._jobs
    assert tracker.get("running").status == "completed"
