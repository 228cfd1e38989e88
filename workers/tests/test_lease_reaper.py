from datetime import datetime, timedelta, timezone

from ledger_worker.jobs.lease_reaper import lease_deadline, lease_expired


def test_lease_expired_for_processing_job_past_deadline() -> None:
    now = datetime.now(timezone.utc)
    job = {"status": "processing", "lease_expires_at": (now - timedelta(seconds=5)).isoformat()}
    assert lease_expired(job, now=now)


def test_lease_not_expired_when_job_is_no_longer_processing() -> None:
    now = datetime.now(timezone.utc)
    job = {"status": "completed", "lease_expires_at": (now - timedelta(seconds=5)).isoformat()}
    assert not lease_expired(job, now=now)


def test_lease_not_expired_before_deadline() -> None:
    now = datetime.now(timezone.utc)
    job = {"status": "processing", "lease_expires_at": (now + timedelta(seconds=30)).isoformat()}
    assert not lease_expired(job, now=now)


def test_lease_deadline_accepts_zulu_suffix() -> None:
    job = {"lease_expires_at": "2024-03-01T12:00:00Z"}
    assert lease_deadline(job) == datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
    assert lease_deadline({}) is None
