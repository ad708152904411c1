from __future__ import annotations

import datetime

import pytest

from app.services.bulk_email import (
    BulkEmailJob,
    BulkEmailJobNotFoundError,
    BulkEmailJobState,
    BulkEmailRegistry,
    is_rate_limited,
    normalize_recipients,
)
from conftest import RecordingEmailSender


def _registry(**overrides) -> BulkEmailRegistry:
    options = {"batch_size": 2, "batch_delay_seconds": 0, "max_attempts": 3, "initial_backoff_seconds": 0}
    options.update(overrides)
    return BulkEmailRegistry(**options)


async def _run_job(registry: BulkEmailRegistry, recipients: list[str], sender: RecordingEmailSender) -> BulkEmailJob:
    job = BulkEmailJob(subject="Maintenance window", total=len(recipients))
    await registry.register(job)
    await registry.start(job, recipients=recipients, html_body="<p>hello</p>", email_sender=sender)
    return await registry.get(job.id)


def test_normalize_recipients_dedupes_and_separates_invalid() -> None:
    result = normalize_recipients(
        [" Alice@Example.com ", "alice@example.com", "not-an-address", "", "bob@example.org", "NOT-AN-ADDRESS"]
    )

    assert result.valid == ["alice@example.com", "bob@example.org"]
    assert result.invalid == ["not-an-address"]


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("429 Too Many Requests", True),
        ("Rate limit exceeded", True),
        ("daily quota reached", True),
        ("mailbox unavailable", False),
    ],
)
def test_is_rate_limited(message, expected) -> None:
    assert is_rate_limited(RuntimeError(message)) is expected


@pytest.mark.asyncio
async def test_job_sends_every_batch_and_finishes() -> None:
    sender = RecordingEmailSender()
    recipients = [f"user{index}@example.com" for index in range(5)]

    job = await _run_job(_registry(), recipients, sender)

    assert job.state == BulkEmailJobState.FINISHED
    assert (job.sent, job.failed) == (5, 0)
    assert [message["to"] for message in sender.sent] == recipients
    assert job.started_at is not None and job.ended_at is not None


@pytest.mark.asyncio
async def test_rate_limited_recipient_is_retried() -> None:
    sender = RecordingEmailSender(
        failures={"busy@example.com": [RuntimeError("429 rate limited"), RuntimeError("429 rate limited")]}
    )

    job = await _run_job(_registry(), ["busy@example.com", "calm@example.com"], sender)

    assert sender.attempts == {"busy@example.com": 3, "calm@example.com": 1}
    assert (job.sent, job.failed) == (2, 0)
    assert job.state == BulkEmailJobState.FINISHED


@pytest.mark.asyncio
async def test_other_errors_fail_the_recipient_without_retry() -> None:
    sender = RecordingEmailSender(failures={"gone@example.com": [RuntimeError("mailbox unavailable")]})

    job = await _run_job(_registry(), ["gone@example.com", "here@example.com"], sender)

    assert sender.attempts["gone@example.com"] == 1
    assert (job.sent, job.failed) == (1, 1)
    assert job.failures[0].email == "gone@example.com"
    assert job.failures[0].error == "mailbox unavailable"
    assert job.state == BulkEmailJobState.FINISHED


@pytest.mark.asyncio
async def test_rate_limit_retries_stop_at_max_attempts() -> None:
    sender = RecordingEmailSender(failures={"busy@example.com": [RuntimeError("rate limited")] * 5})

    job = await _run_job(_registry(max_attempts=2), ["busy@example.com"], sender)

    assert sender.attempts["busy@example.com"] == 2
    assert job.state == BulkEmailJobState.FAILED
    assert job.error == "no message could be delivered"


@pytest.mark.asyncio
async def test_get_unknown_job_raises() -> None:
    with pytest.raises(BulkEmailJobNotFoundError):
        await _registry().get("missing")


@pytest.mark.asyncio
async def test_ended_jobs_are_dropped_after_retention_but_running_jobs_stay() -> None:
    registry = _registry(retention_seconds=60)
    long_ago = datetime.datetime.now(datetime.UTC) - datetime.timedelta(minutes=5)
    finished = BulkEmailJob(subject="Old notice", total=1, state=BulkEmailJobState.FINISHED, ended_at=long_ago)
    failed = BulkEmailJob(subject="Old failure", total=1, state=BulkEmailJobState.FAILED, ended_at=long_ago)
    running = BulkEmailJob(subject="Still sending", total=1, state=BulkEmailJobState.RUNNING, created_at=long_ago)
    recent = BulkEmailJob(
        subject="Just done",
        total=1,
        state=BulkEmailJobState.FINISHED,
        ended_at=datetime.datetime.now(datetime.UTC),
    )
    for job in (finished, failed, running):
        await registry.register(job)

    await registry.register(recent)

    for job in (finished, failed):
        with pytest.raises(BulkEmailJobNotFoundError):
            await registry.get(job.id)
    assert (await registry.get(running.id)).state == BulkEmailJobState.RUNNING
    assert (await registry.get(recent.id)).state == BulkEmailJobState.FINISHED
