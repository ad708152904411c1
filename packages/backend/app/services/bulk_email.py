"""
Bulk email jobs.

A request validates the recipient list, registers a job and returns at once; a detached
asyncio task then sends in fixed-size batches with a pause between batches, retrying a
recipient only when the failure looks like provider rate limiting.

Job state lives in this process only. A restart loses queued and running jobs along with
their status. Finished and failed jobs stay readable for ``bulk_email_job_retention_seconds``
after they end and are then dropped.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import secrets
from dataclasses import dataclass, field

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.settings import settings
from app.models.audit_log import AuditLogAction
from app.models.user import User
from app.services.activity import build_audit_log
from app.services.email import EmailSender, wrap_plain_text


logger = logging.getLogger(__name__)

MAX_RECIPIENTS = 1500
MAX_SUBJECT_LENGTH = 200
MAX_MESSAGE_LENGTH = 20000
_RATE_LIMIT_MARKERS = ("rate", "429", "quota")


class BulkEmailValidationError(Exception):
    pass


class BulkEmailJobNotFoundError(Exception):
    pass


class BulkEmailJobState:
    QUEUED = "queued"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass
class BulkEmailFailure:
    email: str
    error: str


@dataclass
class BulkEmailJob:
    subject: str
    total: int
    id: str = field(default_factory=lambda: secrets.token_hex(16))
    state: str = BulkEmailJobState.QUEUED
    created_at: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(datetime.UTC))
    started_at: datetime.datetime | None = None
    ended_at: datetime.datetime | None = None
    sent: int = 0
    failed: int = 0
    failures: list[BulkEmailFailure] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class RecipientList:
    valid: list[str]
    invalid: list[str]


@dataclass(frozen=True)
class BulkEmailQueued:
    job: BulkEmailJob
    invalid: list[str]


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def normalize_recipients(recipients: list[str]) -> RecipientList:
    """Trim, lower-case, validate and de-duplicate, keeping first-seen order."""
    valid: list[str] = []
    invalid: list[str] = []
    seen: set[str] = set()
    for raw in recipients:
        candidate = raw.strip().lower()
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        try:
            validate_email(candidate, check_deliverability=False)
        except EmailNotValidError:
            invalid.append(candidate)
            continue
        valid.append(candidate)
    return RecipientList(valid=valid, invalid=invalid)


def is_rate_limited(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def _validate_content(subject: str, message: str) -> tuple[str, str]:
    subject = subject.strip()
    if not subject or len(subject) > MAX_SUBJECT_LENGTH:
        raise BulkEmailValidationError(f"subject must be 1-{MAX_SUBJECT_LENGTH} characters")
    if not message.strip() or len(message) > MAX_MESSAGE_LENGTH:
        raise BulkEmailValidationError(f"message must be 1-{MAX_MESSAGE_LENGTH} characters")
    return subject, message


class BulkEmailRegistry:
    """In-memory job map shared by the HTTP handlers and the send workers."""

    def __init__(
        self,
        *,
        batch_size: int = settings.bulk_email_batch_size,
        batch_delay_seconds: float = settings.bulk_email_batch_delay_seconds,
        max_attempts: int = settings.bulk_email_max_attempts,
        initial_backoff_seconds: float = settings.bulk_email_initial_backoff_seconds,
        retention_seconds: float = settings.bulk_email_job_retention_seconds,
    ) -> None:
        self.batch_size = max(batch_size, 1)
        self.batch_delay_seconds = batch_delay_seconds
        self.max_attempts = max(max_attempts, 1)
        self.initial_backoff_seconds = initial_backoff_seconds
        self.retention = datetime.timedelta(seconds=max(retention_seconds, 0))
        self._jobs: dict[str, BulkEmailJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def _prune(self, now: datetime.datetime) -> None:
        # Caller holds self._lock.
        cutoff = now - self.retention
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.state in (BulkEmailJobState.FINISHED, BulkEmailJobState.FAILED)
            and job.ended_at is not None
            and job.ended_at <= cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("pruned %d ended bulk email jobs", len(expired))

    async def register(self, job: BulkEmailJob) -> None:
        async with self._lock:
            self._prune(_utc_now())
            self._jobs[job.id] = job

    async def get(self, job_id: str) -> BulkEmailJob:
        async with self._lock:
            self._prune(_utc_now())
            job = self._jobs.get(job_id)
            if job is None:
                raise BulkEmailJobNotFoundError(f"bulk email job {job_id} not found")
            # Copy so callers never observe a half-applied update.
            return BulkEmailJob(
                subject=job.subject,
                total=job.total,
                id=job.id,
                state=job.state,
                created_at=job.created_at,
                started_at=job.started_at,
                ended_at=job.ended_at,
                sent=job.sent,
                failed=job.failed,
                failures=list(job.failures),
                error=job.error,
            )

    def start(
        self,
        job: BulkEmailJob,
        *,
        recipients: list[str],
        html_body: str,
        email_sender: EmailSender,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._run(job.id, recipients=recipients, html_body=html_body, email_sender=email_sender),
            name=f"bulk-email-{job.id}",
        )
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))
        return task

    async def _record(self, job_id: str, email: str, error: str | None) -> None:
        async with self._lock:
            job = self._jobs[job_id]
            if error is None:
                job.sent += 1
            else:
                job.failed += 1
                job.failures.append(BulkEmailFailure(email=email, error=error))

    async def _send_one(
        self,
        email_sender: EmailSender,
        *,
        recipient: str,
        subject: str,
        html_body: str,
    ) -> str | None:
        backoff = self.initial_backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                await email_sender.send_email(recipient_email=recipient, subject=subject, html_body=html_body)
                return None
            except Exception as exc:
                if attempt < self.max_attempts and is_rate_limited(exc):
                    logger.info("rate limited sending to %s (attempt %d); retrying in %.1fs", recipient, attempt, backoff)
                    await asyncio.sleep(backoff)
                    backoff *= 2
                    continue
                return str(exc) or type(exc).__name__
        return "send attempts exhausted"

    async def _run(
        self,
        job_id: str,
        *,
        recipients: list[str],
        html_body: str,
        email_sender: EmailSender,
    ) -> None:
        async with self._lock:
            job = self._jobs[job_id]
            job.state = BulkEmailJobState.RUNNING
            job.started_at = _utc_now()
            subject = job.subject
        logger.info("bulk email job %s started (%d recipients)", job_id, len(recipients))

        try:
            for offset in range(0, len(recipients), self.batch_size):
                if offset and self.batch_delay_seconds > 0:
                    await asyncio.sleep(self.batch_delay_seconds)
                for recipient in recipients[offset : offset + self.batch_size]:
                    error = await self._send_one(
                        email_sender,
                        recipient=recipient,
                        subject=subject,
                        html_body=html_body,
                    )
                    if error is not None:
                        logger.warning("bulk email job %s: send to %s failed: %s", job_id, recipient, error)
                    await self._record(job_id, recipient, error)
        except asyncio.CancelledError:
            async with self._lock:
                job.state = BulkEmailJobState.FAILED
                job.error = "canceled"
                job.ended_at = _utc_now()
            raise

        async with self._lock:
            job.ended_at = _utc_now()
            if job.sent == 0 and job.failed > 0:
                job.state = BulkEmailJobState.FAILED
                job.error = "no message could be delivered"
            else:
                job.state = BulkEmailJobState.FINISHED
            sent, failed = job.sent, job.failed
        logger.info("bulk email job %s done: sent=%d failed=%d", job_id, sent, failed)


async def create_bulk_email_job(
    db: AsyncSession,
    *,
    registry: BulkEmailRegistry,
    actor: User,
    recipients: list[str],
    subject: str,
    message: str,
    email_sender: EmailSender,
    client_ip: str,
    user_agent: str,
) -> BulkEmailQueued:
    subject, message = _validate_content(subject, message)
    normalized = normalize_recipients(recipients)
    if len(normalized.valid) + len(normalized.invalid) > MAX_RECIPIENTS:
        raise BulkEmailValidationError(f"at most {MAX_RECIPIENTS} recipients per job")
    if not normalized.valid:
        raise BulkEmailValidationError("no valid recipients")

    job = BulkEmailJob(subject=subject, total=len(normalized.valid))
    await registry.register(job)

    db.add(
        build_audit_log(
            org_id=actor.org_id,
            actor_id=actor.id,
            action=AuditLogAction.BULK_EMAIL_QUEUED,
            target_id=None,
            ip_address=client_ip,
            user_agent=user_agent,
            details={"job_id": job.id, "total": job.total, "invalid": len(normalized.invalid), "subject": subject},
        )
    )
    await db.commit()

    registry.start(job, recipients=normalized.valid, html_body=wrap_plain_text(message), email_sender=email_sender)
    logger.info(
        "bulk email job %s queued by %s: %d valid, %d invalid",
        job.id,
        actor.id,
        job.total,
        len(normalized.invalid),
    )
    return BulkEmailQueued(job=job, invalid=normalized.invalid)


_registry: BulkEmailRegistry | None = None


def get_bulk_email_registry() -> BulkEmailRegistry:
    global _registry
    if _registry is None:
        _registry = BulkEmailRegistry()
    return _registry
