"""
Email Queue Processor: drains the outbox in bounded batches.

process_queue() is a plain batch function of (now, queue state); whatever
calls it (cron endpoint, scripts/run_jobs.py) decides how often.

Per row:
  1. claim   attempts += 1 and push scheduled_for out by a short lease,
             conditioned on the attempt count read. A racing sweep that
             already claimed the row makes this match nothing, so it is skipped.
  2. send    through the transport, bounded by send_timeout_seconds.
  3. record  sent + sent_at on success. On failure keep last_error and either
             reschedule with exponential backoff or, at max_attempts (or on a
             non-retryable error), mark the row failed for good.

Each row is its own set of single-statement updates; one row failing never
stops the batch. A crash between claim and record leaves the row pending,
and it is retried once the lease runs out.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Optional

from channels.base import CircuitOpenError, MailTransport, TransportError
from config.settings import EmailConfig, get_settings
from database.store_base import BaseStore
from models.schemas import EmailQueueItem, EmailStats, EmailStatus, QueueRunResult, utcnow

logger = structlog.get_logger()


class EmailQueueProcessor:

    def __init__(self, store: BaseStore, transport: MailTransport, config: EmailConfig = None):
        self.store = store
        self.transport = transport
        self.config = config or get_settings().email

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next try after ``attempts`` failed tries: base, 2×base, 4×base…"""
        return timedelta(seconds=self.config.backoff_base_seconds * 2 ** max(attempts - 1, 0))

    async def process_queue(self, limit: int = None, now: datetime = None) -> QueueRunResult:
        now = now or utcnow()
        limit = max(1, limit or self.config.batch_size)
        result = QueueRunResult()

        due = await self.store.fetch_due_emails(now, limit)
        logger.info("email_queue_batch_started", due=len(due), limit=limit)

        for item in due:
            try:
                outcome = await self._process_one(item, now)
            except CircuitOpenError:
                logger.warning("email_queue_circuit_open", remaining=len(due) - result.attempted)
                result.errors.append("transport circuit open; batch stopped early")
                break
            except Exception as e:
                # store failure on this row; the rest of the batch still runs
                logger.error("email_queue_row_error", email_id=item.id, error=str(e))
                result.errors.append(f"{item.id}: {e}")
                continue

            if outcome is None:
                continue
            result.attempted += 1
            if outcome == EmailStatus.SENT:
                result.sent += 1
            else:
                result.failed += 1
                if outcome == EmailStatus.FAILED:
                    result.dead += 1

        logger.info("email_queue_batch_finished",
                    attempted=result.attempted,
                    sent=result.sent,
                    failed=result.failed,
                    dead=result.dead)
        return result

    async def _process_one(self, item: EmailQueueItem, now: datetime) -> Optional[EmailStatus]:
        """
        Returns SENT, PENDING (failed, will retry), FAILED (terminal), or None
        when another worker claimed the row first.
        """
        attempts = item.attempts + 1
        lease = timedelta(seconds=self.config.send_timeout_seconds * 2)

        if self.transport.is_unavailable():
            raise CircuitOpenError(self.transport.name)

        claimed = await self.store.update_email(
            item.id,
            {"attempts": attempts, "scheduled_for": now + lease},
            where={"status": EmailStatus.PENDING.value, "attempts": item.attempts},
        )
        if claimed is None:
            logger.info("email_already_claimed", email_id=item.id)
            return None

        try:
            message_id = await asyncio.wait_for(
                self.transport.send(item.to_email, item.subject, item.html_body),
                timeout=self.config.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return await self._record_failure(
                claimed, f"send timed out after {self.config.send_timeout_seconds}s", True, now,
            )
        except TransportError as e:
            return await self._record_failure(claimed, str(e), e.retryable, now)
        except Exception as e:
            return await self._record_failure(claimed, str(e) or type(e).__name__, True, now)

        sent = await self.store.update_email(
            item.id,
            {"status": EmailStatus.SENT.value, "sent_at": now, "last_error": None},
            where={"status": EmailStatus.PENDING.value, "attempts": attempts},
        )
        if sent is None:
            logger.warning("email_sent_but_row_changed", email_id=item.id, message_id=message_id)
        else:
            logger.info("email_sent", email_id=item.id, to=item.to_email, message_id=message_id)
        return EmailStatus.SENT

    async def _record_failure(
        self, item: EmailQueueItem, error: str, retryable: bool, now: datetime,
    ) -> EmailStatus:
        terminal = not retryable or item.attempts >= self.config.max_attempts
        if terminal:
            values = {"status": EmailStatus.FAILED.value, "last_error": error}
        else:
            values = {"last_error": error, "scheduled_for": now + self.backoff(item.attempts)}

        await self.store.update_email(
            item.id, values,
            where={"status": EmailStatus.PENDING.value, "attempts": item.attempts},
        )
        if terminal:
            logger.error("email_failed_permanently",
                         email_id=item.id,
                         attempts=item.attempts,
                         retryable=retryable,
                         error=error)
            return EmailStatus.FAILED
        logger.warning("email_send_failed",
                       email_id=item.id,
                       attempts=item.attempts,
                       retry_at=values["scheduled_for"].isoformat(),
                       error=error)
        return EmailStatus.PENDING

    async def get_email_stats(self, user_id: str = None) -> EmailStats:
        counts = await self.store.email_status_counts(user_id)
        stats = EmailStats(
            pending=counts.get(EmailStatus.PENDING.value, 0),
            sent=counts.get(EmailStatus.SENT.value, 0),
            failed=counts.get(EmailStatus.FAILED.value, 0),
        )
        stats.total = stats.pending + stats.sent + stats.failed
        if user_id is None:
            stats.oldest_pending_at = await self.store.oldest_pending_email()
        return stats
