"""Relay of committed `orders.paid` outbox rows to Kafka.

Rows are written by the order store in the same transaction as the paid
transition. The relay claims a batch, publishes each row and marks it SENT, or
puts it back to PENDING when publishing fails. A row stuck in PROCESSING (relay
crashed mid-batch) becomes claimable again after `claim_timeout_seconds`.
Delivery is at-least-once; consumers key on `event_id`.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select
from starlette.concurrency import run_in_threadpool

from coinpay.common.events import EventEnvelope, KafkaBus
from coinpay.common.logging import logger
from coinpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total
from coinpay.services.payments.models import OutboxEvent

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


@dataclass(frozen=True)
class ClaimedEvent:
    id: str
    topic: str
    envelope: EventEnvelope
    attempts: int


class OutboxRelay:
    def __init__(
        self,
        session_factory,
        bus: KafkaBus,
        service_name: str = "payments",
        batch_size: int = 100,
        claim_timeout_seconds: int = 30,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.service_name = service_name
        self.batch_size = batch_size
        self.claim_timeout_seconds = claim_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def claim_batch(self) -> list[ClaimedEvent]:
        """Move up to `batch_size` publishable rows to PROCESSING and return them, oldest first."""

        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=self.claim_timeout_seconds)
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(OutboxEvent)
                    .where(
                        or_(
                            OutboxEvent.status == PENDING,
                            (OutboxEvent.status == PROCESSING) & (OutboxEvent.claimed_at < stale_before),
                        )
                    )
                    .order_by(OutboxEvent.created_at)
                    .limit(self.batch_size)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            claimed = []
            for row in rows:
                row.status = PROCESSING
                row.claimed_at = now
                row.attempts = (row.attempts or 0) + 1
                claimed.append(
                    ClaimedEvent(
                        id=row.id,
                        topic=row.topic,
                        envelope=EventEnvelope(**row.payload),
                        attempts=row.attempts,
                    )
                )
            db.commit()
        return claimed

    def mark_sent(self, event_id: str) -> None:
        self._settle(event_id, SENT, sent_at=datetime.now(timezone.utc))

    def release(self, event_id: str) -> None:
        """Return a claimed row to PENDING so the next pass retries it."""

        self._settle(event_id, PENDING, sent_at=None)

    def _settle(self, event_id: str, status: str, sent_at: datetime | None) -> None:
        with self.session_factory() as db:
            row = db.get(OutboxEvent, event_id)
            # Another relay may have reclaimed a stale row; leave it to that one.
            if row is None or row.status != PROCESSING:
                return
            row.status = status
            row.sent_at = sent_at
            row.claimed_at = None
            db.commit()

    def record_backlog(self) -> int:
        """Refresh the backlog gauges and return the number of unsent rows."""

        with self.session_factory() as db:
            unsent = OutboxEvent.status.in_((PENDING, PROCESSING))
            count, oldest = db.execute(select(func.count(), func.min(OutboxEvent.created_at)).where(unsent)).one()
        age_seconds = 0.0
        if oldest is not None:
            if oldest.tzinfo is None:
                oldest = oldest.replace(tzinfo=timezone.utc)
            age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)
        return count

    async def run_once(self) -> int:
        """Claim and publish one batch. Returns how many rows were sent."""

        sent = 0
        for event in await run_in_threadpool(self.claim_batch):
            try:
                await self.bus.publish(event.topic, event.envelope)
            except Exception as exc:
                logger.warning(
                    "outbox_publish_failed event_id=%s order_id=%s attempts=%s error=%s",
                    event.id,
                    event.envelope.aggregate_id,
                    event.attempts,
                    exc,
                )
                await run_in_threadpool(self.release, event.id)
                continue
            await run_in_threadpool(self.mark_sent, event.id)
            sent += 1
        await run_in_threadpool(self.record_backlog)
        return sent

    async def run_forever(self) -> None:
        """Poll until cancelled. A failed pass is logged and retried on the next tick."""

        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("outbox_relay_pass_failed")
            await asyncio.sleep(self.poll_interval_seconds)
