# src/infrastructure/repositories/outbox_repository.py

from datetime import datetime, timezone
import hashlib
import json

from sqlalchemy.orm import Session
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from src.infrastructure.db.models import OutboxEvent, PaymentWebhookEvent


class OutboxRepository:
    """
    Transactional outbox. Events are written in the same transaction as the
    state change; the realtime fan-out reads and acknowledges them.
    """

    def __init__(self, db: Session):
        self.db = db

    def add_event(
        self,
        aggregate_type: str,
        aggregate_id: str,
        topic: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
    ) -> bool:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return False

        self.db.add(
            OutboxEvent(
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                topic=topic,
                event_type=event_type,
                payload=json.dumps(payload, sort_keys=True, default=str),
                dedupe_key=dedupe_key,
                status="PENDING",
                attempts=0,
            )
        )
        return True

    def list_events(
        self,
        status_filter: str = "PENDING",
        limit: int = 50,
        topic: str | None = None,
    ) -> list[OutboxEvent]:
        stmt = select(OutboxEvent).where(OutboxEvent.status == status_filter)
        if topic:
            stmt = stmt.where(OutboxEvent.topic == topic)
        stmt = stmt.order_by(OutboxEvent.created_at).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def get_by_id(self, event_id: str) -> OutboxEvent | None:
        return self.db.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id)
        ).scalar_one_or_none()

    def mark_published(self, item: OutboxEvent) -> OutboxEvent:
        item.status = "PUBLISHED"
        item.published_at = datetime.now(timezone.utc)
        item.attempts += 1
        return item


class WebhookEventRepository:

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def hash_payload(body: bytes) -> str:
        return hashlib.sha256(body).hexdigest()

    def record(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        body: bytes,
        booking_id: str | None = None,
    ) -> bool:
        """Returns False when the event id was already processed."""
        try:
            with self.db.begin_nested():
                self.db.add(
                    PaymentWebhookEvent(
                        provider=provider,
                        event_id=event_id,
                        event_type=event_type,
                        booking_id=booking_id,
                        payload_hash=self.hash_payload(body),
                        status="PROCESSED",
                    )
                )
                self.db.flush()
        except IntegrityError:
            return False
        return True
