"""
Event Service - domain events outbox and best-effort fan-out

Every event is written to ``domain_events`` in the same transaction as the
state change that caused it. After the caller commits, staged events are
published to Redis Pub/Sub (``cydex_events:<event_type>``) for observability
and notification consumers. A failed publish never affects the business
outcome; the row in ``domain_events`` stays the source of truth.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.models.domain_event import DomainEvent, EventType, SettlementStatus

logger = get_logger(__name__)

_CHANNEL_PREFIX = "cydex_events"


def channel_name(event_type: EventType) -> str:
    """Pub/Sub channel per event type"""
    return f"{_CHANNEL_PREFIX}:{event_type.value}"


def _jsonable(value: Any) -> Any:
    """Make a payload value JSON-safe (UUID/Decimal/datetime/enum → str)"""
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


class EventService:
    """Stages domain events inside the caller's transaction"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._staged: List[DomainEvent] = []

    async def record(
        self,
        event_type: EventType,
        payload: dict,
        order_id: Optional[UUID] = None,
        delivery_id: Optional[UUID] = None,
        requires_settlement: bool = False,
    ) -> DomainEvent:
        """Add an event row to the current transaction; flushed so the id is known"""
        event = DomainEvent(
            event_type=event_type,
            payload=_jsonable(payload),
            order_id=order_id,
            delivery_id=delivery_id,
            settlement_status=(
                SettlementStatus.PENDING if requires_settlement else SettlementStatus.NOT_REQUIRED
            ),
        )
        self.db.add(event)
        await self.db.flush()
        self._staged.append(event)
        return event

    def discard_staged(self) -> None:
        """Forget staged events after a rollback"""
        self._staged.clear()

    async def publish_staged(self) -> None:
        """Publish every staged event; call only after commit"""
        staged, self._staged = self._staged, []
        for event in staged:
            await publish_event(event)


async def publish_event(event: DomainEvent) -> None:
    """Publish a committed event to Redis Pub/Sub"""
    try:
        message = json.dumps(
            {
                "id": event.id,
                "type": event.event_type.value,
                "payload": event.payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            ensure_ascii=False,
            default=str,
        )
        redis = await get_redis()
        await redis.publish(channel_name(event.event_type), message)
    except Exception as e:
        # כשלון בפרסום לא עוצר את הפעולה העסקית - האירוע שמור בטבלה
        logger.error(
            "Failed to publish domain event",
            extra_data={
                "event_id": event.id,
                "event_type": event.event_type.value,
                "error": str(e),
            },
            exc_info=True,
        )
