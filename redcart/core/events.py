"""
Typed reconciliation events stored in the ``payment_events`` log.

Each variant is versioned. Rows whose type or payload no longer matches a
known variant are read back as ``LegacyEvent`` so old history never breaks
readers.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from redcart.database.models import PaymentEvent

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """Common envelope for all reconciliation events."""

    model_config = ConfigDict(extra="ignore")

    version: int = 1
    recorded_at: datetime = Field(default_factory=_utcnow)


class StkPushInitiated(BaseEvent):
    event_type: Literal["stk_push_initiated"] = "stk_push_initiated"
    phone_number: str
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str = ""
    customer_message: str = ""
    callback_url: str


class CallbackReceived(BaseEvent):
    event_type: Literal["callback_received"] = "callback_received"
    result_code: int
    result_desc: str = ""
    merchant_request_id: str = ""
    checkout_request_id: str = ""
    receipt_number: Optional[str] = None
    applied: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)


class PollQueried(BaseEvent):
    event_type: Literal["poll_queried"] = "poll_queried"
    source: str
    checkout_request_id: str
    response_code: str = ""
    response_description: str = ""
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    applied: bool = False
    raw: Any = None


class StatusChanged(BaseEvent):
    event_type: Literal["status_changed"] = "status_changed"
    from_status: str
    to_status: str
    via: Literal["callback", "poll", "checkout", "stk_push"]
    transaction_ref: Optional[str] = None


class LegacyEvent(BaseEvent):
    """Fallback for rows that no known variant can parse."""

    event_type: str
    data: Dict[str, Any] = Field(default_factory=dict)


ReconciliationEvent = Annotated[
    Union[StkPushInitiated, CallbackReceived, PollQueried, StatusChanged],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter = TypeAdapter(ReconciliationEvent)


def to_row(payment_id: str, event: BaseEvent) -> PaymentEvent:
    """Build the ``PaymentEvent`` row for ``event``."""
    data = event.model_dump(mode="json", exclude={"event_type", "version"})
    return PaymentEvent(
        payment_id=payment_id,
        event_type=event.event_type,  # type: ignore[attr-defined]
        event_version=event.version,
        event_data=data,
        created_at=event.recorded_at,
    )


def from_row(row: PaymentEvent) -> BaseEvent:
    """Parse a stored row back into its typed event."""
    payload = dict(row.event_data or {})
    payload["event_type"] = row.event_type
    payload["version"] = row.event_version
    try:
        return _event_adapter.validate_python(payload)
    except PydanticValidationError:
        logger.warning(
            "payment_event_unparsed",
            payment_id=row.payment_id,
            event_type=row.event_type,
            event_version=row.event_version,
        )
        return LegacyEvent(
            event_type=row.event_type,
            version=row.event_version,
            recorded_at=row.created_at,
            data=dict(row.event_data or {}),
        )


def append_events(session: AsyncSession, payment_id: str, *events: BaseEvent) -> None:
    """Add events to the session; they commit with the surrounding transaction."""
    for event in events:
        session.add(to_row(payment_id, event))


async def load_events(session: AsyncSession, payment_id: str) -> List[BaseEvent]:
    """Return the ordered event history for a payment."""
    result = await session.execute(
        select(PaymentEvent)
        .where(PaymentEvent.payment_id == payment_id)
        .order_by(PaymentEvent.id)
    )
    return [from_row(row) for row in result.scalars().all()]
