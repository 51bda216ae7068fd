"""
Usage metering sink.

Ingestion reports billable activity here: one ``tool_discovered`` event per
newly seen vendor and one event per accepted batch. Forwarding the events to
a billing provider happens outside this package; ``DatabaseUsageMeter`` only
records them in ``usage_events``.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from tool_telemetry.clock import utcnow
from tool_telemetry.db.models import UsageEvent

logger = logging.getLogger(__name__)

EVENT_TOOL_DISCOVERED = "tool_discovered"
EVENT_TELEMETRY_SPAN = "telemetry_span"
EVENT_TELEMETRY_DATAPOINT = "telemetry_datapoint"
EVENT_TELEMETRY_LOG = "telemetry_log"


class UsageMeter(ABC):
    @abstractmethod
    def record(
        self,
        customer_id: str,
        event_type: str,
        quantity: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class DatabaseUsageMeter(UsageMeter):
    """Writes ``UsageEvent`` rows in the caller's session (no commit)."""

    def __init__(self, session: Session):
        self.session = session

    def record(self, customer_id, event_type, quantity, metadata=None):
        event = UsageEvent(
            customer_id=customer_id,
            event_type=event_type,
            quantity=quantity,
            idempotency_key=_idempotency_key(customer_id, event_type),
            metadata_=metadata or {},
            created_at=utcnow(),
        )
        self.session.add(event)
        logger.debug("Recorded usage event %s x%d for customer %s", event_type, quantity, customer_id)


class NullUsageMeter(UsageMeter):
    def record(self, customer_id, event_type, quantity, metadata=None):
        logger.debug("Metering disabled, dropping %s x%d for customer %s", event_type, quantity, customer_id)


def _idempotency_key(customer_id: str, event_type: str) -> str:
    return f"{customer_id}-{event_type}-{uuid.uuid4().hex}"
