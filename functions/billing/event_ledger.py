"""
Event Idempotency Ledger.

Append-only DynamoDB log of processor event ids that were successfully or
terminally handled. The durable table is the source of truth for duplicate
suppression; a per-execution-environment cache only saves a read when the
same Lambda instance sees a redelivery.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Optional

from botocore.exceptions import ClientError

from . import config
from .aws_clients import get_dynamodb
from .constants import PROCESSED_EVENT_CACHE_SIZE
from .dynamo import CONDITION_FAILED, compact, error_code, execute
from .models import ProcessedEvent

logger = logging.getLogger(__name__)


class _RecentEvents:
    """Bounded insertion-ordered set of event ids."""

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._ids

    def add(self, event_id: str) -> None:
        self._ids[event_id] = None
        self._ids.move_to_end(event_id)
        while len(self._ids) > self.max_size:
            self._ids.popitem(last=False)

    def clear(self) -> None:
        self._ids.clear()


# Shared by every ledger instance in this execution environment
_recent_events = _RecentEvents(PROCESSED_EVENT_CACHE_SIZE)


def clear_recent_events() -> None:
    """Reset the in-process duplicate cache. Used in tests."""
    _recent_events.clear()


class EventLedger:
    def __init__(
        self,
        table_name: Optional[str] = None,
        dynamodb=None,
        retention_days: Optional[int] = None,
    ):
        self.table_name = table_name or config.PROCESSED_EVENTS_TABLE
        self._dynamodb = dynamodb
        self.retention_days = config.LEDGER_RETENTION_DAYS if retention_days is None else retention_days

    @property
    def table(self):
        return (self._dynamodb or get_dynamodb()).Table(self.table_name)

    def is_processed(self, event_id: str) -> bool:
        """True if event_id was already recorded, here or by any other instance."""
        if event_id in _recent_events:
            logger.info(f"Duplicate event {event_id} detected in memory cache")
            return True

        response = execute(
            "get_processed_event",
            self.table.get_item,
            Key={"pk": event_id},
            ConsistentRead=True,
        )
        if response.get("Item"):
            _recent_events.add(event_id)
            logger.info(f"Duplicate event {event_id} detected in ledger")
            return True
        return False

    def record(
        self,
        event_id: str,
        event_type: str,
        status: str,
        error: Optional[str] = None,
        customer_id: Optional[str] = None,
        event_created: Optional[int] = None,
    ) -> bool:
        """
        Append event_id to the ledger.

        Entries are written once and never updated.

        Returns:
            True if this call wrote the entry, False if it already existed
            (a concurrent delivery recorded it first)
        """
        now = datetime.now(timezone.utc)
        entry = ProcessedEvent(
            event_id=event_id,
            event_type=event_type,
            processed_at=now.isoformat(),
            status=status,
            error=error,
            customer_id=customer_id,
            event_created_at=event_created,
        )
        item = compact(entry.to_item())
        if self.retention_days > 0:
            item["ttl"] = int((now + timedelta(days=self.retention_days)).timestamp())

        try:
            execute(
                "record_processed_event",
                self.table.put_item,
                Item=item,
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            if error_code(e) == CONDITION_FAILED:
                logger.info(f"Event {event_id} already recorded by a concurrent delivery")
                _recent_events.add(event_id)
                return False
            raise

        _recent_events.add(event_id)
        logger.info(f"Recorded event {event_id} ({event_type}) as {status}")
        return True
