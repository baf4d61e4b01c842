"""
Subscription Record Store (DynamoDB).

Table layout:
    pk=<user_id>,                sk="SUBSCRIPTION"  one subscription row per user
    pk="CUSTOMER#<customer_id>", sk="CUSTOMER"      guard row, maps customer -> user

The guard row is written in the same transaction as the first write that
references a customer id, with attribute_not_exists(pk), so a customer id can
never be linked to two users. It also gives a strongly consistent
customer -> user lookup for webhook deliveries, which only carry processor ids.
"""

import logging
from typing import Optional

from botocore.exceptions import ClientError

from . import config
from .aws_clients import get_dynamodb, get_dynamodb_client
from .constants import CUSTOMER_PK_PREFIX, CUSTOMER_SK, SUBSCRIPTION_SK
from .dynamo import (
    CONDITION_FAILED,
    TRANSACTION_CANCELED,
    build_update,
    error_code,
    execute,
    serialize,
)
from .errors import ConflictError
from .models import PlanSnapshot, SubscriptionRecord, UpdateOutcome, now_iso

logger = logging.getLogger(__name__)

# Applied to event-driven updates: a late delivery must not overwrite newer state
EVENT_ORDER_CONDITION = "(attribute_not_exists(last_event_at) OR last_event_at <= :event_created)"
# A redelivered event that already reached the row must not apply twice
EVENT_ONCE_CONDITION = "(attribute_not_exists(last_event_id) OR last_event_id <> :event_id)"


def _record_key(user_id: str) -> dict:
    return {"pk": user_id, "sk": SUBSCRIPTION_SK}


def _customer_key(customer_id: str) -> dict:
    return {"pk": f"{CUSTOMER_PK_PREFIX}{customer_id}", "sk": CUSTOMER_SK}


class SubscriptionStore:
    """Repository for subscription rows. All reads are strongly consistent."""

    def __init__(self, table_name: Optional[str] = None, dynamodb=None, dynamodb_client=None):
        self.table_name = table_name or config.SUBSCRIPTIONS_TABLE
        self._dynamodb = dynamodb
        self._dynamodb_client = dynamodb_client

    @property
    def _resource(self):
        return self._dynamodb or get_dynamodb()

    @property
    def table(self):
        return self._resource.Table(self.table_name)

    @property
    def _client(self):
        # Transaction items are already typed; the resource client would serialize them again
        return self._dynamodb_client or get_dynamodb_client()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_user_id(self, user_id: str) -> Optional[SubscriptionRecord]:
        response = execute(
            "get_subscription",
            self.table.get_item,
            Key=_record_key(user_id),
            ConsistentRead=True,
        )
        item = response.get("Item")
        return SubscriptionRecord.from_item(item) if item else None

    def get_user_id_for_customer(self, customer_id: str) -> Optional[str]:
        response = execute(
            "get_customer_link",
            self.table.get_item,
            Key=_customer_key(customer_id),
            ConsistentRead=True,
        )
        item = response.get("Item")
        return item.get("user_id") if item else None

    def get_by_customer_id(self, customer_id: str) -> Optional[SubscriptionRecord]:
        user_id = self.get_user_id_for_customer(customer_id)
        if not user_id:
            return None
        record = self.get_by_user_id(user_id)
        if record is None or record.customer_id != customer_id:
            # Guard outlived its row (row deleted between writes)
            return None
        return record

    # ------------------------------------------------------------------
    # Writes that create or remove a customer link
    # ------------------------------------------------------------------

    def insert(self, record: SubscriptionRecord) -> None:
        """Insert a new row (and its customer guard). ConflictError if either exists."""
        record.modified_at = record.modified_at or now_iso()
        item = {**_record_key(record.user_id), **record.to_item()}
        transact_items = [
            {
                "Put": {
                    "TableName": self.table_name,
                    "Item": serialize(item),
                    "ConditionExpression": "attribute_not_exists(pk)",
                }
            }
        ]
        if record.customer_id:
            transact_items.append(self._put_guard(record.customer_id, record.user_id))

        self._transact("insert_subscription", transact_items, record.user_id)
        logger.info(f"Inserted subscription row for user {record.user_id}")

    def link_customer(self, user_id: str, customer_id: str, changes: Optional[dict] = None) -> None:
        """Set customer_id on an existing row that has none."""
        fields = {"customer_id": customer_id, **(changes or {}), "modified_at": now_iso()}
        expression, names, values = build_update(fields)
        transact_items = [
            {
                "Update": {
                    "TableName": self.table_name,
                    "Key": serialize(_record_key(user_id)),
                    "UpdateExpression": expression,
                    "ConditionExpression": "attribute_exists(pk) AND attribute_not_exists(customer_id)",
                    "ExpressionAttributeNames": names,
                    "ExpressionAttributeValues": serialize(values),
                }
            },
            self._put_guard(customer_id, user_id),
        ]
        self._transact("link_customer", transact_items, user_id)
        logger.info(f"Linked customer {customer_id} to user {user_id}")

    def attach_customer(self, user_id: str, customer_id: str, plan_snapshot: PlanSnapshot) -> None:
        self.link_customer(user_id, customer_id, {"plan_snapshot": plan_snapshot.to_item()})

    def detach_customer(self, user_id: str, customer_id: str) -> None:
        """Undo attach_customer: clear customer_id and plan_snapshot, drop the guard."""
        expression, names, values = build_update(
            {"customer_id": None, "plan_snapshot": None, "modified_at": now_iso()}
        )
        names["#cid"] = "customer_id"
        values[":cid"] = customer_id
        transact_items = [
            {
                "Update": {
                    "TableName": self.table_name,
                    "Key": serialize(_record_key(user_id)),
                    "UpdateExpression": expression,
                    "ConditionExpression": "#cid = :cid",
                    "ExpressionAttributeNames": names,
                    "ExpressionAttributeValues": serialize(values),
                }
            },
            {
                "Delete": {
                    "TableName": self.table_name,
                    "Key": serialize(_customer_key(customer_id)),
                }
            },
        ]
        self._transact("detach_customer", transact_items, user_id)
        logger.info(f"Detached customer {customer_id} from user {user_id}")

    def delete(self, user_id: str) -> None:
        """Delete the row and its customer guard, if any."""
        record = self.get_by_user_id(user_id)
        if record is None:
            return
        transact_items = [
            {"Delete": {"TableName": self.table_name, "Key": serialize(_record_key(user_id))}}
        ]
        if record.customer_id:
            transact_items.append(
                {"Delete": {"TableName": self.table_name, "Key": serialize(_customer_key(record.customer_id))}}
            )
        self._transact("delete_subscription", transact_items, user_id)
        logger.info(f"Deleted subscription row for user {user_id}")

    # ------------------------------------------------------------------
    # Conditional field updates
    # ------------------------------------------------------------------

    def update_by_user_id(self, user_id: str, changes: dict) -> UpdateOutcome:
        """Update fields on an existing row. NOT_FOUND when the row is gone."""
        expression, names, values = build_update({**changes, "modified_at": now_iso()})
        kwargs = {
            "Key": _record_key(user_id),
            "UpdateExpression": expression,
            "ConditionExpression": "attribute_exists(pk)",
            "ExpressionAttributeNames": names,
        }
        if values:
            kwargs["ExpressionAttributeValues"] = values
        try:
            execute("update_subscription", self.table.update_item, **kwargs)
        except ClientError as e:
            if error_code(e) == CONDITION_FAILED:
                logger.info(f"No subscription row to update for user {user_id}")
                return UpdateOutcome.NOT_FOUND
            raise
        return UpdateOutcome.UPDATED

    def update_by_customer_id(
        self,
        customer_id: str,
        changes: dict,
        event_created: Optional[int] = None,
        event_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> tuple[UpdateOutcome, Optional[SubscriptionRecord]]:
        """
        Update fields on the row linked to customer_id.

        Args:
            customer_id: Processor customer id
            changes: Field -> value mapping; None removes the field
            event_created: Signed `created` of the processor event driving the
                update. When given, rows already updated by a newer event are
                left alone.
            event_id: Id of that event. When given, a row the same event
                already updated is left alone.
            subscription_id: When given, the row must belong to this
                processor subscription.

        Returns:
            (outcome, updated record). The record is None unless UPDATED.
        """
        user_id = self.get_user_id_for_customer(customer_id)
        if not user_id:
            return UpdateOutcome.NOT_FOUND, None

        fields = {**changes, "modified_at": now_iso()}
        if event_created:
            fields["last_event_at"] = int(event_created)
        if event_id:
            fields["last_event_id"] = event_id
        expression, names, values = build_update(fields)

        names["#cid"] = "customer_id"
        values[":cid"] = customer_id
        conditions = ["attribute_exists(pk)", "#cid = :cid"]
        if event_created:
            conditions.append(EVENT_ORDER_CONDITION)
            values[":event_created"] = int(event_created)
        if event_id:
            conditions.append(EVENT_ONCE_CONDITION)
            values[":event_id"] = event_id
        if subscription_id:
            names["#sid"] = "subscription_id"
            values[":sid"] = subscription_id
            conditions.append("#sid = :sid")

        try:
            response = execute(
                "update_subscription",
                self.table.update_item,
                Key=_record_key(user_id),
                UpdateExpression=expression,
                ConditionExpression=" AND ".join(conditions),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if error_code(e) != CONDITION_FAILED:
                raise
            return self._classify_rejected_update(user_id, customer_id, event_created, event_id, subscription_id), None

        return UpdateOutcome.UPDATED, SubscriptionRecord.from_item(response["Attributes"])

    def _classify_rejected_update(
        self,
        user_id: str,
        customer_id: str,
        event_created: Optional[int],
        event_id: Optional[str],
        subscription_id: Optional[str],
    ) -> UpdateOutcome:
        current = self.get_by_user_id(user_id)
        if current is None or current.customer_id != customer_id:
            logger.info(f"Subscription row for customer {customer_id} vanished before update")
            return UpdateOutcome.NOT_FOUND
        if event_id and current.last_event_id == event_id:
            logger.info(f"Event {event_id} was already applied to the row of customer {customer_id}")
            return UpdateOutcome.DUPLICATE
        if subscription_id and current.subscription_id != subscription_id:
            logger.info(
                f"Row of customer {customer_id} belongs to subscription {current.subscription_id}, "
                f"not {subscription_id}"
            )
            return UpdateOutcome.SUBSCRIPTION_MISMATCH
        logger.info(
            f"Skipping stale update for customer {customer_id}: "
            f"event_created={event_created}, last_event_at={current.last_event_at}"
        )
        return UpdateOutcome.STALE

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _put_guard(self, customer_id: str, user_id: str) -> dict:
        return {
            "Put": {
                "TableName": self.table_name,
                "Item": serialize({**_customer_key(customer_id), "user_id": user_id, "created_at": now_iso()}),
                "ConditionExpression": "attribute_not_exists(pk)",
            }
        }

    def _transact(self, operation: str, transact_items: list[dict], user_id: str) -> None:
        try:
            execute(
                operation,
                self._client.transact_write_items,
                TransactItems=transact_items,
            )
        except ClientError as e:
            if error_code(e) in (TRANSACTION_CANCELED, CONDITION_FAILED):
                logger.warning(f"{operation} for user {user_id} lost a conditional check: {e}")
                raise ConflictError(
                    "Subscription was modified concurrently",
                    details={"operation": operation},
                ) from e
            raise

