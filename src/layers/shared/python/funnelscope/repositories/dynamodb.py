"""DynamoDB progress store.

One item per journey and per event, all under the funnel's partition:
    PK: FUNNEL#{namespace}
    SK: PROGRESS#{user_id}             active journey, versioned
        COMPLETED#{user_id}            finished journey
        EVENT#{timestamp}#{event_id}   event log entry, expires via ttl
"""

import json
import os
import time
from typing import Any

import boto3
import structlog
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from funnelscope.models.base import now_ms
from funnelscope.models.event import FunnelEvent
from funnelscope.models.progress import FunnelProgress
from funnelscope.repositories.base import FunnelSnapshot, ProgressStore
from funnelscope.utils.exceptions import StorageError, VersionConflictError

logger = structlog.get_logger()

PROGRESS_PREFIX = "PROGRESS#"
COMPLETED_PREFIX = "COMPLETED#"
EVENT_PREFIX = "EVENT#"

EVENT_TTL_SECONDS = 90 * 24 * 60 * 60


class DynamoDBProgressStore(ProgressStore):
    """Progress store for Lambda deployments sharing a single table."""

    def __init__(
        self,
        table_name: str | None = None,
        namespace: str = "default",
        event_ttl_seconds: int = EVENT_TTL_SECONDS,
    ):
        """Initialize store.

        Args:
            table_name: DynamoDB table name. Defaults to TABLE_NAME env var.
            namespace: Funnel namespace, allowing several funnels per table.
            event_ttl_seconds: Lifetime of event log items.
        """
        self.table_name = table_name or os.environ.get("TABLE_NAME", "funnelscope-dev")
        self.namespace = namespace
        self.event_ttl_seconds = event_ttl_seconds
        self._dynamodb = None
        self._table = None
        self._serializer = TypeSerializer()

    @property
    def dynamodb(self):
        """Get DynamoDB resource (lazy initialization)."""
        if self._dynamodb is None:
            self._dynamodb = boto3.resource("dynamodb")
        return self._dynamodb

    @property
    def table(self):
        """Get DynamoDB table (lazy initialization)."""
        if self._table is None:
            self._table = self.dynamodb.Table(self.table_name)
        return self._table

    @property
    def pk(self) -> str:
        return f"FUNNEL#{self.namespace}"

    def _key(self, sk: str) -> dict[str, str]:
        return {"PK": self.pk, "SK": sk}

    def _serialize(self, item: dict[str, Any]) -> dict[str, Any]:
        return {k: self._serializer.serialize(v) for k, v in item.items()}

    @staticmethod
    def _parse_progress(item: dict[str, Any]) -> FunnelProgress:
        try:
            progress = FunnelProgress.from_storage(json.loads(item["payload"]))
        except (KeyError, ValueError) as e:
            raise StorageError("Persisted funnel state is corrupt", key=item.get("SK"), original_error=str(e)) from e
        progress.version = int(item.get("version", progress.version))
        return progress

    def _progress_item(self, prefix: str, progress: FunnelProgress) -> dict[str, Any]:
        return {
            **self._key(f"{prefix}{progress.user_id}"),
            "payload": json.dumps(progress.to_storage()),
            "version": progress.version,
            "updated_at": now_ms(),
        }

    def _get(self, sk: str) -> dict[str, Any] | None:
        try:
            response = self.table.get_item(Key=self._key(sk), ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            logger.error("DynamoDB get_item failed", error=str(e), pk=self.pk, sk=sk)
            raise StorageError("Failed to read funnel state", key=sk, original_error=str(e)) from e
        return response.get("Item")

    def _query_prefix(self, prefix: str, limit: int | None = None, scan_forward: bool = True) -> list[dict[str, Any]]:
        """Query every item under a sort-key prefix, following pagination."""
        items: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": "PK = :pk AND begins_with(SK, :sk_prefix)",
            "ExpressionAttributeValues": {":pk": self.pk, ":sk_prefix": prefix},
            "ScanIndexForward": scan_forward,
        }

        try:
            while True:
                if limit is not None:
                    kwargs["Limit"] = limit - len(items)
                response = self.table.query(**kwargs)
                items.extend(response.get("Items", []))

                last_evaluated_key = response.get("LastEvaluatedKey")
                if not last_evaluated_key or (limit is not None and len(items) >= limit):
                    return items
                kwargs["ExclusiveStartKey"] = last_evaluated_key
        except (ClientError, BotoCoreError) as e:
            logger.error("DynamoDB query failed", error=str(e), pk=self.pk, sk_prefix=prefix)
            raise StorageError("Failed to read funnel state", key=prefix, original_error=str(e)) from e

    def _transact(self, items: list[dict[str, Any]], key: str) -> None:
        try:
            self.dynamodb.meta.client.transact_write_items(TransactItems=items)
        except ClientError as e:
            if e.response["Error"]["Code"] == "TransactionCanceledException":
                reasons = e.response.get("CancellationReasons", [])
                if any(r.get("Code") == "ConditionalCheckFailed" for r in reasons):
                    raise VersionConflictError(key=key) from e
            logger.error("DynamoDB transact_write_items failed", error=str(e), pk=self.pk, sk=key)
            raise StorageError("Failed to write funnel state", key=key, original_error=str(e)) from e
        except BotoCoreError as e:
            logger.error("DynamoDB transact_write_items failed", error=str(e), pk=self.pk, sk=key)
            raise StorageError("Failed to write funnel state", key=key, original_error=str(e)) from e

    def _version_condition(self, expected: int) -> dict[str, Any]:
        if expected == 0:
            return {"ConditionExpression": "attribute_not_exists(SK)"}
        return {
            "ConditionExpression": "version = :expected",
            "ExpressionAttributeValues": {":expected": self._serializer.serialize(expected)},
        }

    def get_progress(self, user_id: str) -> FunnelProgress | None:
        item = self._get(f"{PROGRESS_PREFIX}{user_id}")
        return self._parse_progress(item) if item else None

    def get_completed(self, user_id: str) -> FunnelProgress | None:
        item = self._get(f"{COMPLETED_PREFIX}{user_id}")
        return self._parse_progress(item) if item else None

    def save_progress(self, progress: FunnelProgress) -> None:
        sk = f"{PROGRESS_PREFIX}{progress.user_id}"
        expected = progress.version
        progress.version = expected + 1

        if expected > 0:
            try:
                self.table.put_item(
                    Item=self._progress_item(PROGRESS_PREFIX, progress),
                    ConditionExpression="version = :expected",
                    ExpressionAttributeValues={":expected": expected},
                )
            except ClientError as e:
                progress.version = expected
                if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                    raise VersionConflictError(key=sk) from e
                # ValidationException here usually means the 400 KB item limit
                logger.error("DynamoDB put_item failed", error=str(e), pk=self.pk, sk=sk)
                raise StorageError("Failed to write funnel state", key=sk, original_error=str(e)) from e
            except BotoCoreError as e:
                progress.version = expected
                logger.error("DynamoDB put_item failed", error=str(e), pk=self.pk, sk=sk)
                raise StorageError("Failed to write funnel state", key=sk, original_error=str(e)) from e
            return

        # First write: also make sure nobody finished this journey meanwhile
        try:
            self._transact(
                [
                    {
                        "ConditionCheck": {
                            "TableName": self.table_name,
                            "Key": self._serialize(self._key(f"{COMPLETED_PREFIX}{progress.user_id}")),
                            "ConditionExpression": "attribute_not_exists(SK)",
                        }
                    },
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": self._serialize(self._progress_item(PROGRESS_PREFIX, progress)),
                            "ConditionExpression": "attribute_not_exists(SK)",
                        }
                    },
                ],
                key=sk,
            )
        except StorageError:
            progress.version = expected
            raise

    def finish_progress(self, progress: FunnelProgress, max_completed: int | None = None) -> None:
        # Completed history is bounded at read time; finished items stay for get_completed()
        sk = f"{PROGRESS_PREFIX}{progress.user_id}"
        expected = progress.version
        progress.version = expected + 1

        completed_item = self._progress_item(COMPLETED_PREFIX, progress)
        completed_item["finished_at"] = completed_item["updated_at"]

        try:
            self._transact(
                [
                    {
                        "Delete": {
                            "TableName": self.table_name,
                            "Key": self._serialize(self._key(sk)),
                            **self._version_condition(expected),
                        }
                    },
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": self._serialize(completed_item),
                            "ConditionExpression": "attribute_not_exists(SK)",
                        }
                    },
                ],
                key=sk,
            )
        except StorageError:
            progress.version = expected
            raise

    def append_event(self, event: FunnelEvent, max_events: int | None = None) -> None:
        # Old events expire through the table's ttl attribute instead of max_events
        sk = f"{EVENT_PREFIX}{event.timestamp:013d}#{event.event_id}"
        try:
            self.table.put_item(
                Item={
                    **self._key(sk),
                    "payload": json.dumps(event.to_storage()),
                    "ttl": int(time.time()) + self.event_ttl_seconds,
                }
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("DynamoDB put_item failed", error=str(e), pk=self.pk, sk=sk)
            raise StorageError("Failed to write funnel state", key=sk, original_error=str(e)) from e

    def load(self, max_events: int | None = None, max_completed: int | None = None) -> FunnelSnapshot:
        active = [self._parse_progress(item) for item in self._query_prefix(PROGRESS_PREFIX)]

        completed_items = sorted(self._query_prefix(COMPLETED_PREFIX), key=lambda i: i.get("finished_at", 0))
        if max_completed is not None:
            completed_items = completed_items[-max_completed:] if max_completed > 0 else []
        completed = [self._parse_progress(item) for item in completed_items]

        if max_events == 0:
            event_items = []
        else:
            # Newest first, then back into chronological order
            event_items = self._query_prefix(EVENT_PREFIX, limit=max_events, scan_forward=False)[::-1]
        try:
            events = [FunnelEvent.from_storage(json.loads(item["payload"])) for item in event_items]
        except (KeyError, ValueError) as e:
            raise StorageError("Persisted funnel state is corrupt", key=EVENT_PREFIX, original_error=str(e)) from e

        finished = {p.user_id for p in completed}
        return FunnelSnapshot(
            progress={p.user_id: p for p in active if p.user_id not in finished},
            events=events,
            completed=completed,
        )

    def clear(self) -> None:
        keys = [
            self._key(item["SK"])
            for prefix in (PROGRESS_PREFIX, COMPLETED_PREFIX, EVENT_PREFIX)
            for item in self._query_prefix(prefix)
        ]
        try:
            with self.table.batch_writer() as batch:
                for key in keys:
                    batch.delete_item(Key=key)
        except (ClientError, BotoCoreError) as e:
            logger.error("DynamoDB batch delete failed", error=str(e), pk=self.pk)
            raise StorageError("Failed to delete funnel state", original_error=str(e)) from e

        logger.info("Funnel state cleared", pk=self.pk, items=len(keys))
