from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import boto3
from botocore.exceptions import ClientError

from core.enums import PostbackOutcome
from core.models import PostbackRecord, Session, utc_now
from survey.store_interface import SessionNotFoundError

DEFAULT_TABLE_PREFIX = "line-survey"
MAX_WRITE_ATTEMPTS = 3


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _is_conditional_failure(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code == "ConditionalCheckFailedException"


def _resource(dynamodb_resource: Any | None, region_name: str | None) -> Any:
    return dynamodb_resource or boto3.resource("dynamodb", region_name=region_name)


class DynamoSessionStore:
    """Sessions shared across instances, one item per user.

    The in-flight guard is a conditional update, so two instances cannot both
    hold it. The guard is a lease: a holder that dies without clearing it
    blocks the user only until ``in_flight_until`` passes. Expired items are
    removed by the table's TTL on ``expires_at_epoch``; ``get_or_create``
    still checks expiry itself because TTL deletion lags.
    """

    def __init__(
        self,
        *,
        root_step_id: str = "welcome",
        session_ttl_minutes: int = 30,
        in_flight_lease_sec: float = 30,
        region_name: str | None = None,
        table_prefix: str = DEFAULT_TABLE_PREFIX,
        table_name: str | None = None,
        dynamodb_resource: Any | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.root_step_id = root_step_id
        self.session_ttl = timedelta(minutes=max(1, int(session_ttl_minutes)))
        self.in_flight_lease = timedelta(seconds=max(1.0, float(in_flight_lease_sec)))
        self.clock = clock
        normalized_prefix = (table_prefix or DEFAULT_TABLE_PREFIX).strip()
        self._table = _resource(dynamodb_resource, region_name).Table(table_name or f"{normalized_prefix}-sessions")

    def get_or_create(self, user_id: str, now: datetime) -> Session:
        item = self._get_item(user_id)
        if item is not None:
            session = _session_from_item(item)
            if now - session.last_activity_at <= self.session_ttl:
                try:
                    self._table.update_item(
                        Key={"user_id": user_id},
                        UpdateExpression="SET last_activity_at = :now, expires_at_epoch = :expires",
                        ConditionExpression="attribute_exists(user_id)",
                        ExpressionAttributeValues={
                            ":now": _epoch_ms(now),
                            ":expires": self._expires_at_epoch(now),
                        },
                    )
                    session.last_activity_at = now
                    return session
                except ClientError as exc:
                    if not _is_conditional_failure(exc):
                        raise

        fresh = Session(
            user_id=user_id,
            current_step_id=self.root_step_id,
            created_at=now,
            last_activity_at=now,
        )
        self._table.put_item(
            Item={
                "user_id": user_id,
                "current_step_id": fresh.current_step_id,
                "answers": {},
                "in_flight": False,
                "created_at": _epoch_ms(now),
                "last_activity_at": _epoch_ms(now),
                "expires_at_epoch": self._expires_at_epoch(now),
            }
        )
        return fresh

    def get(self, user_id: str) -> Session | None:
        item = self._get_item(user_id)
        return _session_from_item(item) if item is not None else None

    def try_set_in_flight(self, user_id: str) -> bool:
        now = self.clock()
        try:
            self._table.update_item(
                Key={"user_id": user_id},
                UpdateExpression="SET in_flight = :true, in_flight_until = :until",
                ConditionExpression=(
                    "attribute_exists(user_id) AND "
                    "(attribute_not_exists(in_flight_until) OR in_flight_until < :now)"
                ),
                ExpressionAttributeValues={
                    ":true": True,
                    ":until": _epoch_ms(now + self.in_flight_lease),
                    ":now": _epoch_ms(now),
                },
            )
            return True
        except ClientError as exc:
            if not _is_conditional_failure(exc):
                raise
        if self._get_item(user_id) is None:
            raise SessionNotFoundError(user_id)
        return False

    def clear_in_flight(self, user_id: str) -> None:
        try:
            self._update(user_id, "SET in_flight = :false REMOVE in_flight_until", {":false": False})
        except SessionNotFoundError:
            return

    def record_answer(self, user_id: str, key: str, value: str) -> None:
        self._update(user_id, "SET answers.#key = :value", {":value": value}, names={"#key": key})

    def advance(self, user_id: str, next_step_id: str) -> None:
        self._update(user_id, "SET current_step_id = :step", {":step": next_step_id})

    def reset(self, user_id: str) -> None:
        self._update(
            user_id,
            "SET current_step_id = :step, answers = :answers",
            {":step": self.root_step_id, ":answers": {}},
        )

    def set_display_name(self, user_id: str, display_name: str) -> None:
        self._update(user_id, "SET display_name = :name", {":name": display_name})

    def delete(self, user_id: str) -> None:
        self._table.delete_item(Key={"user_id": user_id})

    def sweep(self, now: datetime) -> int:
        return 0

    def _get_item(self, user_id: str) -> dict[str, Any] | None:
        response = self._table.get_item(Key={"user_id": user_id}, ConsistentRead=True)
        item = response.get("Item")
        return item if isinstance(item, dict) else None

    def _update(
        self,
        user_id: str,
        expression: str,
        values: dict[str, Any],
        names: dict[str, str] | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {
            "Key": {"user_id": user_id},
            "UpdateExpression": expression,
            "ConditionExpression": "attribute_exists(user_id)",
            "ExpressionAttributeValues": values,
        }
        if names:
            kwargs["ExpressionAttributeNames"] = names
        try:
            self._table.update_item(**kwargs)
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise SessionNotFoundError(user_id) from exc
            raise

    def _expires_at_epoch(self, now: datetime) -> int:
        return int((now + self.session_ttl).timestamp())


class DynamoRateLimiter:
    def __init__(
        self,
        *,
        window_sec: float = 10,
        max_events: int = 3,
        region_name: str | None = None,
        table_prefix: str = DEFAULT_TABLE_PREFIX,
        table_name: str | None = None,
        dynamodb_resource: Any | None = None,
    ) -> None:
        self.window = timedelta(seconds=max(0.001, float(window_sec)))
        self.max_events = max(1, int(max_events))
        normalized_prefix = (table_prefix or DEFAULT_TABLE_PREFIX).strip()
        self._table = _resource(dynamodb_resource, region_name).Table(
            table_name or f"{normalized_prefix}-rate-limits"
        )

    def allow(self, user_id: str, now: datetime) -> bool:
        now_ms = _epoch_ms(now)
        for _ in range(MAX_WRITE_ATTEMPTS):
            try:
                response = self._table.update_item(
                    Key={"user_id": user_id},
                    UpdateExpression="SET #count = #count + :one",
                    ConditionExpression="attribute_exists(user_id) AND window_reset_at >= :now",
                    ExpressionAttributeNames={"#count": "count"},
                    ExpressionAttributeValues={":one": 1, ":now": now_ms},
                    ReturnValues="UPDATED_NEW",
                )
                count = int(response.get("Attributes", {}).get("count", 0))
                return count <= self.max_events
            except ClientError as exc:
                if not _is_conditional_failure(exc):
                    raise

            reset_at = now + self.window
            try:
                self._table.put_item(
                    Item={
                        "user_id": user_id,
                        "count": 1,
                        "window_reset_at": _epoch_ms(reset_at),
                        "expires_at_epoch": int(reset_at.timestamp()) + 60,
                    },
                    ConditionExpression="attribute_not_exists(user_id) OR window_reset_at < :now",
                    ExpressionAttributeValues={":now": now_ms},
                )
                return True
            except ClientError as exc:
                if not _is_conditional_failure(exc):
                    raise
        return False

    def sweep(self, now: datetime) -> int:
        return 0


class DynamoPostbackDeduplicator:
    """Per-user fingerprint history stored as one versioned item."""

    def __init__(
        self,
        *,
        postback_ttl_minutes: int = 30,
        max_records: int = 20,
        region_name: str | None = None,
        table_prefix: str = DEFAULT_TABLE_PREFIX,
        table_name: str | None = None,
        dynamodb_resource: Any | None = None,
    ) -> None:
        self.postback_ttl = timedelta(minutes=max(1, int(postback_ttl_minutes)))
        self.max_records = max(1, int(max_records))
        normalized_prefix = (table_prefix or DEFAULT_TABLE_PREFIX).strip()
        self._table = _resource(dynamodb_resource, region_name).Table(
            table_name or f"{normalized_prefix}-postbacks"
        )

    def check_and_record(
        self,
        user_id: str,
        fingerprint: str,
        current_step_id: str,
        now: datetime,
    ) -> PostbackOutcome:
        for _ in range(MAX_WRITE_ATTEMPTS):
            item = self._get_item(user_id)
            version = int(item.get("version", 0)) if item is not None else 0
            records = self._prune(item, now)
            if any(record.fingerprint == fingerprint for record in records):
                return PostbackOutcome.DUPLICATE
            records.append(PostbackRecord(fingerprint=fingerprint, seen_at=now, step_at_time=current_step_id))
            records.sort(key=lambda record: record.seen_at)
            records = records[-self.max_records :]
            try:
                self._table.put_item(
                    Item={
                        "user_id": user_id,
                        "version": version + 1,
                        "records": [
                            {
                                "fingerprint": record.fingerprint,
                                "seen_at": _epoch_ms(record.seen_at),
                                "step_at_time": record.step_at_time,
                            }
                            for record in records
                        ],
                        "expires_at_epoch": int((now + self.postback_ttl).timestamp()),
                    },
                    ConditionExpression="attribute_not_exists(user_id) OR version = :version",
                    ExpressionAttributeValues={":version": version},
                )
                return PostbackOutcome.ACCEPTED
            except ClientError as exc:
                if not _is_conditional_failure(exc):
                    raise
        raise RuntimeError(f"postback history write kept conflicting: user_id={user_id}")

    def records(self, user_id: str, now: datetime) -> list[PostbackRecord]:
        return self._prune(self._get_item(user_id), now)

    def forget(self, user_id: str) -> None:
        self._table.delete_item(Key={"user_id": user_id})

    def sweep(self, now: datetime) -> int:
        return 0

    def _get_item(self, user_id: str) -> dict[str, Any] | None:
        response = self._table.get_item(Key={"user_id": user_id}, ConsistentRead=True)
        item = response.get("Item")
        return item if isinstance(item, dict) else None

    def _prune(self, item: dict[str, Any] | None, now: datetime) -> list[PostbackRecord]:
        if item is None:
            return []
        cutoff = now - self.postback_ttl
        records = [
            PostbackRecord(
                fingerprint=str(row.get("fingerprint", "")),
                seen_at=_from_epoch_ms(row.get("seen_at", 0)),
                step_at_time=str(row.get("step_at_time", "")),
            )
            for row in item.get("records", [])
            if isinstance(row, dict)
        ]
        return [record for record in records if record.seen_at >= cutoff]


def _session_from_item(item: dict[str, Any]) -> Session:
    answers = item.get("answers", {})
    display_name = item.get("display_name")
    return Session(
        user_id=str(item.get("user_id", "")),
        current_step_id=str(item.get("current_step_id", "")),
        created_at=_from_epoch_ms(item.get("created_at", 0)),
        last_activity_at=_from_epoch_ms(item.get("last_activity_at", 0)),
        answers={str(k): str(v) for k, v in answers.items()} if isinstance(answers, dict) else {},
        display_name=str(display_name) if display_name else None,
        in_flight=bool(item.get("in_flight", False)),
    )
