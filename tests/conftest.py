from __future__ import annotations

import copy
import re
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from creator_billing.core.settings import S
from creator_billing.core.tables import T
from creator_billing.services import locks as locks_service
from creator_billing.services.paystack import PaystackClient


def _conditional_failure(op: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        op,
    )


def evaluate(cond: Any, item: Dict[str, Any]) -> bool:
    """Evaluate a boto3 Attr/Key condition against a plain dict."""
    expr = cond.get_expression()
    op = expr["operator"]
    vals = expr["values"]
    if op == "AND":
        return all(evaluate(v, item) for v in vals)
    if op == "OR":
        return any(evaluate(v, item) for v in vals)
    if op == "NOT":
        return not evaluate(vals[0], item)

    name = vals[0].name
    present = name in item
    cur = item.get(name)
    if op == "attribute_exists":
        return present
    if op == "attribute_not_exists":
        return not present
    if op == "<>":
        return not present or cur != vals[1]
    if not present:
        return False
    if op == "=":
        return cur == vals[1]
    if op == "<":
        return cur < vals[1]
    if op == "<=":
        return cur <= vals[1]
    if op == ">":
        return cur > vals[1]
    if op == ">=":
        return cur >= vals[1]
    if op == "BETWEEN":
        return vals[1] <= cur <= vals[2]
    if op == "begins_with":
        return str(cur).startswith(vals[1])
    if op == "IN":
        return cur in vals[1]
    raise NotImplementedError(op)


def _split_top_level(expr: str, sep: str) -> List[str]:
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    for char in expr:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == sep and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    if current:
        parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


_IF_NOT_EXISTS = re.compile(r"^if_not_exists\((.+?),(.+)\)$")


class FakeTable:
    """In-memory stand-in for a boto3 DynamoDB Table resource."""

    def __init__(self, hash_key: str, range_key: Optional[str] = None, indexes: Optional[Dict[str, Tuple[str, Optional[str]]]] = None) -> None:
        self.hash_key = hash_key
        self.range_key = range_key
        self.indexes = indexes or {}
        self.items: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        self.fail_next: Dict[str, Exception] = {}

    # helpers

    @property
    def key_attrs(self) -> Tuple[str, ...]:
        return (self.hash_key,) + ((self.range_key,) if self.range_key else ())

    def _pk(self, key: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(key[k] for k in self.key_attrs)

    def _maybe_fail(self, op: str) -> None:
        exc = self.fail_next.pop(op, None)
        if exc is not None:
            raise exc

    def _check(self, cond: Any, current: Optional[Dict[str, Any]], op: str) -> None:
        if cond is None:
            return
        if isinstance(cond, str):
            raise NotImplementedError("string condition expressions are not supported by FakeTable")
        if not evaluate(cond, current or {}):
            raise _conditional_failure(op)

    def seed(self, *items: Dict[str, Any]) -> None:
        for it in items:
            self.items[self._pk(it)] = copy.deepcopy(it)

    def all(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(it) for it in self.items.values()]

    # Table API

    def get_item(self, *, Key: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        self._maybe_fail("get_item")
        item = self.items.get(self._pk(Key))
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, *, Item: Dict[str, Any], ConditionExpression: Any = None, **_: Any) -> Dict[str, Any]:
        self._maybe_fail("put_item")
        pk = self._pk(Item)
        self._check(ConditionExpression, self.items.get(pk), "PutItem")
        self.items[pk] = copy.deepcopy(Item)
        return {}

    def delete_item(self, *, Key: Dict[str, Any], ConditionExpression: Any = None, **_: Any) -> Dict[str, Any]:
        self._maybe_fail("delete_item")
        pk = self._pk(Key)
        self._check(ConditionExpression, self.items.get(pk), "DeleteItem")
        self.items.pop(pk, None)
        return {}

    def update_item(
        self,
        *,
        Key: Dict[str, Any],
        UpdateExpression: str,
        ConditionExpression: Any = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._maybe_fail("update_item")
        pk = self._pk(Key)
        current = self.items.get(pk)
        self._check(ConditionExpression, current, "UpdateItem")

        names = ExpressionAttributeNames or {}
        values = ExpressionAttributeValues or {}
        item = copy.deepcopy(current) if current else dict(Key)

        def operand(token: str) -> Any:
            token = token.strip()
            if token.startswith(":"):
                return values[token]
            m = _IF_NOT_EXISTS.match(token)
            if m:
                attr = names.get(m.group(1).strip(), m.group(1).strip())
                return item[attr] if attr in item else operand(m.group(2))
            return item.get(names.get(token, token))

        expr = UpdateExpression.strip()
        if not expr.upper().startswith("SET"):
            raise NotImplementedError(expr)
        for assignment in _split_top_level(expr[3:], ","):
            left, right = assignment.split("=", 1)
            attr = names.get(left.strip(), left.strip())
            terms = _split_top_level(right, "+")
            total = operand(terms[0])
            for term in terms[1:]:
                total = total + operand(term)
            item[attr] = total

        self.items[pk] = item
        return {}

    def query(
        self,
        *,
        KeyConditionExpression: Any,
        IndexName: Optional[str] = None,
        FilterExpression: Any = None,
        ScanIndexForward: bool = True,
        Limit: Optional[int] = None,
        ExclusiveStartKey: Optional[Dict[str, Any]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._maybe_fail("query")
        if IndexName:
            hash_attr, range_attr = self.indexes[IndexName]
        else:
            hash_attr, range_attr = self.hash_key, self.range_key

        def order(it: Dict[str, Any]) -> Tuple[Any, ...]:
            return ((it.get(range_attr) if range_attr else 0),) + tuple(str(it.get(k)) for k in self.key_attrs)

        rows = [
            it for it in self.items.values()
            if hash_attr in it and (range_attr is None or range_attr in it) and evaluate(KeyConditionExpression, it)
        ]
        rows.sort(key=order, reverse=not ScanIndexForward)
        if ExclusiveStartKey:
            start = order(ExclusiveStartKey)
            rows = [it for it in rows if (order(it) > start if ScanIndexForward else order(it) < start)]

        last_key = None
        if Limit is not None and len(rows) > Limit:
            rows = rows[:Limit]
            tail = rows[-1]
            last_key = {k: tail[k] for k in {hash_attr, *(a for a in (range_attr,) if a), *self.key_attrs}}
        if FilterExpression is not None:
            rows = [it for it in rows if evaluate(FilterExpression, it)]

        resp: Dict[str, Any] = {"Items": [copy.deepcopy(it) for it in rows], "Count": len(rows)}
        if last_key:
            resp["LastEvaluatedKey"] = last_key
        return resp


def build_tables() -> Dict[str, FakeTable]:
    return {
        "subscriptions": FakeTable(
            "subscription_id",
            indexes={
                S.subscriptions_due_index: ("status", "current_period_end"),
                S.subscriptions_creator_index: ("creator_id", None),
            },
        ),
        "payments": FakeTable(
            "payment_id",
            indexes={
                S.payments_subscription_index: ("subscription_id", "created_at"),
                S.payments_status_index: ("status", "created_at"),
            },
        ),
        "reminders": FakeTable(
            "reminder_id",
            indexes={
                S.reminders_due_index: ("status", "scheduled_for"),
                S.reminders_entity_index: ("entity_key", None),
            },
        ),
        "locks": FakeTable("lock_key"),
        "profiles": FakeTable("user_id"),
        "users": FakeTable("user_id"),
        "requests": FakeTable("request_id"),
        "payroll": FakeTable("period_id"),
        "activity": FakeTable("user_id", "activity_id"),
        "push_devices": FakeTable("user_id", "token"),
    }


@pytest.fixture(autouse=True)
def fake_tables():
    """Every test runs against fresh in-memory tables; nothing reaches AWS."""
    originals = {name: getattr(T, name) for name in build_tables()}
    fakes = build_tables()
    for name, table in fakes.items():
        object.__setattr__(T, name, table)
    try:
        yield SimpleNamespace(**fakes)
    finally:
        for name, table in originals.items():
            object.__setattr__(T, name, table)


@pytest.fixture
def settings():
    """Override frozen settings for one test: settings(name=value, ...)."""
    saved: Dict[str, Any] = {}

    def apply(**overrides: Any) -> None:
        for name, value in overrides.items():
            saved.setdefault(name, getattr(S, name))
            object.__setattr__(S, name, value)

    try:
        yield apply
    finally:
        for name, value in saved.items():
            object.__setattr__(S, name, value)


@pytest.fixture
def locks():
    service = locks_service.InMemoryLockService()
    locks_service.set_lock_service(service)
    try:
        yield service
    finally:
        locks_service.set_lock_service(None)


@pytest.fixture
def processor():
    client = Mock(spec=PaystackClient)
    client.charge_authorization.side_effect = lambda **kw: {
        "id": 9001,
        "status": "success",
        "reference": kw["reference"],
        "amount": kw["amount_cents"],
        "authorization": {"authorization_code": "AUTH_same"},
    }
    client.initiate_transfer.side_effect = lambda **kw: {
        "transfer_code": "TRF_1",
        "reference": kw["reference"],
        "status": "pending",
    }
    return client
