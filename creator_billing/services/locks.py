from __future__ import annotations

import logging
import secrets
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Protocol, Tuple

from boto3.dynamodb.conditions import Attr

from creator_billing.core.ddb import is_conditional_failure, with_ttl
from creator_billing.core.settings import S
from creator_billing.core.tables import T
from creator_billing.core.time import now_ms

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"


class LockService(Protocol):
    def acquire(self, key: str, ttl_ms: int) -> Optional[str]:
        """Non-blocking. Returns an ownership token, or None if held/unavailable."""

    def release(self, key: str, token: str) -> None:
        """Release only if token still owns the key; otherwise a no-op."""


def _new_token() -> str:
    return f"{now_ms()}_{secrets.token_hex(12)}"


class InMemoryLockService:
    """Per-process lock table. Use for tests and single-worker deployments."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._mutex = threading.Lock()
        self._held: Dict[str, Tuple[str, float]] = {}

    def acquire(self, key: str, ttl_ms: int) -> Optional[str]:
        now = self._clock()
        with self._mutex:
            cur = self._held.get(key)
            if cur and cur[1] > now:
                return None
            token = _new_token()
            self._held[key] = (token, now + ttl_ms / 1000.0)
            return token

    def release(self, key: str, token: str) -> None:
        with self._mutex:
            cur = self._held.get(key)
            if cur and cur[0] == token:
                self._held.pop(key, None)

    def is_locked(self, key: str) -> bool:
        with self._mutex:
            cur = self._held.get(key)
            return bool(cur and cur[1] > self._clock())


class DynamoLockService:
    """Lock rows in DynamoDB written with conditional puts.

    A row is acquirable when it does not exist or its expiry has passed. The
    TTL attribute only garbage-collects abandoned rows; expiry is enforced by
    the condition, not by DynamoDB's (lazy) TTL sweeper.
    """

    def __init__(self, table: Any = None) -> None:
        self._table = table

    @property
    def table(self) -> Any:
        return self._table if self._table is not None else T.locks

    def acquire(self, key: str, ttl_ms: int) -> Optional[str]:
        token = _new_token()
        now = now_ms()
        expires = now + int(ttl_ms)
        item = with_ttl(
            {"lock_key": LOCK_PREFIX + key, "owner_token": token, "expires_at_ms": expires, "acquired_at_ms": now},
            ttl_epoch=expires // 1000 + 3600,
        )
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression=Attr("lock_key").not_exists() | Attr("expires_at_ms").lt(now),
            )
            return token
        except Exception as exc:
            if is_conditional_failure(exc):
                return None
            # Fail closed: skipping work beats double-processing.
            logger.error("Lock store unavailable, not acquiring %s: %s", key, exc)
            return None

    def release(self, key: str, token: str) -> None:
        try:
            self.table.delete_item(
                Key={"lock_key": LOCK_PREFIX + key},
                ConditionExpression=Attr("owner_token").eq(token),
            )
        except Exception as exc:
            if is_conditional_failure(exc):
                logger.info("Lock %s no longer owned by this worker; release skipped", key)
                return
            # The row will expire on its own.
            logger.warning("Lock release failed for %s: %s", key, exc)


_DEFAULT: Optional[LockService] = None


def get_lock_service() -> LockService:
    global _DEFAULT
    if _DEFAULT is None:
        _DEFAULT = InMemoryLockService() if S.lock_backend == "memory" else DynamoLockService()
    return _DEFAULT


def set_lock_service(service: Optional[LockService]) -> None:
    global _DEFAULT
    _DEFAULT = service


@contextmanager
def held_lock(locks: LockService, key: str, ttl_ms: int) -> Iterator[Optional[str]]:
    """Yield the ownership token (or None when not acquired); always release."""
    token = locks.acquire(key, ttl_ms)
    try:
        yield token
    finally:
        if token:
            locks.release(key, token)


def acquire_with_retry(
    locks: LockService,
    key: str,
    ttl_ms: int,
    attempts: int = 3,
    delay_s: float = 0.1,
) -> Optional[str]:
    for i in range(attempts + 1):
        token = locks.acquire(key, ttl_ms)
        if token:
            return token
        if i < attempts:
            time.sleep(delay_s)
    return None


# Lock keys follow "<domain>:<qualifier>:<id...>". Every path that can charge a
# subscription (jobs and webhooks) must use subscription_billing_lock_key.

def subscription_billing_lock_key(subscription_id: str) -> str:
    return f"billing:subscription:{subscription_id}"


def reminder_schedule_lock_key(entity_type: str, entity_id: str, reminder_type: str) -> str:
    return f"reminder:schedule:{entity_type}:{entity_id}:{reminder_type}"


def reminder_delivery_lock_key(reminder_id: str) -> str:
    return f"reminder:deliver:{reminder_id}"
