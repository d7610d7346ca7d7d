"""cascade_lock.py — Per-project serialization of workflow cascades.

Two cascades for the same project could otherwise evaluate the same snapshot
and both apply the same actions. The DynamoDB lock is a row per project with a
``lock_expires_epoch`` lease; a crashed holder is released by expiry.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterator, Optional

from botocore.exceptions import ClientError

from docflow_shared import config
from docflow_shared.aws_clients import _get_ddb
from docflow_shared.serialization import _now_z, _serialize, _unix_now

logger = logging.getLogger(__name__)


class DynamoCascadeLock:
    def __init__(
        self,
        table_name: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        wait_seconds: Optional[int] = None,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.table_name = table_name or config.CASCADE_LOCK_TABLE
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.CASCADE_LOCK_TTL_SECONDS
        self.wait_seconds = wait_seconds if wait_seconds is not None else config.CASCADE_LOCK_WAIT_SECONDS
        self._client = client
        self._sleep = sleep
        self._clock = clock

    @property
    def ddb(self):
        if self._client is None:
            self._client = _get_ddb()
        return self._client

    def _try_acquire(self, project_id: str, owner: str) -> bool:
        now_epoch = _unix_now()
        try:
            self.ddb.update_item(
                TableName=self.table_name,
                Key={"project_id": _serialize(project_id)},
                UpdateExpression="SET lock_owner = :owner, lock_expires_epoch = :lock, locked_at = :ts",
                ConditionExpression="attribute_not_exists(lock_expires_epoch) OR lock_expires_epoch <= :now",
                ExpressionAttributeValues={
                    ":owner": _serialize(owner),
                    ":lock": _serialize(now_epoch + self.ttl_seconds),
                    ":ts": _serialize(_now_z()),
                    ":now": _serialize(now_epoch),
                },
            )
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return False
            raise

    def acquire(self, project_id: str) -> Optional[str]:
        """Return an owner token, or None when the wait budget ran out."""
        owner = uuid.uuid4().hex
        deadline = self._clock() + self.wait_seconds
        delay = 0.1
        while True:
            if self._try_acquire(project_id, owner):
                return owner
            if self._clock() >= deadline:
                logger.warning("[WARNING] cascade lock for project %s still held after %ss", project_id, self.wait_seconds)
                return None
            self._sleep(delay)
            delay = min(delay * 2, 1.0)

    def release(self, project_id: str, owner: str) -> None:
        try:
            self.ddb.update_item(
                TableName=self.table_name,
                Key={"project_id": _serialize(project_id)},
                UpdateExpression="REMOVE lock_owner, lock_expires_epoch",
                ConditionExpression="lock_owner = :owner",
                ExpressionAttributeValues={":owner": _serialize(owner)},
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                # Lease expired and another cascade holds the lock now.
                logger.warning("[WARNING] cascade lock for project %s was no longer ours", project_id)
                return
            raise

    @contextlib.contextmanager
    def hold(self, project_id: str) -> Iterator[bool]:
        owner = self.acquire(project_id)
        try:
            yield owner is not None
        finally:
            if owner is not None:
                self.release(project_id, owner)


class LocalCascadeLock:
    """In-process lock per project, for the memory store backend."""

    def __init__(self, wait_seconds: Optional[float] = None):
        self.wait_seconds = wait_seconds if wait_seconds is not None else config.CASCADE_LOCK_WAIT_SECONDS
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, project_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(project_id, threading.Lock())

    @contextlib.contextmanager
    def hold(self, project_id: str) -> Iterator[bool]:
        lock = self._lock_for(project_id)
        acquired = lock.acquire(timeout=self.wait_seconds) if self.wait_seconds > 0 else lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()


_local_lock: Optional[LocalCascadeLock] = None


def get_cascade_lock():
    global _local_lock
    if config.STORE_BACKEND == "memory":
        if _local_lock is None:
            _local_lock = LocalCascadeLock()
        return _local_lock
    return DynamoCascadeLock()
