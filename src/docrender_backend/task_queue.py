"""
Redis-backed task queue with deterministic task identities.

Each task lives in a hash keyed by its id; waiting tasks are listed in a
per-queue Redis list and running tasks in a per-queue sorted set scored by
start time. Enqueueing an id that is already present is rejected, which is
what lets the pipeline derive ids from the job id and rely on the queue to
drop duplicate work. Delivery is at-least-once: a task that stays active
past the stall timeout is handed out again.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import redis
from omegaconf import DictConfig

from .errors import StorageFailure, TaskAlreadyExists

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedTask:
    queue: str
    id: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    state: TaskState = TaskState.WAITING
    attempts: int = 1
    attempts_made: int = 0
    failed_reason: Optional[str] = None


def render_task_id(job_id: str, page_index: int) -> str:
    return f"{job_id}-page-{page_index}"


def merge_task_id(job_id: str) -> str:
    return f"{job_id}-merge"


class TaskQueue:
    """
    Named queues on one Redis connection.

    Thread-safe to the extent redis-py's connection pool is; the consumer
    calls these methods from worker threads.
    """

    def __init__(self, client: redis.Redis, key_prefix: str = "docrender") -> None:
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_settings(cls, settings: DictConfig) -> "TaskQueue":
        client = redis.Redis.from_url(
            settings.redis.url,
            decode_responses=True,
            socket_keepalive=True,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )
        return cls(client, key_prefix=settings.redis.key_prefix)

    def _task_key(self, queue: str, task_id: str) -> str:
        return f"{self.key_prefix}:{queue}:task:{task_id}"

    def _waiting_key(self, queue: str) -> str:
        return f"{self.key_prefix}:{queue}:waiting"

    def _active_key(self, queue: str) -> str:
        return f"{self.key_prefix}:{queue}:active"

    def enqueue(
        self,
        queue: str,
        name: str,
        payload: Dict[str, Any],
        task_id: str,
        attempts: int = 1,
        remove_on_complete: bool = True,
        remove_on_fail: bool = True,
    ) -> QueuedTask:
        """
        Add a task under a caller-chosen identity.

        Args:
            queue: Queue name
            name: Task kind, e.g. "renderPage"
            payload: JSON-serializable task data
            task_id: Unique identity within the queue
            attempts: Total deliveries allowed before the task is failed
            remove_on_complete: Delete the task record once completed
            remove_on_fail: Delete the task record once it fails for good

        Returns:
            The queued task

        Raises:
            TaskAlreadyExists: If a task with this id is already present
        """
        key = self._task_key(queue, task_id)
        fields = {
            "id": task_id,
            "name": name,
            "payload": json.dumps(payload),
            "state": TaskState.WAITING.value,
            "attempts": max(1, int(attempts)),
            "attempts_made": 0,
            "remove_on_complete": int(remove_on_complete),
            "remove_on_fail": int(remove_on_fail),
            "enqueued_at": time.time(),
        }
        try:
            # The record and its waiting entry are written in one transaction,
            # so a failed enqueue leaves nothing behind to block the id.
            with self.client.pipeline() as pipe:
                pipe.watch(key)
                if pipe.exists(key):
                    pipe.unwatch()
                    raise TaskAlreadyExists(queue, task_id)
                pipe.multi()
                pipe.hset(key, mapping=fields)
                pipe.lpush(self._waiting_key(queue), task_id)
                pipe.execute()
        except redis.WatchError as exc:
            raise TaskAlreadyExists(queue, task_id) from exc
        except redis.RedisError as exc:
            raise StorageFailure(f"Enqueue of {task_id} on {queue} failed: {exc}") from exc

        logger.debug(f"Enqueued {name} task {task_id} on {queue}")
        return QueuedTask(queue=queue, id=task_id, name=name, payload=payload, attempts=max(1, int(attempts)))

    def get_task(self, queue: str, task_id: str) -> Optional[QueuedTask]:
        try:
            data = self.client.hgetall(self._task_key(queue, task_id))
        except redis.RedisError as exc:
            raise StorageFailure(f"Lookup of {task_id} on {queue} failed: {exc}") from exc
        if not data:
            return None
        return self._to_task(queue, task_id, data)

    def get_state(self, task: QueuedTask) -> Optional[TaskState]:
        """Current state of a task, or None once its record is gone."""
        try:
            state = self.client.hget(self._task_key(task.queue, task.id), "state")
        except redis.RedisError as exc:
            raise StorageFailure(f"State lookup of {task.id} failed: {exc}") from exc
        if state is None:
            return None
        return TaskState(state)

    def retry(self, task: QueuedTask) -> bool:
        """
        Put a failed task back on its queue, keeping its identity.

        Returns:
            True if the task was failed and is now waiting again
        """
        key = self._task_key(task.queue, task.id)
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(key)
                if pipe.hget(key, "state") != TaskState.FAILED.value:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.hset(key, mapping={"state": TaskState.WAITING.value, "attempts_made": 0})
                pipe.hdel(key, "failed_reason")
                pipe.lpush(self._waiting_key(task.queue), task.id)
                pipe.execute()
        except redis.WatchError:
            return False
        except redis.RedisError as exc:
            raise StorageFailure(f"Retry of {task.id} failed: {exc}") from exc

        logger.info(f"Retrying failed task {task.id} on {task.queue}")
        return True

    def dequeue(self, queue: str) -> Optional[QueuedTask]:
        """
        Take the oldest waiting task and mark it active.

        Returns:
            The task, or None when the queue is empty
        """
        waiting_key = self._waiting_key(queue)
        try:
            while True:
                with self.client.pipeline() as pipe:
                    try:
                        pipe.watch(waiting_key)
                        task_id = pipe.lindex(waiting_key, -1)
                        if task_id is None:
                            return None
                        key = self._task_key(queue, task_id)
                        pipe.watch(key)
                        data = pipe.hgetall(key)
                        # Stale list entries (removed or already running tasks) are dropped.
                        runnable = bool(data) and data.get("state") == TaskState.WAITING.value
                        pipe.multi()
                        pipe.rpop(waiting_key)
                        if runnable:
                            pipe.hset(key, "state", TaskState.ACTIVE.value)
                            pipe.zadd(self._active_key(queue), {task_id: time.time()})
                        pipe.execute()
                    except redis.WatchError:
                        continue
                if runnable:
                    data["state"] = TaskState.ACTIVE.value
                    return self._to_task(queue, task_id, data)
        except redis.RedisError as exc:
            raise StorageFailure(f"Dequeue from {queue} failed: {exc}") from exc

    def complete(self, task: QueuedTask) -> None:
        key = self._task_key(task.queue, task.id)
        try:
            remove = self.client.hget(key, "remove_on_complete") == "1"
            pipe = self.client.pipeline(transaction=True)
            pipe.zrem(self._active_key(task.queue), task.id)
            if remove:
                pipe.delete(key)
            else:
                pipe.hset(key, "state", TaskState.COMPLETED.value)
            pipe.execute()
        except redis.RedisError as exc:
            raise StorageFailure(f"Completing {task.id} failed: {exc}") from exc

    def fail(self, task: QueuedTask, reason: str) -> Optional[TaskState]:
        """
        Record a failed delivery.

        The task goes back to waiting while attempts remain; otherwise it is
        marked failed (or deleted when remove_on_fail is set).

        Returns:
            The task's new state, or None if its record was removed
        """
        try:
            _, state = self._record_failure(task, reason)
        except redis.RedisError as exc:
            raise StorageFailure(f"Failing {task.id} failed: {exc}") from exc
        return state

    def _record_failure(
        self, task: QueuedTask, reason: str, stalled_before: Optional[float] = None
    ) -> Tuple[bool, Optional[TaskState]]:
        # With stalled_before set, the failure only applies to a task that is
        # still active and whose active entry is older than that time.
        key = self._task_key(task.queue, task.id)
        active_key = self._active_key(task.queue)
        while True:
            with self.client.pipeline() as pipe:
                try:
                    if stalled_before is None:
                        pipe.watch(key)
                    else:
                        pipe.watch(key, active_key)
                    data = pipe.hgetall(key)
                    if stalled_before is not None:
                        started = pipe.zscore(active_key, task.id)
                        if started is None or started > stalled_before:
                            pipe.unwatch()
                            return False, None
                        if data.get("state") != TaskState.ACTIVE.value:
                            pipe.multi()
                            pipe.zrem(active_key, task.id)
                            pipe.execute()
                            return False, None

                    pipe.multi()
                    pipe.zrem(active_key, task.id)
                    if not data:
                        pipe.execute()
                        return True, None

                    attempts_made = int(data.get("attempts_made", 0)) + 1
                    attempts = int(data.get("attempts", 1))
                    if attempts_made < attempts:
                        pipe.hset(key, mapping={
                            "state": TaskState.WAITING.value,
                            "attempts_made": attempts_made,
                            "failed_reason": reason,
                        })
                        pipe.lpush(self._waiting_key(task.queue), task.id)
                        new_state: Optional[TaskState] = TaskState.WAITING
                    elif data.get("remove_on_fail") == "1":
                        pipe.delete(key)
                        new_state = None
                    else:
                        pipe.hset(key, mapping={
                            "state": TaskState.FAILED.value,
                            "attempts_made": attempts_made,
                            "failed_reason": reason,
                        })
                        new_state = TaskState.FAILED
                    pipe.execute()
                except redis.WatchError:
                    continue

            logger.debug(f"Task {task.id} on {task.queue} failed (attempt {attempts_made}/{attempts}): {reason}")
            return True, new_state

    def recover_stalled(self, queue: str, stall_timeout: float) -> List[str]:
        """
        Hand out again tasks left active by a worker that went away.

        A recovered task counts one failed attempt, so a task that keeps
        crashing its worker eventually ends up failed.

        Args:
            queue: Queue name
            stall_timeout: Seconds a task may stay active

        Returns:
            Ids of the tasks that were recovered
        """
        cutoff = time.time() - stall_timeout
        reason = f"stalled for more than {stall_timeout:g}s"
        recovered: List[str] = []
        try:
            for task_id in self.client.zrangebyscore(self._active_key(queue), "-inf", cutoff):
                task = QueuedTask(queue=queue, id=task_id, name="")
                recorded, _ = self._record_failure(task, reason, stalled_before=cutoff)
                if recorded:
                    recovered.append(task_id)
        except redis.RedisError as exc:
            raise StorageFailure(f"Stall recovery on {queue} failed: {exc}") from exc

        if recovered:
            logger.warning(f"Recovered {len(recovered)} stalled task(s) on {queue}: {recovered}")
        return recovered

    def _to_task(self, queue: str, task_id: str, data: Dict[str, str]) -> QueuedTask:
        return QueuedTask(
            queue=queue,
            id=task_id,
            name=data.get("name", ""),
            payload=json.loads(data.get("payload") or "{}"),
            state=TaskState(data.get("state") or TaskState.WAITING.value),
            attempts=int(data.get("attempts", 1)),
            attempts_made=int(data.get("attempts_made", 0)),
            failed_reason=data.get("failed_reason"),
        )
