"""
Worker process: consumes the render and merge queues.

Run with:
    docrender-worker

or:
    python -m docrender_backend.worker

The process runs a pool of render consumers (4 by default) and a single
merge consumer sharing one headless browser, plus a maintenance loop that
returns stalled tasks to their queue and periodically reconciles unfinished
jobs. SIGINT/SIGTERM stop the loops after their current task.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from omegaconf import DictConfig

from .blob_store import BlobStore, create_blob_store
from .configuration import configure_logging, load_settings, page_dimensions
from .database import JobDatabase
from .merge_worker import MergeWorker
from .page_renderer import PageRenderer
from .reconciler import ReconcileAction, Reconciler
from .render_pool import RenderResourcePool
from .render_worker import RenderWorker
from .task_queue import QueuedTask, TaskQueue

logger = logging.getLogger(__name__)

TaskHandler = Callable[[QueuedTask], Awaitable[None]]


class QueueConsumer:
    """
    Polls one queue with a fixed number of concurrent loops.

    A handler that returns completes the task; one that raises fails it and
    the queue decides whether another attempt is made.
    """

    def __init__(
        self,
        queue: TaskQueue,
        queue_name: str,
        handler: TaskHandler,
        concurrency: int = 1,
        poll_interval: float = 0.5,
    ) -> None:
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval

    async def run(self, stop: asyncio.Event) -> None:
        logger.info(f"Consuming {self.queue_name} with concurrency {self.concurrency}")
        await asyncio.gather(*(self._loop(stop, slot) for slot in range(self.concurrency)))

    async def _loop(self, stop: asyncio.Event, slot: int) -> None:
        while not stop.is_set():
            try:
                task = await asyncio.to_thread(self.queue.dequeue, self.queue_name)
            except Exception:
                logger.exception(f"[{self.queue_name}#{slot}] dequeue failed")
                task = None
            if task is None:
                await _sleep_until(stop, self.poll_interval)
                continue
            await self.run_task(task)

    async def run_task(self, task: QueuedTask) -> None:
        try:
            await self.handler(task)
        except Exception as exc:
            logger.warning(f"[{self.queue_name}] task {task.id} failed: {exc}")
            try:
                await asyncio.to_thread(self.queue.fail, task, str(exc) or type(exc).__name__)
            except Exception:
                logger.exception(f"[{self.queue_name}] could not record failure of {task.id}")
            return
        try:
            await asyncio.to_thread(self.queue.complete, task)
        except Exception:
            logger.exception(f"[{self.queue_name}] could not complete {task.id}")


async def _sleep_until(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


@dataclass
class WorkerRuntime:
    settings: DictConfig
    database: JobDatabase
    blob_store: BlobStore
    queue: TaskQueue
    pool: RenderResourcePool
    reconciler: Reconciler
    render_consumer: QueueConsumer
    merge_consumer: QueueConsumer

    async def maintenance(self, stop: asyncio.Event) -> None:
        """Return stalled tasks to their queues and run periodic reconciliation sweeps."""
        queue_cfg = self.settings.queue
        stall_timeout = float(queue_cfg.stall_timeout_seconds)
        sweep_interval = float(self.settings.reconciler.sweep_interval_seconds)
        tick = max(1.0, min(stall_timeout / 2, sweep_interval or stall_timeout / 2))
        elapsed_since_sweep = 0.0

        while not stop.is_set():
            await _sleep_until(stop, tick)
            if stop.is_set():
                break
            for name in (queue_cfg.render_queue, queue_cfg.merge_queue):
                try:
                    await asyncio.to_thread(self.queue.recover_stalled, name, stall_timeout)
                except Exception:
                    logger.exception(f"Stall recovery on {name} failed")

            if sweep_interval <= 0:
                continue
            elapsed_since_sweep += tick
            if elapsed_since_sweep < sweep_interval:
                continue
            elapsed_since_sweep = 0.0
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Reconciliation sweep failed")

    def sweep(self) -> None:
        jobs = self.database.list_jobs(unfinished_only=True)
        results = self.reconciler.sweep(jobs)
        acted = [r for r in results if r.action not in (ReconcileAction.NONE, ReconcileAction.COOLDOWN)]
        if acted:
            logger.info(f"Reconciliation sweep acted on {len(acted)} of {len(jobs)} unfinished job(s)")

    async def run(self, stop: asyncio.Event) -> None:
        try:
            await asyncio.gather(
                self.render_consumer.run(stop),
                self.merge_consumer.run(stop),
                self.maintenance(stop),
            )
        finally:
            await self.pool.close()
            logger.info("Worker stopped")


def build_runtime(
    settings: DictConfig,
    queue: Optional[TaskQueue] = None,
    pool: Optional[RenderResourcePool] = None,
    blob_store: Optional[BlobStore] = None,
) -> WorkerRuntime:
    database = JobDatabase(Path(settings.database.path))
    blob_store = blob_store or create_blob_store(settings)
    queue = queue or TaskQueue.from_settings(settings)
    pool = pool or RenderResourcePool.from_settings(settings, page_dimensions(settings))

    renderer = PageRenderer(pool, blob_store, remote_image_scheme=settings.render.remote_image_scheme)
    render_worker = RenderWorker(
        database,
        blob_store,
        queue,
        renderer,
        merge_queue=settings.queue.merge_queue,
        merge_attempts=settings.merge.attempts,
        merge_remove_on_complete=settings.merge.remove_on_complete,
        merge_remove_on_fail=settings.merge.remove_on_fail,
        page_prefix=settings.storage.page_prefix,
    )
    merge_worker = MergeWorker(
        database,
        blob_store,
        output_prefix=settings.storage.output_prefix,
        document_title=settings.merge.document_title,
    )

    poll_interval = float(settings.queue.poll_interval_seconds)
    return WorkerRuntime(
        settings=settings,
        database=database,
        blob_store=blob_store,
        queue=queue,
        pool=pool,
        reconciler=Reconciler.from_settings(database, queue, settings),
        render_consumer=QueueConsumer(
            queue, settings.queue.render_queue, render_worker.process,
            concurrency=settings.render.concurrency, poll_interval=poll_interval,
        ),
        merge_consumer=QueueConsumer(
            queue, settings.queue.merge_queue, merge_worker.process,
            concurrency=settings.merge.concurrency, poll_interval=poll_interval,
        ),
    )


async def serve(settings: DictConfig) -> None:
    runtime = build_runtime(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers.
            pass
    await runtime.run(stop)


def main() -> None:
    settings = load_settings()
    configure_logging(settings)
    logger.info("PDF worker starting")
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
