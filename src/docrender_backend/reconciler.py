"""
Self-healing pass over persisted job state.

The reconciler looks only at what is stored (job row, page artifacts, task
records) and re-issues whatever work is missing: the merge task when every
page is present but no output exists, or render tasks for the page slots
that never produced an artifact once a job has gone quiet. Task ids are
deterministic, so re-issuing is deduplicated by the queue.

Cooldowns are kept in memory and are lost on restart; that only costs an
extra idempotent pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional

from omegaconf import DictConfig

from .database import JobDatabase
from .errors import TaskAlreadyExists
from .models import JobRecord, JobStage, JobStatus, MergeTaskPayload, RenderTaskPayload
from .task_queue import TaskQueue, TaskState, merge_task_id, render_task_id
from .utils import utcnow

logger = logging.getLogger(__name__)


class ReconcileAction(str, Enum):
    NONE = "none"
    COOLDOWN = "cooldown"
    MERGE_ENQUEUED = "merge_enqueued"
    MERGE_RETRIED = "merge_retried"
    MERGE_PENDING = "merge_pending"
    PAGES_REQUEUED = "pages_requeued"
    ERROR = "error"


@dataclass
class ReconcileResult:
    job_id: str
    action: ReconcileAction = ReconcileAction.NONE
    enqueued_pages: List[int] = field(default_factory=list)
    retried_pages: List[int] = field(default_factory=list)
    failed_pages: List[int] = field(default_factory=list)


class Reconciler:
    """
    Re-derives the target state of a job and repairs divergence.

    Thread Safety:
        Cooldown maps are guarded by a lock; reconcile may be called from
        several request threads at once.
    """

    def __init__(
        self,
        database: JobDatabase,
        queue: TaskQueue,
        render_queue: str = "page-render",
        merge_queue: str = "document-merge",
        stale_after: timedelta = timedelta(seconds=30),
        job_cooldown: timedelta = timedelta(seconds=60),
        merge_cooldown: timedelta = timedelta(seconds=60),
        render_attempts: int = 2,
        render_remove_on_complete: bool = True,
        render_remove_on_fail: bool = False,
        merge_attempts: int = 1,
        merge_remove_on_complete: bool = True,
        merge_remove_on_fail: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.queue = queue
        self.render_queue = render_queue
        self.merge_queue = merge_queue
        self.stale_after = stale_after
        self.job_cooldown = job_cooldown
        self.merge_cooldown = merge_cooldown
        self.render_attempts = render_attempts
        self.render_remove_on_complete = render_remove_on_complete
        self.render_remove_on_fail = render_remove_on_fail
        self.merge_attempts = merge_attempts
        self.merge_remove_on_complete = merge_remove_on_complete
        self.merge_remove_on_fail = merge_remove_on_fail
        self.clock = clock
        self._lock = Lock()
        self._last_job_heal: Dict[str, datetime] = {}
        self._last_merge_heal: Dict[str, datetime] = {}

    @classmethod
    def from_settings(cls, database: JobDatabase, queue: TaskQueue, settings: DictConfig) -> "Reconciler":
        rec = settings.reconciler
        return cls(
            database,
            queue,
            render_queue=settings.queue.render_queue,
            merge_queue=settings.queue.merge_queue,
            stale_after=timedelta(seconds=rec.stale_after_seconds),
            job_cooldown=timedelta(seconds=rec.job_cooldown_seconds),
            merge_cooldown=timedelta(seconds=rec.merge_cooldown_seconds),
            render_attempts=settings.render.attempts,
            render_remove_on_complete=settings.render.remove_on_complete,
            render_remove_on_fail=settings.render.remove_on_fail,
            merge_attempts=settings.merge.attempts,
            merge_remove_on_complete=settings.merge.remove_on_complete,
            merge_remove_on_fail=settings.merge.remove_on_fail,
        )

    def _cooldown_elapsed(self, table: Dict[str, datetime], job_id: str, window: timedelta, now: datetime) -> bool:
        """Check and stamp a cooldown entry in one step."""
        with self._lock:
            last = table.get(job_id)
            if last is not None and now - last < window:
                return False
            table[job_id] = now
            return True

    def reconcile(self, job: Optional[JobRecord]) -> ReconcileResult:
        """
        Repair one job. Never raises; failures are logged.

        Args:
            job: The job as currently stored

        Returns:
            What was done, for logging and tests
        """
        if job is None:
            return ReconcileResult(job_id="")
        try:
            return self._reconcile(job)
        except Exception:
            logger.exception(f"Reconciliation of job {job.id} failed")
            return ReconcileResult(job_id=job.id, action=ReconcileAction.ERROR)

    def sweep(self, jobs: Iterable[JobRecord]) -> List[ReconcileResult]:
        return [self.reconcile(job) for job in jobs]

    def _reconcile(self, job: JobRecord) -> ReconcileResult:
        result = ReconcileResult(job_id=job.id)
        if job.total_pages <= 0 or job.output_document_id:
            return result

        now = self.clock()
        missing = job.missing_page_indices()

        if not missing:
            if not self._cooldown_elapsed(self._last_merge_heal, job.id, self.merge_cooldown, now):
                result.action = ReconcileAction.COOLDOWN
                return result
            result.action = self._repair_merge(job)
            return result

        if job.updated_at is None or now - job.updated_at < self.stale_after:
            return result
        if not self._cooldown_elapsed(self._last_job_heal, job.id, self.job_cooldown, now):
            result.action = ReconcileAction.COOLDOWN
            return result
        if len(job.layout_pages) < job.total_pages:
            logger.warning(f"Job {job.id}: stored layouts do not cover all pages; cannot re-render")
            return result

        if job.status == JobStatus.FAILED or job.stage == JobStage.FAILED:
            self.database.update_job(
                job.id,
                stage=JobStage.RENDERING,
                status=JobStatus.PROCESSING,
                require_output_unset=True,
            )

        for page_index in missing:
            try:
                outcome = self._repair_page(job, page_index)
            except Exception:
                logger.exception(f"Job {job.id}: re-issuing page {page_index} failed")
                result.failed_pages.append(page_index)
                continue
            if outcome == "enqueued":
                result.enqueued_pages.append(page_index)
            elif outcome == "retried":
                result.retried_pages.append(page_index)

        if result.enqueued_pages or result.retried_pages:
            result.action = ReconcileAction.PAGES_REQUEUED
            logger.info(
                f"Job {job.id}: re-issued render tasks enqueued={result.enqueued_pages} "
                f"retried={result.retried_pages}"
            )
        elif result.failed_pages:
            result.action = ReconcileAction.ERROR
        return result

    def _repair_merge(self, job: JobRecord) -> ReconcileAction:
        # Visible as in progress again while the merge is retried.
        self.database.update_job(
            job.id,
            stage=JobStage.MERGING,
            status=JobStatus.PROCESSING,
            require_output_unset=True,
        )

        task_id = merge_task_id(job.id)
        existing = self.queue.get_task(self.merge_queue, task_id)
        if existing is not None:
            if self.queue.get_state(existing) == TaskState.FAILED and self.queue.retry(existing):
                logger.info(f"Job {job.id}: retried failed merge task")
                return ReconcileAction.MERGE_RETRIED
            return ReconcileAction.MERGE_PENDING

        try:
            self.queue.enqueue(
                self.merge_queue,
                "mergeJob",
                MergeTaskPayload(job_id=job.id).model_dump(),
                task_id=task_id,
                attempts=self.merge_attempts,
                remove_on_complete=self.merge_remove_on_complete,
                remove_on_fail=self.merge_remove_on_fail,
            )
        except TaskAlreadyExists:
            return ReconcileAction.MERGE_PENDING
        logger.info(f"Job {job.id}: all pages present without output; merge re-enqueued")
        return ReconcileAction.MERGE_ENQUEUED

    def _repair_page(self, job: JobRecord, page_index: int) -> Optional[str]:
        task_id = render_task_id(job.id, page_index)
        existing = self.queue.get_task(self.render_queue, task_id)
        if existing is not None:
            if self.queue.get_state(existing) == TaskState.FAILED and self.queue.retry(existing):
                return "retried"
            return None

        layout = job.layout_pages[page_index]
        payload = RenderTaskPayload(
            job_id=job.id,
            page_index=page_index,
            total_pages=job.total_pages,
            page_layout=layout,
            layout_mode=layout.layout_mode,
            email=job.email.lower() if job.email else None,
            assigned_quota=job.assigned_quota,
        )
        try:
            self.queue.enqueue(
                self.render_queue,
                "renderPage",
                payload.model_dump(mode="json", by_alias=True),
                task_id=task_id,
                attempts=self.render_attempts,
                remove_on_complete=self.render_remove_on_complete,
                remove_on_fail=self.render_remove_on_fail,
            )
        except TaskAlreadyExists:
            return None
        return "enqueued"
