"""
Render stage: one queued task per page.

A task re-reads its job first and does nothing when the job has already
moved on to merging or completion, so duplicate deliveries are harmless.
The worker whose artifact brings the completion counter to the page total
races the others for a conditional claim of the merging stage; only the
winner enqueues the merge task, and the merge task id is derived from the
job id so the queue drops any duplicate that slips through.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .blob_store import BlobStore
from .database import JobDatabase
from .errors import ClaimConflict, TaskAlreadyExists
from .models import JobStage, JobStatus, MergeTaskPayload, RenderTaskPayload
from .page_renderer import PageRenderer
from .task_queue import QueuedTask, TaskQueue, merge_task_id

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


class RenderWorker:
    def __init__(
        self,
        database: JobDatabase,
        blob_store: BlobStore,
        queue: TaskQueue,
        renderer: PageRenderer,
        merge_queue: str = "document-merge",
        merge_attempts: int = 1,
        merge_remove_on_complete: bool = True,
        merge_remove_on_fail: bool = True,
        page_prefix: str = "generated/pages/",
    ) -> None:
        self.database = database
        self.blob_store = blob_store
        self.queue = queue
        self.renderer = renderer
        self.merge_queue = merge_queue
        self.merge_attempts = merge_attempts
        self.merge_remove_on_complete = merge_remove_on_complete
        self.merge_remove_on_fail = merge_remove_on_fail
        self.page_prefix = page_prefix

    async def process(self, task: QueuedTask) -> None:
        """
        Render one page and persist its artifact.

        Raises:
            Exception: Any render or storage failure, after the job has been
                marked failed, so the queue's attempt policy applies
        """
        payload = RenderTaskPayload.model_validate(task.payload)
        job_id = payload.job_id

        job = await asyncio.to_thread(self.database.get_job, job_id)
        if job is None:
            logger.warning(f"Render task {task.id}: job {job_id} not found; dropping")
            return

        if job.output_document_id or job.stage in (JobStage.MERGING, JobStage.COMPLETED):
            logger.debug(f"Render task {task.id}: job {job_id} already {job.stage.value}; skipping")
            return

        if not 0 <= payload.page_index < job.total_pages:
            logger.warning(
                f"Render task {task.id}: page {payload.page_index} outside job {job_id} "
                f"range of {job.total_pages}; dropping"
            )
            return

        try:
            layout = payload.page_layout or self._stored_layout(job.layout_pages, payload.page_index)
            if layout is None:
                raise ValueError(f"No layout for page {payload.page_index} of job {job_id}")

            pdf = await self.renderer.render(layout)
            stored = await asyncio.to_thread(self.blob_store.put, pdf, PDF_CONTENT_TYPE, self.page_prefix)
            updated = await asyncio.to_thread(
                self.database.record_page_artifact, job_id, payload.page_index, stored.key
            )
            logger.info(
                f"Job {job_id}: page {payload.page_index} rendered "
                f"({updated.completed_pages}/{updated.total_pages})"
            )

            if updated.total_pages > 0 and updated.completed_pages >= updated.total_pages:
                await self._trigger_merge(job_id)
        except Exception as exc:
            logger.exception(f"Render task {task.id} failed")
            await asyncio.to_thread(self.database.mark_failed, job_id, f"Page {payload.page_index}: {exc}")
            raise

    @staticmethod
    def _stored_layout(layouts, page_index: int):
        return layouts[page_index] if page_index < len(layouts) else None

    async def _trigger_merge(self, job_id: str) -> Optional[QueuedTask]:
        try:
            await asyncio.to_thread(
                self.database.claim_job,
                job_id,
                JobStage.MERGING,
                JobStatus.PROCESSING,
                (JobStage.PENDING, JobStage.RENDERING),
            )
        except ClaimConflict:
            logger.debug(f"Job {job_id}: merge already claimed by another worker")
            return None

        try:
            task = await asyncio.to_thread(
                self.queue.enqueue,
                self.merge_queue,
                "mergeJob",
                MergeTaskPayload(job_id=job_id).model_dump(),
                merge_task_id(job_id),
                self.merge_attempts,
                self.merge_remove_on_complete,
                self.merge_remove_on_fail,
            )
        except TaskAlreadyExists:
            logger.info(f"Job {job_id}: merge task already queued")
            return None

        logger.info(f"Job {job_id}: all pages rendered; merge queued")
        return task
