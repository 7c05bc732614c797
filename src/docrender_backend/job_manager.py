"""
Job intake and progress reporting.

This module manages the client-facing side of a document-generation job:
- Job creation: persist the job and enqueue one render task per page
- Progress reads: reconcile stalled jobs, then report status, stage and
  page counts, plus the owner's access details once the document exists

The JobManager is used by the HTTP layer; the pipeline itself runs in the
worker process (see worker.py).
"""

from __future__ import annotations

import logging
from typing import List, Optional
from uuid import uuid4

from omegaconf import DictConfig

from .blob_store import BlobStore
from .database import JobDatabase
from .errors import JobNotFound, StorageFailure, TaskAlreadyExists
from .models import (
    CreateJobRequest,
    JobProgress,
    JobRecord,
    JobStage,
    JobStatus,
    RenderTaskPayload,
)
from .reconciler import Reconciler
from .task_queue import TaskQueue, render_task_id
from .utils import utcnow

logger = logging.getLogger(__name__)


class JobManager:
    """
    Coordinator for job creation and status reads.

    Attributes:
        database: Durable job store
        queue: Task queue the render tasks go to
        reconciler: Self-heal pass run on progress reads
        blob_store: Used to presign download URLs for finished documents
    """

    def __init__(
        self,
        database: JobDatabase,
        queue: TaskQueue,
        reconciler: Reconciler,
        blob_store: BlobStore,
        settings: DictConfig,
    ) -> None:
        self.database = database
        self.queue = queue
        self.reconciler = reconciler
        self.blob_store = blob_store
        self.settings = settings

    def create_job(self, request: CreateJobRequest) -> JobRecord:
        """
        Create and register a new document-generation job.

        This method:
        1. Generates a unique job ID
        2. Persists the job in pending state with its page layouts
        3. Enqueues one render task per page under a deterministic task id

        Args:
            request: Validated job request

        Returns:
            The stored job record

        Note:
            If enqueueing fails part-way the job is left pending; the
            reconciler re-issues the missing pages once the job is stale.
        """
        now = utcnow()
        job = JobRecord(
            id=uuid4().hex,
            user_id=request.user_id,
            email=request.email,
            created_by=request.created_by or request.user_id,
            assigned_quota=request.assigned_quota,
            total_pages=len(request.pages),
            layout_pages=request.pages,
            stage=JobStage.PENDING,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.database.create_job(job)
        logger.info(f"Job {job.id} registered for user {job.user_id} with {job.total_pages} page(s)")

        render = self.settings.render
        try:
            for page_index, layout in enumerate(job.layout_pages):
                payload = RenderTaskPayload(
                    job_id=job.id,
                    page_index=page_index,
                    total_pages=job.total_pages,
                    page_layout=layout,
                    layout_mode=layout.layout_mode,
                    email=job.email,
                    assigned_quota=job.assigned_quota,
                )
                try:
                    self.queue.enqueue(
                        self.settings.queue.render_queue,
                        "renderPage",
                        payload.model_dump(mode="json", by_alias=True),
                        task_id=render_task_id(job.id, page_index),
                        attempts=render.attempts,
                        remove_on_complete=render.remove_on_complete,
                        remove_on_fail=render.remove_on_fail,
                    )
                except TaskAlreadyExists:
                    logger.debug(f"Render task for page {page_index} of job {job.id} already queued")
        except StorageFailure:
            logger.exception(f"Job {job.id}: enqueueing render tasks failed; left for reconciliation")

        return job

    def get_job(self, job_id: str) -> JobRecord:
        job = self.database.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def get_job_progress(self, job_id: str, heal: bool = True) -> JobProgress:
        """
        Report a job's progress, reconciling it first if unfinished.

        Args:
            job_id: The job to report on
            heal: Run the reconciler before reading

        Returns:
            JobProgress view of the job

        Raises:
            JobNotFound: If the job does not exist
        """
        job = self.get_job(job_id)
        if heal and job.status != JobStatus.COMPLETED:
            self.reconciler.reconcile(job)
            job = self.get_job(job_id)
        return self._to_progress(job)

    def list_jobs(self, user_id: str, heal: bool = True) -> List[JobProgress]:
        """
        Progress views for all of a user's jobs, newest first.

        Unfinished jobs are reconciled on the way; a failed reconciliation
        never hides the job from the listing.
        """
        jobs = self.database.list_jobs(user_id=user_id)
        results = []
        for job in jobs:
            if heal and job.status != JobStatus.COMPLETED:
                self.reconciler.reconcile(job)
                job = self.database.get_job(job.id) or job
            results.append(self._to_progress(job))
        return results

    def _to_progress(self, job: JobRecord) -> JobProgress:
        progress = JobProgress.from_job(job, title=self.settings.merge.document_title)
        if not job.output_document_id:
            return progress

        grant = self.database.get_access_grant(job.user_id, job.output_document_id)
        if grant is not None:
            progress.session_token = grant.session_token
            progress.used_prints = grant.used_prints
            progress.remaining_prints = grant.remaining_prints

        document = self.database.get_document(job.output_document_id)
        if document is not None:
            progress.download_url = self._presign(document.file_key)
        return progress

    def _presign(self, key: str) -> Optional[str]:
        try:
            return self.blob_store.presign(key, self.settings.storage.presign_expiration_seconds)
        except StorageFailure:
            logger.warning(f"Could not presign download URL for {key}", exc_info=True)
            return None
