"""
Merge stage: concatenate rendered pages into the final document.

The merge queue is consumed with concurrency 1 so at most one job's pages
are being downloaded at a time. Each task claims its job conditionally; a
job that already has its output document (or is completed) is left alone.
Finalization is idempotent: the document is unique per job and the access
grant is an upsert, so a re-delivered task never duplicates either.
"""

from __future__ import annotations

import asyncio
import io
import logging
import secrets
from typing import List
from uuid import uuid4

from pypdf import PdfReader, PdfWriter

from .blob_store import BlobStore
from .database import JobDatabase
from .errors import ClaimConflict, MissingPageArtifacts
from .models import DocumentRecord, JobRecord, JobStage, JobStatus, MergeTaskPayload
from .task_queue import QueuedTask
from .utils import coerce_print_quota, utcnow

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


def merge_pdfs(parts: List[bytes]) -> bytes:
    """
    Concatenate PDF documents, keeping every page unmodified.

    Args:
        parts: PDF files in output order

    Returns:
        The combined PDF
    """
    writer = PdfWriter()
    for part in parts:
        reader = PdfReader(io.BytesIO(part))
        for page in reader.pages:
            writer.add_page(page)
    output = io.BytesIO()
    writer.write(output)
    return output.getvalue()


def new_session_token() -> str:
    return secrets.token_hex(32)


class MergeWorker:
    def __init__(
        self,
        database: JobDatabase,
        blob_store: BlobStore,
        output_prefix: str = "generated/output/",
        document_title: str = "Generated Output",
    ) -> None:
        self.database = database
        self.blob_store = blob_store
        self.output_prefix = output_prefix
        self.document_title = document_title

    async def process(self, task: QueuedTask) -> None:
        """
        Merge a job's pages and finalize its document and access grant.

        Raises:
            Exception: Any failure after the claim, once the job is marked failed
        """
        payload = MergeTaskPayload.model_validate(task.payload)
        job_id = payload.job_id

        try:
            job = await asyncio.to_thread(
                self.database.claim_job,
                job_id,
                JobStage.MERGING,
                JobStatus.PROCESSING,
                None,
                (JobStage.COMPLETED,),
            )
        except ClaimConflict:
            logger.info(f"Merge task {task.id}: job {job_id} already merged or not eligible")
            return

        try:
            document = await asyncio.to_thread(self.database.get_document_for_job, job_id)
            if document is None:
                document = await self._build_document(job)
            else:
                logger.info(f"Job {job_id}: reusing document {document.id} from an earlier attempt")
            await self.finalize(job, document)
        except Exception as exc:
            logger.exception(f"Merge task {task.id} failed")
            await asyncio.to_thread(self.database.mark_failed, job_id, f"Merge: {exc}")
            raise

        logger.info(f"Job {job_id}: merge completed as document {document.id}")

    async def _build_document(self, job: JobRecord) -> DocumentRecord:
        missing = job.missing_page_indices()
        if missing:
            raise MissingPageArtifacts(job.id, missing)

        # Artifacts are stored in completion order, not page order.
        artifacts = sorted(job.page_artifacts, key=lambda artifact: artifact.page_index)
        parts = []
        for artifact in artifacts:
            blob = await asyncio.to_thread(self.blob_store.get, artifact.storage_key)
            parts.append(blob.data)

        merged = await asyncio.to_thread(merge_pdfs, parts)
        stored = await asyncio.to_thread(self.blob_store.put, merged, PDF_CONTENT_TYPE, self.output_prefix)

        document = DocumentRecord(
            id=uuid4().hex,
            title=self.document_title,
            file_key=stored.key,
            file_url=stored.url,
            total_prints=coerce_print_quota(job.assigned_quota),
            mime_type=PDF_CONTENT_TYPE,
            document_type="generated-output",
            created_by=job.created_by,
            source_job_id=job.id,
            created_at=utcnow(),
        )
        return await asyncio.to_thread(self.database.create_document, document)

    async def finalize(self, job: JobRecord, document: DocumentRecord) -> None:
        """
        Grant the job owner access to the document and mark the job completed.

        Safe to run more than once for the same job.
        """
        await asyncio.to_thread(
            self.database.upsert_access_grant,
            uuid4().hex,
            job.user_id,
            document.id,
            document.total_prints,
            new_session_token(),
        )
        await asyncio.to_thread(self.database.complete_job, job.id, document.id)
