"""
Tests for job intake and progress reporting outside the HTTP layer.
"""

import pytest

from docrender_backend.errors import JobNotFound, StorageFailure
from docrender_backend.job_manager import JobManager
from docrender_backend.models import CreateJobRequest, JobStage, JobStatus
from docrender_backend.reconciler import Reconciler
from docrender_backend.task_queue import render_task_id


class UnavailableQueue:
    def __init__(self):
        self.calls = 0

    def enqueue(self, *args, **kwargs):
        self.calls += 1
        raise StorageFailure("redis unavailable")


def _request(pdf_tools, pages=2, **extra):
    return CreateJobRequest(user_id="user-1", pages=[pdf_tools["layout"](i) for i in range(pages)], **extra)


class TestCreateJob:
    def test_job_persisted_with_layouts(self, job_manager, database, queue, pdf_tools):
        job = job_manager.create_job(_request(pdf_tools, pages=2, assigned_quota="3"))

        stored = database.get_job(job.id)
        assert stored.total_pages == 2
        assert stored.created_by == "user-1"
        assert stored.assigned_quota == "3"
        assert [layout.items[0].text for layout in stored.layout_pages] == ["0", "1"]
        task = queue.get_task("page-render", render_task_id(job.id, 1))
        assert task.name == "renderPage"
        assert task.attempts == 2

    def test_enqueue_failure_leaves_job_pending(self, database, blob_store, settings, pdf_tools):
        unavailable = UnavailableQueue()
        manager = JobManager(
            database, unavailable, Reconciler.from_settings(database, unavailable, settings), blob_store, settings
        )

        job = manager.create_job(_request(pdf_tools))

        stored = database.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.stage == JobStage.PENDING
        assert unavailable.calls == 1


class TestProgress:
    def test_unknown_job(self, job_manager):
        with pytest.raises(JobNotFound):
            job_manager.get_job_progress("missing")

    def test_progress_without_heal_does_not_enqueue(self, job_manager, queue, pdf_tools):
        job = job_manager.create_job(_request(pdf_tools, pages=1))
        queue.client.flushall()

        progress = job_manager.get_job_progress(job.id, heal=False)

        assert progress.stage == JobStage.PENDING
        assert queue.get_task("page-render", render_task_id(job.id, 0)) is None

    def test_progress_reflects_failure(self, job_manager, database, pdf_tools):
        job = job_manager.create_job(_request(pdf_tools, pages=1))
        database.mark_failed(job.id, "Page 0: timed out")

        progress = job_manager.get_job_progress(job.id, heal=False)

        assert progress.status == JobStatus.FAILED
        assert progress.error == "Page 0: timed out"
