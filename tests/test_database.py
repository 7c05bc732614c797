"""
Tests for the SQLite job store.

Tests cover:
- Job persistence round trip
- Page artifact recording and the completion counter
- Conditional claims under concurrency
- Documents unique per job and access grant upserts
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from docrender_backend.errors import ClaimConflict, JobNotFound
from docrender_backend.models import DocumentRecord, JobStage, JobStatus, TextItem
from docrender_backend.utils import utcnow


def _document(job, document_id="doc-1"):
    return DocumentRecord(
        id=document_id,
        title="Generated Output",
        file_key=f"generated/output/{document_id}.pdf",
        file_url=f"file:///tmp/{document_id}.pdf",
        total_prints=5,
        created_by=job.user_id,
        source_job_id=job.id,
        created_at=utcnow(),
    )


class TestJobPersistence:
    """Tests for creating and reading jobs."""

    def test_round_trip_keeps_layouts_and_quota(self, database, job_factory):
        """Stored layouts come back as typed items."""
        job = job_factory(total_pages=2, assigned_quota="7")

        stored = database.get_job(job.id)
        assert stored.total_pages == 2
        assert stored.assigned_quota == "7"
        assert stored.stage == JobStage.PENDING
        assert stored.status == JobStatus.PENDING
        assert isinstance(stored.layout_pages[1].items[0], TextItem)
        assert stored.layout_pages[1].items[0].text == "1"

    def test_get_unknown_job_returns_none(self, database):
        assert database.get_job("missing") is None

    def test_list_jobs_filters(self, database, job_factory):
        """Listing can be restricted to an owner and to unfinished jobs."""
        mine = job_factory(user_id="alice")
        done = job_factory(user_id="alice")
        job_factory(user_id="bob")
        database.complete_job(done.id, "doc-x")

        assert {job.id for job in database.list_jobs(user_id="alice")} == {mine.id, done.id}
        unfinished = database.list_jobs(user_id="alice", unfinished_only=True)
        assert [job.id for job in unfinished] == [mine.id]


class TestPageArtifacts:
    """Tests for record_page_artifact."""

    def test_records_artifact_and_moves_to_rendering(self, database, job_factory):
        job = job_factory(total_pages=3)

        updated = database.record_page_artifact(job.id, 1, "pages/1.pdf")

        assert updated.completed_pages == 1
        assert updated.stage == JobStage.RENDERING
        assert updated.status == JobStatus.PROCESSING
        assert updated.missing_page_indices() == [0, 2]

    def test_duplicate_page_keeps_first_artifact(self, database, job_factory):
        """A second artifact for the same slot leaves the counter alone."""
        job = job_factory(total_pages=2)
        database.record_page_artifact(job.id, 0, "pages/first.pdf")

        updated = database.record_page_artifact(job.id, 0, "pages/second.pdf")

        assert updated.completed_pages == 1
        assert [a.storage_key for a in updated.page_artifacts] == ["pages/first.pdf"]

    def test_unknown_job_raises(self, database):
        with pytest.raises(JobNotFound):
            database.record_page_artifact("missing", 0, "pages/0.pdf")

    def test_late_artifact_does_not_regress_merging(self, database, job_factory):
        """A page landing after the merge claim keeps the job merging."""
        job = job_factory(total_pages=2)
        database.record_page_artifact(job.id, 0, "pages/0.pdf")
        database.claim_job(job.id, JobStage.MERGING, JobStatus.PROCESSING)

        updated = database.record_page_artifact(job.id, 1, "pages/1.pdf")

        assert updated.stage == JobStage.MERGING
        assert updated.completed_pages == 2

    def test_concurrent_artifacts_count_each_page_once(self, database, job_factory):
        job = job_factory(total_pages=6)

        def record(index):
            return database.record_page_artifact(job.id, index % 6, f"pages/{index}.pdf")

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(record, range(12)))

        stored = database.get_job(job.id)
        assert stored.completed_pages == 6
        assert stored.missing_page_indices() == []


class TestClaims:
    """Tests for the conditional stage transition."""

    def test_only_one_concurrent_claim_wins(self, database, job_factory):
        job = job_factory(total_pages=2)

        def claim(_):
            try:
                database.claim_job(
                    job.id, JobStage.MERGING, JobStatus.PROCESSING,
                    from_stages=(JobStage.PENDING, JobStage.RENDERING),
                )
                return True
            except ClaimConflict:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(claim, range(8)))

        assert outcomes.count(True) == 1
        assert database.get_job(job.id).stage == JobStage.MERGING

    def test_claim_refused_once_output_exists(self, database, job_factory):
        job = job_factory()
        database.complete_job(job.id, "doc-1")

        with pytest.raises(ClaimConflict):
            database.claim_job(job.id, JobStage.MERGING, JobStatus.PROCESSING)

    def test_claim_respects_excluded_stages(self, database, job_factory):
        job = job_factory()
        database.update_job(job.id, stage=JobStage.COMPLETED)

        with pytest.raises(ClaimConflict):
            database.claim_job(
                job.id, JobStage.MERGING, JobStatus.PROCESSING, exclude_stages=(JobStage.COMPLETED,)
            )

    def test_mark_failed_ignores_completed_jobs(self, database, job_factory):
        job = job_factory()
        database.complete_job(job.id, "doc-1")

        assert database.mark_failed(job.id, "late failure") is False
        stored = database.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.error is None


class TestDocumentsAndGrants:
    """Tests for documents and access grants."""

    def test_document_unique_per_job(self, database, job_factory):
        job = job_factory()
        first = database.create_document(_document(job, "doc-1"))

        second = database.create_document(_document(job, "doc-2"))

        assert first.id == "doc-1"
        assert second.id == "doc-1"
        assert database.get_document("doc-2") is None
        assert database.get_document_for_job(job.id).id == "doc-1"

    def test_grant_upsert_replaces_token_and_resets_prints(self, database, job_factory):
        job = job_factory()
        document = database.create_document(_document(job))

        first = database.upsert_access_grant("grant-1", job.user_id, document.id, 5, "token-a")
        second = database.upsert_access_grant("grant-2", job.user_id, document.id, 3, "token-b")

        assert second.id == first.id == "grant-1"
        assert second.session_token == "token-b"
        assert second.assigned_quota == 3
        assert second.used_prints == 0
        assert second.remaining_prints == 3
        assert database.get_access_grant(job.user_id, document.id).session_token == "token-b"
