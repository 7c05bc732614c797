"""
Exception hierarchy for the rendering pipeline.

Workers distinguish three families of errors:
- Recoverable inside the render pool (EngineDisconnected is retried once)
- Normal no-op signals (ClaimConflict, TaskAlreadyExists)
- Hard failures that mark the job failed and re-raise to the queue
"""

from __future__ import annotations


class DocRenderError(Exception):
    """Base class for all pipeline errors."""


class RenderTimeout(DocRenderError):
    """The rendering engine did not finish a step within its deadline."""

    def __init__(self, step: str, timeout: float) -> None:
        super().__init__(f"{step} timed out after {timeout:g}s")
        self.step = step
        self.timeout = timeout


class EmptyRenderError(DocRenderError):
    """The engine returned zero bytes for a page export."""


class EngineDisconnected(DocRenderError):
    """The browser engine connection closed and could not be re-established."""


class StorageFailure(DocRenderError):
    """I/O against the blob store or record store failed."""


class ClaimConflict(DocRenderError):
    """A conditional job transition matched no record."""

    def __init__(self, job_id: str, target_stage: str) -> None:
        super().__init__(f"Job {job_id} not eligible for transition to {target_stage}")
        self.job_id = job_id
        self.target_stage = target_stage


class TaskAlreadyExists(DocRenderError):
    """A task with the same identity is already present in the queue."""

    def __init__(self, queue: str, task_id: str) -> None:
        super().__init__(f"Task {task_id} already exists in queue {queue}")
        self.queue = queue
        self.task_id = task_id


class MissingPageArtifacts(DocRenderError):
    """A merge was attempted before every page slot had an artifact."""

    def __init__(self, job_id: str, missing: list[int]) -> None:
        super().__init__(f"Job {job_id} is missing artifacts for pages {missing}")
        self.job_id = job_id
        self.missing = missing


class JobNotFound(DocRenderError):
    """No job exists with the requested id."""
