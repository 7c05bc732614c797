from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, List

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .blob_store import create_blob_store
from .configuration import configure_logging, load_settings
from .database import JobDatabase
from .errors import JobNotFound
from .job_manager import JobManager
from .models import CreateJobRequest, JobProgress
from .reconciler import Reconciler
from .task_queue import TaskQueue

app = FastAPI(title="DocRender API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_job_manager() -> JobManager:
    settings = load_settings()
    configure_logging(settings)
    database = JobDatabase(Path(settings.database.path))
    queue = TaskQueue.from_settings(settings)
    return JobManager(
        database=database,
        queue=queue,
        reconciler=Reconciler.from_settings(database, queue, settings),
        blob_store=create_blob_store(settings),
        settings=settings,
    )


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/jobs", response_model=JobProgress, status_code=201)
def create_job(request: CreateJobRequest, manager: JobManager = Depends(get_job_manager)) -> JobProgress:
    job = manager.create_job(request)
    return manager.get_job_progress(job.id, heal=False)


@app.get("/jobs/{job_id}", response_model=JobProgress)
def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobProgress:
    try:
        return manager.get_job_progress(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc


@app.get("/users/{user_id}/jobs", response_model=List[JobProgress])
def list_user_jobs(user_id: str, manager: JobManager = Depends(get_job_manager)) -> List[JobProgress]:
    return manager.list_jobs(user_id)
