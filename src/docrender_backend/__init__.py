"""
DocRender Backend - asynchronous multi-page PDF rendering pipeline

This package turns per-page layout descriptions into one printable PDF:

- Each page is rendered to its own PDF by a pool of workers that share a
  single headless Chromium instance
- When the last page lands, exactly one worker hands the job to the merge
  stage, which concatenates the pages in page order
- The final document and the owner's access grant are recorded once
- A reconciler re-issues missing render or merge work from persisted state

Key Components:
    - render_pool: Shared browser engine with relaunch-on-crash
    - page_renderer: Layout to HTML to PDF for one page
    - render_worker / merge_worker: Queue task processors for the two stages
    - reconciler: Self-heal pass over stalled or inconsistent jobs
    - database / task_queue / blob_store: SQLite, Redis and S3 collaborators
    - job_manager / main: Job intake and progress reads over HTTP
    - worker: Worker process entry point

Usage:
    Run the API server with:
        uvicorn docrender_backend.main:app --host 0.0.0.0 --port 8000

    Run the worker process with:
        docrender-worker

Architecture Principles:
    - Every shared-state transition is a conditional update on the job row
    - Task ids derive from the job id so the queue drops duplicate work
    - Re-delivery and re-rendering are harmless; reconciliation converges
"""
