"""HTTP API layer (FastAPI).

Endpoints used by the operator UI:
- `/run/{job}` streams a job's merged output while it runs
- `/logs` lists past runs and returns their transcripts
- `/jobs` lists the allowlisted jobs

The API is intentionally thin: core behavior lives in `runbox.runtime` and
`runbox.storage`.
"""
