"""
Translation Backend - asynchronous translation jobs over HTTP

This package provides a FastAPI web service and a queue worker that
together process translation requests asynchronously. It enables:

- Submitting translation requests and receiving a request id immediately
- Durable job records tracked from queued to completed or failed
- At-least-once delivery of jobs through a message broker
- Automatic reconnection to the broker after outages

The API never translates anything itself: it records the request,
publishes a job message and answers status queries. The worker consumes
one message at a time, runs the configured translation backend and
records the outcome.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Submission and lookup of jobs
    - worker: Queue consumer driving the job state machine
    - database: SQLite status store
    - broker: Broker gateway (Redis and in-memory)
    - supervisor: Ownership and reconnection of the broker connection
    - translator: Pluggable translation backends
    - models: Pydantic models and the job lifecycle
    - configuration: Config loading from defaults and the environment

Usage:
    Run the API server with:
        translation-api

    Run a worker with:
        translation-worker

    Or directly with uvicorn:
        uvicorn translation_backend.main:app --host 0.0.0.0 --port 3000
"""
