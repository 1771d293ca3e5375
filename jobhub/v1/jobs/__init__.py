"""
Job execution engine.

This package provides:
- Postgres-backed queue with atomic claiming and priority ordering
- Worker pool with heartbeats, stale-worker recovery and graceful shutdown
- Live progress and console output as plain row writes
- Retries with exponential backoff and cooperative cancellation
- Registry-based pluggable handlers behind a runtime boundary
"""
