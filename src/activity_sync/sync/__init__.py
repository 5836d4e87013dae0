"""Sync run infrastructure for the activity sync engine.

Modules:
    orchestrator — one sync run: fetch → match → aggregate → persist
    retry        — bounded backoff for retryable provider calls
    store        — stored activity row and the repository interface
    writer       — idempotent upserts and monotonic last-touch updates
    dedup        — identity keys and the in-run duplicate cache
"""
