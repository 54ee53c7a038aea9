"""
Core modules for AI Batch Guard.

This package contains batch admission control (rate limiting, idempotency,
budget), retry and circuit breaking, the job ledger, progress streaming,
and the orchestrator that drives them.
"""
