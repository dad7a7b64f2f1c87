"""
Core modules for AI Request Guard.

This package contains request queueing, rate limiting, retry and failover,
response caching, usage accounting and deterministic replay.
"""
