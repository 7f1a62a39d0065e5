"""Resilient LLM Gateway Layer.

Mediates every client call to the upstream LLM provider with:
  - Per-model Circuit Breaker Registry
  - Ordered Fallback Chain across interchangeable models
  - Resilient Transport (exponential backoff with jitter)
  - Burst Limiter (fixed window per caller)
  - Daily Free-Tier Quota (Redis with in-memory fallback)
  - Granularity Router (web enrichment heuristic)
  - Resilient JSON Extractor for LLM text output
"""
