"""Prometheus metrics for LLM calls and answering requests.

Provides:
- track_llm_call(): Context manager for LLM call metrics
- record_ask_outcome(): Counter of how each answering request ended
- get_metrics_text(): Prometheus exposition payload for scraping
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

# ── LLM Metrics ──────────────────────────────────────────────────────────────

llm_requests_total = Counter(
    "llm_requests_total",
    "Total LLM API requests",
    ["model", "stage", "status"],
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "LLM API request duration in seconds",
    ["model", "stage"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

llm_tokens_used_total = Counter(
    "llm_tokens_used_total",
    "Total LLM tokens consumed",
    ["model", "stage", "token_type"],
)

# ── Answering Metrics ────────────────────────────────────────────────────────

ask_requests_total = Counter(
    "ask_requests_total",
    "Answering requests by terminal outcome",
    ["outcome"],
)


# ── LLM Metrics Helper ──────────────────────────────────────────────────────


@asynccontextmanager
async def track_llm_call(
    model: str,
    stage: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks LLM call metrics.

    Usage:
        async with track_llm_call("openai/gpt-4o-mini", "grade") as tracker:
            result = await call_llm(...)
            tracker["prompt_tokens"] = result.usage.prompt_tokens
            tracker["completion_tokens"] = result.usage.completion_tokens

    Automatically records:
    - Duration in histogram
    - Request count (success/error)
    - Token usage (if set in tracker dict)
    """
    tracker: dict[str, Any] = {
        "prompt_tokens": 0,
        "completion_tokens": 0,
    }
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time

        llm_requests_total.labels(model=model, stage=stage, status=status).inc()
        llm_request_duration_seconds.labels(model=model, stage=stage).observe(duration)

        if tracker.get("prompt_tokens"):
            llm_tokens_used_total.labels(
                model=model, stage=stage, token_type="prompt"
            ).inc(tracker["prompt_tokens"])

        if tracker.get("completion_tokens"):
            llm_tokens_used_total.labels(
                model=model, stage=stage, token_type="completion"
            ).inc(tracker["completion_tokens"])


def record_ask_outcome(outcome: str) -> None:
    """Count a finished answering request by outcome."""
    ask_requests_total.labels(outcome=outcome).inc()


def get_metrics_text() -> bytes:
    """Generate Prometheus exposition format payload."""
    return generate_latest(REGISTRY)
