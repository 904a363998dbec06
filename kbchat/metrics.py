"""
Prometheus metrics for the chat API.

Provides counters and histograms for tracking:
- Request counts and latency
- KB cache hit rates
- Answers by resolution path (kb / llm)
- Completion provider calls
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from typing import Optional

# ============================================================================
# HTTP Request Metrics
# ============================================================================

request_count = Counter(
    'kbchat_requests_total',
    'Total number of HTTP requests',
    ['endpoint', 'method', 'status']
)

request_latency = Histogram(
    'kbchat_request_duration_seconds',
    'HTTP request latency in seconds',
    ['endpoint', 'method'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

# ============================================================================
# Cache Metrics
# ============================================================================

cache_hits = Counter(
    'kbchat_cache_hits_total',
    'Total number of cache hits',
    ['cache_type']
)

cache_misses = Counter(
    'kbchat_cache_misses_total',
    'Total number of cache misses',
    ['cache_type']
)

cache_size = Gauge(
    'kbchat_cache_size_entries',
    'Current number of entries in cache',
    ['cache_type']
)

# ============================================================================
# Answer Metrics
# ============================================================================

answers_total = Counter(
    'kbchat_answers_total',
    'Resolved answers by path',
    ['kind']
)

rejections_total = Counter(
    'kbchat_rejections_total',
    'Requests rejected before answering',
    ['reason']
)

# ============================================================================
# LLM Metrics
# ============================================================================

llm_requests = Counter(
    'kbchat_llm_requests_total',
    'Total number of completion requests (per attempt)',
    ['model', 'status']
)

llm_latency = Histogram(
    'kbchat_llm_duration_seconds',
    'Completion request latency in seconds',
    ['model'],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 30.0)
)


def track_request(endpoint: str, method: str, status: int, duration: float) -> None:
    request_count.labels(endpoint=endpoint, method=method, status=str(status)).inc()
    request_latency.labels(endpoint=endpoint, method=method).observe(duration)


def track_cache_operation(cache_type: str, hit: bool, size: Optional[int] = None) -> None:
    """
    Track cache hit/miss and optionally update size.

    Args:
        cache_type: Type of cache (e.g. 'kb')
        hit: Whether this was a cache hit
        size: Current cache size (optional; only updates the gauge)
    """
    if size is not None:
        cache_size.labels(cache_type=cache_type).set(size)
        return
    if hit:
        cache_hits.labels(cache_type=cache_type).inc()
    else:
        cache_misses.labels(cache_type=cache_type).inc()


def track_answer(kind: str) -> None:
    answers_total.labels(kind=kind).inc()


def track_rejection(reason: str) -> None:
    rejections_total.labels(reason=reason).inc()


def track_llm_request(model: str, status: str, duration: float) -> None:
    llm_requests.labels(model=model, status=status).inc()
    llm_latency.labels(model=model).observe(duration)


def get_metrics() -> bytes:
    """Current metrics in Prometheus text format."""
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
