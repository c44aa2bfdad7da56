"""
Metrics Collection and Monitoring

Provides Prometheus-style metrics for monitoring interview sessions, transport
negotiation, uploads and transcript analysis.
"""

import time
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Gauge


# LLM Metrics (transcript analysis)
llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of LLM API requests",
    ["agent_name", "status"]  # status: success, error, rate_limited, timeout
)

llm_latency_seconds = Histogram(
    "llm_latency_seconds",
    "LLM API call latency in seconds",
    ["agent_name"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

llm_retry_attempts_total = Counter(
    "llm_retry_attempts_total",
    "Total number of LLM retry attempts",
    ["agent_name", "reason"]  # reason: rate_limit, timeout, error
)


# Transport Negotiation Metrics
negotiation_requests_total = Counter(
    "negotiation_requests_total",
    "Total SDP offer/answer exchanges",
    ["route", "status"]  # route: relay, direct; status: success, error
)

negotiation_latency_seconds = Histogram(
    "negotiation_latency_seconds",
    "SDP offer/answer round-trip latency in seconds",
    ["route"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)
)


relay_requests_total = Counter(
    "relay_requests_total",
    "Total SDP relay requests handled by the server",
    ["provider", "status_code"]
)


# Session Metrics
sessions_started_total = Counter(
    "sessions_started_total",
    "Total interview start attempts",
    ["provider", "status"]  # status: live, failed
)

active_sessions = Gauge(
    "active_sessions",
    "Number of currently live interview sessions"
)

protocol_events_total = Counter(
    "protocol_events_total",
    "Total control-channel events received",
    ["kind"]
)

sessions_ended_total = Counter(
    "sessions_ended_total",
    "Total interview sessions ended",
    ["reason"]  # reason: playback_stopped, failsafe_timeout, user_stop, channel_closed
)

session_duration_seconds = Histogram(
    "session_duration_seconds",
    "Interview session duration in seconds",
    buckets=(60, 300, 600, 900, 1200, 1800, 2400, 3000)  # 1m to 50m
)

session_cost_usd = Histogram(
    "session_cost_usd",
    "Advisory estimated provider cost per session in USD",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

sessions_created_total = Counter(
    "sessions_created_total",
    "Total interview sessions created on the server",
    ["provider"]  # provider: openai, azure
)


# Media Metrics
media_uploads_total = Counter(
    "media_uploads_total",
    "Total media uploads",
    ["media_type", "status"]  # status: success, error
)

media_upload_bytes = Histogram(
    "media_upload_bytes",
    "Uploaded media artifact size in bytes",
    ["media_type"],
    buckets=(1e5, 1e6, 1e7, 5e7, 1e8, 5e8)
)


# Utility Functions

@contextmanager
def track_llm_call(agent_name: str):
    """
    Context manager to track LLM API call metrics.

    Args:
        agent_name: Name of the agent making the call

    Example:
        with track_llm_call("transcript_analyzer"):
            result = await chain.ainvoke(inputs)
    """
    start_time = time.time()
    status = "success"

    try:
        yield
    except Exception as e:
        error_msg = str(e).lower()
        if "429" in error_msg or "rate limit" in error_msg:
            status = "rate_limited"
            llm_retry_attempts_total.labels(agent_name=agent_name, reason="rate_limit").inc()
        elif "timeout" in error_msg:
            status = "timeout"
            llm_retry_attempts_total.labels(agent_name=agent_name, reason="timeout").inc()
        else:
            status = "error"
            llm_retry_attempts_total.labels(agent_name=agent_name, reason="error").inc()
        raise
    finally:
        duration = time.time() - start_time
        llm_requests_total.labels(agent_name=agent_name, status=status).inc()
        llm_latency_seconds.labels(agent_name=agent_name).observe(duration)


@contextmanager
def track_negotiation(route: str):
    """
    Context manager to track one offer/answer exchange.

    Args:
        route: "relay" or "direct"

    Example:
        with track_negotiation("relay"):
            answer = await client.post(...)
    """
    start_time = time.time()
    status = "success"

    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.time() - start_time
        negotiation_requests_total.labels(route=route, status=status).inc()
        negotiation_latency_seconds.labels(route=route).observe(duration)


def record_upload(media_type: str, size_bytes: int, success: bool):
    """
    Record a media upload attempt.

    Example:
        record_upload("combined", len(blob), success=True)
    """
    status = "success" if success else "error"
    media_uploads_total.labels(media_type=media_type, status=status).inc()
    if success:
        media_upload_bytes.labels(media_type=media_type).observe(size_bytes)


def record_session_metrics(
    duration_seconds: float,
    reason: str,
    total_cost_usd: float
):
    """
    Record session-level metrics at teardown.

    Args:
        duration_seconds: Live duration in seconds
        reason: Why the session ended
        total_cost_usd: Advisory cost estimate

    Example:
        record_session_metrics(duration_seconds=845.2, reason="playback_stopped", total_cost_usd=0.42)
    """
    sessions_ended_total.labels(reason=reason).inc()
    session_duration_seconds.observe(duration_seconds)
    session_cost_usd.observe(total_cost_usd)

