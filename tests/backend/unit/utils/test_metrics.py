"""Tests for Prometheus metrics module.

Tests metric naming, labels and observation.
"""

from __future__ import annotations

from prometheus_client import REGISTRY

from utils.metrics import (
    NAMESPACE,
    generation_duration_seconds,
    generations_active,
    generations_total,
    request_duration_seconds,
    sse_frames_dropped_total,
    stream_resumes_total,
    time_to_first_event_seconds,
    tokens_total,
    tool_calls_total,
)


class TestMetricsNamespace:
    def test_namespace_is_chatrelay(self) -> None:
        assert NAMESPACE == "chatrelay"


class TestRequestMetrics:
    def test_request_duration_labels(self) -> None:
        assert request_duration_seconds._labelnames == ("method", "path", "status")

    def test_request_duration_can_observe(self) -> None:
        request_duration_seconds.labels(method="GET", path="/api/chat/{chat_id}", status="200").observe(0.1)


class TestGenerationMetrics:
    def test_generation_labels(self) -> None:
        assert generations_total._labelnames == ("model", "outcome")
        assert generation_duration_seconds._labelnames == ("model",)
        assert time_to_first_event_seconds._labelnames == ("model",)
        assert tokens_total._labelnames == ("model", "type")

    def test_active_gauge_moves(self) -> None:
        before = REGISTRY.get_sample_value(f"{NAMESPACE}_generations_active") or 0.0
        generations_active.inc()
        assert REGISTRY.get_sample_value(f"{NAMESPACE}_generations_active") == before + 1
        generations_active.dec()
        assert REGISTRY.get_sample_value(f"{NAMESPACE}_generations_active") == before

    def test_tool_calls_counter(self) -> None:
        labels = {"tool_name": "getWeather", "status": "approval"}
        before = REGISTRY.get_sample_value(f"{NAMESPACE}_tool_calls_total", labels) or 0.0
        tool_calls_total.labels(**labels).inc()
        assert REGISTRY.get_sample_value(f"{NAMESPACE}_tool_calls_total", labels) == before + 1


class TestStreamMetrics:
    def test_resume_outcomes(self) -> None:
        for outcome in ("live", "append", "empty", "unavailable"):
            stream_resumes_total.labels(outcome=outcome).inc(0)

    def test_dropped_frames_counter(self) -> None:
        before = REGISTRY.get_sample_value(f"{NAMESPACE}_sse_frames_dropped_total") or 0.0
        sse_frames_dropped_total.inc()
        assert REGISTRY.get_sample_value(f"{NAMESPACE}_sse_frames_dropped_total") == before + 1
