"""
llama-session :: Prometheus Metrics

Optional per-session monitoring. Disabled when prometheus_client is
not installed. Each session registers into its own CollectorRegistry,
so several sessions in one process do not collide.

Metrics:
  - llama_session_requests_total{outcome}: finished requests by finish reason
  - llama_session_tokens_generated_total: total tokens generated
  - llama_session_tokens_prompt_total: total prompt tokens processed
  - llama_session_request_duration_seconds: request latency histogram
  - llama_session_time_per_token_seconds: decode time per output token
  - llama_session_kv_cache_usage_ratio: positions in use / n_ctx

INL - 2025
"""

import time
from typing import Optional

try:
    from prometheus_client import CollectorRegistry, Counter, Histogram, Gauge, Info, start_http_server
    HAS_PROMETHEUS = True
except ImportError:
    HAS_PROMETHEUS = False


class SessionMetrics:
    """Prometheus metrics for one model session."""

    def __init__(self, model_name: str = "", port: Optional[int] = None):
        self.enabled = HAS_PROMETHEUS
        self.registry = None
        if not self.enabled:
            return

        self.registry = CollectorRegistry()

        # Info
        self.model_info = Info("llama_session_model", "Model information", registry=self.registry)
        self.model_info.info({"name": model_name, "engine": "llama-session"})

        # Counters
        self.requests_total = Counter(
            "llama_session_requests_total", "Finished requests", ["outcome"], registry=self.registry
        )
        self.tokens_generated = Counter(
            "llama_session_tokens_generated_total", "Total tokens generated", registry=self.registry
        )
        self.tokens_prompt = Counter(
            "llama_session_tokens_prompt_total", "Total prompt tokens processed", registry=self.registry
        )

        # Histograms
        self.request_duration = Histogram(
            "llama_session_request_duration_seconds",
            "Request latency",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )
        self.time_per_token = Histogram(
            "llama_session_time_per_token_seconds",
            "Time per output token",
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1],
            registry=self.registry,
        )

        # Gauges
        self.kv_cache_usage = Gauge(
            "llama_session_kv_cache_usage_ratio", "KV cache positions in use (0-1)", registry=self.registry
        )

        if port is not None:
            start_http_server(port, registry=self.registry)

    def on_request_start(self) -> float:
        return time.perf_counter()

    def on_request_end(self, start_time: float, prompt_tokens: int, output_tokens: int,
                       outcome: str, decode_ms: float = 0.0):
        """Called when a request reaches a terminal state."""
        if not self.enabled:
            return
        elapsed = time.perf_counter() - start_time
        self.requests_total.labels(outcome=outcome).inc()
        self.request_duration.observe(elapsed)
        self.tokens_generated.inc(output_tokens)
        self.tokens_prompt.inc(prompt_tokens)
        if output_tokens > 0:
            self.time_per_token.observe(decode_ms / 1000.0 / output_tokens)

    def update_kv_usage(self, used: int, total: int):
        if self.enabled and total > 0:
            self.kv_cache_usage.set(used / total)
