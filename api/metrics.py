"""
Prometheus metrics for the thumbnail pipeline.

Metrics are exposed at the /metrics endpoint in Prometheus text format.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("thumbpick", "thumbpick application information")

# =============================================================================
# API Metrics
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "thumbpick_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "thumbpick_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0],
)

SELECTION_OVERRIDES_TOTAL = Counter(
    "thumbpick_selection_overrides_total",
    "Total manual selection overrides",
    ["result"],  # success, not_found
)

# =============================================================================
# Generation Metrics
# =============================================================================

GENERATION_RUNS_TOTAL = Counter(
    "thumbpick_generation_runs_total",
    "Total generation runs",
    ["result"],  # completed, video_not_found, source_unavailable, error
)

GENERATION_RUNS_ACTIVE = Gauge(
    "thumbpick_generation_runs_active",
    "Number of generation runs in progress",
)

GENERATION_RUN_DURATION_SECONDS = Histogram(
    "thumbpick_generation_run_duration_seconds",
    "Generation run duration in seconds",
    buckets=[1, 2.5, 5, 10, 20, 30, 60, 120, 300],
)

GENERATION_DEADLINE_EXCEEDED_TOTAL = Counter(
    "thumbpick_generation_deadline_exceeded_total",
    "Generation runs that hit their deadline with candidates still in flight",
)

CANDIDATES_TOTAL = Counter(
    "thumbpick_candidates_total",
    "Candidates by terminal state",
    ["state"],  # persisted, skipped, failed
)

AI_SCORING_TOTAL = Counter(
    "thumbpick_ai_scoring_total",
    "AI scoring outcomes per candidate",
    ["result"],  # scored, unavailable
)

UPLOADS_TOTAL = Counter(
    "thumbpick_uploads_total",
    "Frame uploads",
    ["result"],  # uploaded, failed, deferred
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "thumbpick"})
