"""
Prometheus metrics for the Dojo library API.

Metrics are exposed at the /metrics endpoint in Prometheus text format.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("dojo", "Dojo library application information")

# =============================================================================
# API Metrics
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "dojo_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "dojo_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# =============================================================================
# Library Metrics
# =============================================================================

LIBRARY_QUERIES_TOTAL = Counter(
    "dojo_library_queries_total",
    "Total library listing queries",
    ["scope", "state"],  # state: ready, degraded
)

LIBRARY_RESULTS = Histogram(
    "dojo_library_results",
    "Number of videos matching a library query before pagination",
    buckets=[0, 1, 5, 10, 25, 50, 100, 250, 500, 1000],
)

VIDEO_VIEWS_TOTAL = Counter(
    "dojo_video_views_total",
    "Total recorded video views",
)

FAVORITE_CHANGES_TOTAL = Counter(
    "dojo_favorite_changes_total",
    "Total favorite additions and removals",
    ["action"],  # add, remove
)

# =============================================================================
# Catalog Fetch Metrics
# =============================================================================

CATALOG_FETCHES_TOTAL = Counter(
    "dojo_catalog_fetches_total",
    "Catalog snapshot fetches by where the data came from",
    ["source"],  # live, cache, stale, empty
)

CATALOG_FETCH_DURATION_SECONDS = Histogram(
    "dojo_catalog_fetch_duration_seconds",
    "Duration of live catalog fetches in seconds",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

CATALOG_CIRCUIT_BREAKER_STATE = Gauge(
    "dojo_catalog_circuit_breaker_state",
    "Catalog circuit breaker state (0=closed, 1=open)",
)

# =============================================================================
# Database Metrics
# =============================================================================

DB_QUERY_RETRIES_TOTAL = Counter(
    "dojo_db_query_retries_total",
    "Total database query retries due to transient errors",
)

DB_QUERY_DURATION_SECONDS = Histogram(
    "dojo_db_query_duration_seconds",
    "Database query duration in seconds",
    ["operation"],  # fetch_all, fetch_one, execute
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "dojo"})
