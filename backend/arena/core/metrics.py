"""
Sandbox Arena - Prometheus metrics
Exposed by the /metrics mount in main.py
"""

from prometheus_client import Counter, Gauge

CONTAINERS_LAUNCHED = Counter(
    "arena_containers_launched_total",
    "Sandbox containers created and started",
)

CONTAINERS_STOPPED = Counter(
    "arena_containers_stopped_total",
    "Sandbox containers stopped",
    ["reason"],
)

SIMULATED_FALLBACKS = Counter(
    "arena_simulated_fallbacks_total",
    "Terminal sessions served by the simulated shell",
    ["stage"],
)

ACTIVE_SESSIONS = Gauge(
    "arena_terminal_sessions_active",
    "Live terminal sessions",
)

ACTIVE_STREAMS = Gauge(
    "arena_terminal_streams_active",
    "Open terminal WebSocket bridges",
)

MATCHES_CREATED = Counter(
    "arena_duel_matches_created_total",
    "Duel matches created",
    ["source"],
)
