"""Prometheus metric definitions for the radio engine."""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

tracks_played_total = Counter(
    "guildradio_tracks_played_total",
    "Total tracks started across all guilds",
)
playback_errors_total = Counter(
    "guildradio_playback_errors_total",
    "Total failed playback attempts",
)
playback_retries_total = Counter(
    "guildradio_playback_retries_total",
    "Total playback retries after a resolution failure",
)
tracks_blacklisted_total = Counter(
    "guildradio_tracks_blacklisted_total",
    "Tracks abandoned after exhausting retries",
)
radio_selections_total = Counter(
    "guildradio_radio_selections_total",
    "Tracks chosen by the selector",
    ["policy"],
)
discovery_fallbacks_total = Counter(
    "guildradio_discovery_fallbacks_total",
    "Discovery selections that fell back to the radio policy",
)
stats_cache_hits_total = Counter(
    "guildradio_stats_cache_hits_total",
    "Listener library queries served from cache",
)
stats_cache_misses_total = Counter(
    "guildradio_stats_cache_misses_total",
    "Listener library queries computed from the store",
)
active_sessions = Gauge(
    "guildradio_active_sessions",
    "Number of connected playback sessions",
)
queue_size = Gauge(
    "guildradio_queue_size",
    "Current explicit queue size",
    ["guild_id"],
)
resolve_seconds = Histogram(
    "guildradio_resolve_seconds",
    "Time to resolve a track into a playable stream",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 30.0],
)


def start_metrics_server(port: int = 9090) -> None:
    start_http_server(port)
