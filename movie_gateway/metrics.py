from __future__ import annotations

from litestar.plugins.prometheus import PrometheusConfig
from prometheus_client import Counter

PREFIX = "movie_gateway"

prometheus_config = PrometheusConfig(app_name=PREFIX, prefix=PREFIX)

STREAM_EVENTS = Counter(
    f"{PREFIX}_stream_events_total",
    "Stream lifecycle events",
    ["event"],
)
