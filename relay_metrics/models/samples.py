"""Typed records produced by the scrape pipeline.

RawSample is the parser's output; ProcessedSnapshot is the per-cycle result
of the counter delta tracker. Which metric names are tracked, and whether
each is a gauge or a counter, is decided by METRIC_CATALOG rather than by
`# TYPE` lines in the payload.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from relay_metrics.lib.clock import epoch_seconds


class MetricKind(str, Enum):
    GAUGE = 'gauge'
    COUNTER = 'counter'


@dataclass(frozen=True)
class RawSample:
    """One exposition line: `name{labels} value [timestamp]`."""

    name: str
    value: float
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: Optional[int] = None

    def matches(self, label_filter: Dict[str, str]) -> bool:
        """True unless the sample carries a filtered label with a different value.

        Unlabelled series (e.g. a bare `soketi_connected 42`) are accepted.
        """
        return all(self.labels.get(k, v) == v for k, v in label_filter.items())


@dataclass(frozen=True)
class MetricSpec:
    kind: MetricKind
    group: str
    total_field: str
    delta_field: Optional[str] = None


METRIC_CATALOG: Dict[str, MetricSpec] = {
    'soketi_connected': MetricSpec(MetricKind.GAUGE, 'connections', 'current'),
    'soketi_new_connections_total': MetricSpec(
        MetricKind.COUNTER, 'connections', 'total_new', 'new_since_last_scrape'
    ),
    'soketi_new_disconnections_total': MetricSpec(
        MetricKind.COUNTER, 'connections', 'total_disconnections', 'disconnections_since_last_scrape'
    ),
    'soketi_socket_received_bytes': MetricSpec(
        MetricKind.COUNTER, 'data_transfer', 'bytes_received', 'bytes_received_since_last_scrape'
    ),
    'soketi_socket_transmitted_bytes': MetricSpec(
        MetricKind.COUNTER, 'data_transfer', 'bytes_sent', 'bytes_sent_since_last_scrape'
    ),
    'soketi_ws_messages_sent_total': MetricSpec(
        MetricKind.COUNTER, 'websockets', 'messages_sent', 'messages_sent_since_last_scrape'
    ),
    'soketi_ws_messages_received_total': MetricSpec(
        MetricKind.COUNTER, 'websockets', 'messages_received', 'messages_received_since_last_scrape'
    ),
    'soketi_nodejs_heap_size_used_bytes': MetricSpec(MetricKind.GAUGE, 'system', 'memory_usage'),
    'soketi_process_cpu_seconds_total': MetricSpec(MetricKind.GAUGE, 'system', 'cpu_usage'),
    'soketi_process_start_time_seconds': MetricSpec(MetricKind.GAUGE, 'system', 'start_time'),
}

COUNTER_NAMES = frozenset(n for n, s in METRIC_CATALOG.items() if s.kind is MetricKind.COUNTER)
GAUGE_NAMES = frozenset(n for n, s in METRIC_CATALOG.items() if s.kind is MetricKind.GAUGE)


def _number(value: float) -> Any:
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return value


class CounterReading(BaseModel):
    total: float = 0.0
    delta_since_last: float = Field(default=0.0, ge=0)
    reset_detected: bool = False


class ProcessedSnapshot(BaseModel):
    """Gauges plus per-counter deltas for one scrape cycle.

    Attributes:
        gauges: Gauge name -> current value
        counters: Counter name -> total and non-negative delta since the previous cycle
        captured_at: When the cycle fetched the payload (naive UTC)
        generation: Position in the sequence of processed cycles
        usage: Optional JSON payload from the source's /usage endpoint, verbatim
    """

    gauges: Dict[str, float] = Field(default_factory=dict)
    counters: Dict[str, CounterReading] = Field(default_factory=dict)
    captured_at: datetime
    generation: int = Field(default=1, ge=1)
    usage: Optional[Dict[str, Any]] = None

    def gauge(self, name: str, default: float = 0.0) -> float:
        return self.gauges.get(name, default)

    def counter_total(self, name: str) -> float:
        reading = self.counters.get(name)
        return reading.total if reading else 0.0

    def counter_delta(self, name: str) -> float:
        reading = self.counters.get(name)
        return reading.delta_since_last if reading else 0.0

    @property
    def current_connections(self) -> float:
        return self.gauge('soketi_connected')

    @property
    def bytes_received(self) -> float:
        return self.counter_total('soketi_socket_received_bytes')

    @property
    def bytes_sent(self) -> float:
        return self.counter_total('soketi_socket_transmitted_bytes')

    @property
    def resets(self) -> list:
        return sorted(name for name, r in self.counters.items() if r.reset_detected)

    def summary(self) -> Dict[str, Any]:
        """Group values the way dashboard readers consume them."""
        grouped: Dict[str, Dict[str, Any]] = {
            'connections': {},
            'data_transfer': {},
            'websockets': {},
            'system': {},
        }
        for name, spec in METRIC_CATALOG.items():
            section = grouped[spec.group]
            if spec.kind is MetricKind.COUNTER:
                section[spec.total_field] = _number(self.counter_total(name))
                section[spec.delta_field] = _number(self.counter_delta(name))
            else:
                section[spec.total_field] = _number(self.gauge(name))

        start_time = grouped['system'].pop('start_time', 0)
        grouped['system']['uptime'] = (
            max(0, epoch_seconds(self.captured_at) - int(start_time)) if start_time else 0
        )

        result: Dict[str, Any] = dict(grouped)
        if self.usage is not None:
            result['usage'] = self.usage
        result['scraped_at'] = self.captured_at.isoformat()
        result['scraped_timestamp'] = epoch_seconds(self.captured_at)
        result['generation'] = self.generation
        result['counter_resets'] = self.resets
        return result
