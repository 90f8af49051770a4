"""Derived metrics analyzer.

Computes rates, ratios and coarse traffic patterns from the current and
previous processed snapshots. Rates use the nominal scrape interval rather
than the wall-clock gap between the two snapshots.
"""

import math
from typing import Literal, Optional

from pydantic import BaseModel, Field

from relay_metrics.lib.config import AnalyzerThresholds
from relay_metrics.models.samples import ProcessedSnapshot

NEW_CONNECTIONS = 'soketi_new_connections_total'
DISCONNECTIONS = 'soketi_new_disconnections_total'


class ConnectionEvents(BaseModel):
    connections_per_minute: float = 0.0
    disconnections_per_minute: float = 0.0


class UploadPatterns(BaseModel):
    trend: Literal['increasing', 'decreasing', 'stable'] = 'stable'
    peak_detected: bool = False
    concurrent_uploads_estimate: int = Field(default=0, ge=0)
    data_intensity: Literal['low', 'medium', 'high'] = 'low'


class DerivedMetrics(BaseModel):
    active_sessions: float = 0
    total_bytes_transferred: float = 0
    upload_ratio: float = 0.0
    data_transfer_rate: float = 0.0
    connection_events: ConnectionEvents = Field(default_factory=ConnectionEvents)
    upload_patterns: UploadPatterns = Field(default_factory=UploadPatterns)


class DerivedMetricsAnalyzer:
    """Stateless analyzer; all heuristics come from AnalyzerThresholds."""

    def __init__(self, interval_seconds: float = 10.0, thresholds: Optional[AnalyzerThresholds] = None):
        if interval_seconds <= 0:
            raise ValueError('interval_seconds must be positive')
        self.interval_seconds = interval_seconds
        self.thresholds = thresholds or AnalyzerThresholds()

    def analyze(self, current: ProcessedSnapshot, previous: Optional[ProcessedSnapshot]) -> DerivedMetrics:
        received = current.bytes_received
        sent = current.bytes_sent
        result = DerivedMetrics(
            active_sessions=current.current_connections,
            total_bytes_transferred=received + sent,
            upload_ratio=self.upload_ratio(received, sent),
        )
        if previous is None:
            return result

        result.data_transfer_rate = self.bytes_per_second(current, previous)
        result.connection_events = ConnectionEvents(
            connections_per_minute=self.per_minute(current, previous, NEW_CONNECTIONS),
            disconnections_per_minute=self.per_minute(current, previous, DISCONNECTIONS),
        )
        result.upload_patterns = self.patterns(current, previous, result.data_transfer_rate)
        return result

    @staticmethod
    def upload_ratio(received: float, sent: float) -> float:
        """Share of received bytes in all transferred bytes, as a percentage."""
        if received <= 0:
            return 0.0
        return round(received / max(received + sent, 1) * 100, 2)

    def bytes_per_second(self, current: ProcessedSnapshot, previous: ProcessedSnapshot) -> float:
        current_bytes = current.bytes_received + current.bytes_sent
        previous_bytes = previous.bytes_received + previous.bytes_sent
        return round(max(0.0, current_bytes - previous_bytes) / self.interval_seconds, 2)

    def per_minute(self, current: ProcessedSnapshot, previous: ProcessedSnapshot, counter: str) -> float:
        diff = max(0.0, current.counter_total(counter) - previous.counter_total(counter))
        return round(diff / self.interval_seconds * 60, 2)

    def patterns(
        self,
        current: ProcessedSnapshot,
        previous: ProcessedSnapshot,
        bytes_per_second: float,
    ) -> UploadPatterns:
        t = self.thresholds
        now_connections = current.current_connections
        before_connections = previous.current_connections

        # rounded first so 30 * 0.7 floors to 21, not 20
        estimate = math.floor(round(now_connections * t.upload_session_share, 6))
        patterns = UploadPatterns(concurrent_uploads_estimate=max(0, estimate))
        if now_connections > before_connections * t.trend_increase_factor:
            patterns.trend = 'increasing'
            patterns.peak_detected = now_connections > t.peak_connection_threshold
        elif now_connections < before_connections * t.trend_decrease_factor:
            patterns.trend = 'decreasing'

        if bytes_per_second > t.high_intensity_bytes_per_second:
            patterns.data_intensity = 'high'
        elif bytes_per_second > t.medium_intensity_bytes_per_second:
            patterns.data_intensity = 'medium'
        return patterns
