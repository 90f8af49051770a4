"""Counter delta tracker.

Turns the cumulative counters of one scrape into per-cycle deltas against the
previous generation of raw totals. The previous totals are a single versioned
record; replacing it is a compare-and-swap so that two overlapping cycles can
never both consume the same generation.
"""

import logging
import math
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

from relay_metrics.lib.clock import Clock, utc_now
from relay_metrics.lib.errors import StaleSnapshotError
from relay_metrics.lib.kv_store import KeyValueStore
from relay_metrics.lib.metrics import record_counter_reset, record_snapshot_generation
from relay_metrics.models.samples import (
    COUNTER_NAMES,
    GAUGE_NAMES,
    CounterReading,
    ProcessedSnapshot,
    RawSample,
)

logger = logging.getLogger(__name__)

PREVIOUS_TOTALS_KEY = 'metrics:previous_totals'


class CounterDeltaTracker:
    """Computes gauges and non-negative counter deltas for each cycle."""

    def __init__(
        self,
        store: KeyValueStore,
        label_filter: Optional[Dict[str, str]] = None,
        ttl_seconds: int = 3600,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.label_filter = dict(label_filter) if label_filter is not None else {'port': '6001'}
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def select(self, samples: Iterable[RawSample]) -> Tuple[Dict[str, float], Dict[str, float]]:
        """Pick allow-listed samples passing the label filter.

        Several matching series of one name are summed.

        Returns:
            (gauges, counter_totals)
        """
        gauges: Dict[str, float] = {}
        totals: Dict[str, float] = {}
        for sample in samples:
            if sample.name in COUNTER_NAMES:
                target = totals
            elif sample.name in GAUGE_NAMES:
                target = gauges
            else:
                continue
            if not sample.matches(self.label_filter):
                continue
            if not math.isfinite(sample.value):
                logger.debug(f'Ignoring non-finite value for {sample.name}')
                continue
            target[sample.name] = target.get(sample.name, 0.0) + sample.value
        return gauges, totals

    def previous_totals(self) -> Optional[Dict]:
        """Return the stored `{generation, totals, captured_at}` record, if any."""
        return self.store.get(PREVIOUS_TOTALS_KEY)

    def process(
        self,
        samples: Iterable[RawSample],
        captured_at: Optional[datetime] = None,
        usage: Optional[Dict] = None,
    ) -> ProcessedSnapshot:
        """Build this cycle's snapshot and advance the previous-totals generation.

        Args:
            samples: Parsed samples of one scrape
            captured_at: Fetch time (defaults to now)
            usage: Optional /usage payload merged verbatim

        Returns:
            ProcessedSnapshot for this cycle

        Raises:
            StaleSnapshotError: If another cycle advanced the generation meanwhile;
                nothing is written in that case
        """
        captured_at = captured_at or self.clock()
        gauges, totals = self.select(samples)

        entry = self.store.get_versioned(PREVIOUS_TOTALS_KEY)
        previous = entry.value if entry is not None else None
        previous_totals: Dict[str, float] = previous['totals'] if previous else {}
        previous_generation = previous['generation'] if previous else 0
        generation = previous_generation + 1

        counters: Dict[str, CounterReading] = {}
        for name, total in totals.items():
            prior = previous_totals.get(name)
            reset = prior is not None and total < prior
            delta = max(0.0, total - (prior or 0.0))
            counters[name] = CounterReading(total=total, delta_since_last=delta, reset_detected=reset)
            if reset:
                logger.warning(
                    f'Counter reset detected for {name}: {prior} -> {total}',
                    extra={'metric': name, 'previous_total': prior, 'current_total': total,
                           'generation': generation},
                )
                record_counter_reset(name)

        record = {
            'generation': generation,
            'totals': {**previous_totals, **totals},
            'captured_at': captured_at.isoformat(),
        }
        swapped = self.store.compare_and_swap(
            PREVIOUS_TOTALS_KEY,
            entry.version if entry is not None else None,
            record,
            self.ttl_seconds,
        )
        if not swapped:
            logger.warning(
                f'Lost previous-totals swap at generation {previous_generation}',
                extra={'generation': previous_generation},
            )
            raise StaleSnapshotError(previous_generation)

        record_snapshot_generation(generation)
        return ProcessedSnapshot(
            gauges=gauges,
            counters=counters,
            captured_at=captured_at,
            generation=generation,
            usage=usage,
        )
