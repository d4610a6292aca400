"""Trial measurements and the statistics computed over a batch of them.

``aggregate`` reduces one implementation's trial batch to an
``AggregatedStatistics``. The median is always a real observed trial (upper
median, no interpolation) because its output buffer is later reused for
display and verification. ``sanitize_statistics`` / ``inflate_statistics``
convert to and from the JSON form persisted in the history store; only the
output buffer is dropped on the way out.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from utils import ImageBuffer


class EmptyBatchError(ValueError):
    """Raised when statistics are requested for zero trials."""


@dataclass
class TrialMeasurement:
    execution_time_ms: float
    throughput_mpx_per_sec: Optional[float]
    is_first_trial: bool
    image_dims: Dict[str, float]
    output_buffer: Optional[ImageBuffer] = None
    memory_delta_mb: Optional[float] = None
    output_digest: Optional[str] = None

    def release_buffer(self) -> None:
        self.output_buffer = None


@dataclass
class MeanValues:
    execution_time_ms: float
    throughput_mpx_per_sec: Optional[float]


@dataclass
class AggregatedStatistics:
    median: TrialMeasurement
    mean: MeanValues
    std_dev_ms: float
    coefficient_of_variation_pct: float
    min: TrialMeasurement
    max: TrialMeasurement
    count: int
    first_trial: Optional[TrialMeasurement] = None
    all_trials: List[TrialMeasurement] = field(default_factory=list)

    @property
    def cold_start_overhead_ms(self) -> Optional[float]:
        if self.first_trial is None:
            return None
        return self.first_trial.execution_time_ms - self.median.execution_time_ms

    @property
    def cold_start_overhead_pct(self) -> Optional[float]:
        overhead = self.cold_start_overhead_ms
        if overhead is None:
            return None
        if self.median.execution_time_ms == 0:
            return float('nan')
        return overhead / self.median.execution_time_ms * 100.0

    def release_buffers(self) -> None:
        for m in (self.median, self.min, self.max, self.first_trial):
            if m is not None:
                m.release_buffer()
        for m in self.all_trials:
            m.release_buffer()


def calculate_throughput(megapixels: float, execution_time_ms: float) -> Optional[float]:
    """Megapixels per second, or None when the elapsed time is not positive."""
    if execution_time_ms is None or execution_time_ms <= 0:
        return None
    return megapixels / (execution_time_ms / 1000.0)


def coefficient_of_variation(std_dev: float, mean: float) -> float:
    if mean == 0 or math.isnan(mean):
        return float('nan')
    return 100.0 * std_dev / mean


def aggregate(trials: List[TrialMeasurement]) -> AggregatedStatistics:
    """Reduce a trial batch to summary statistics.

    Raises:
        EmptyBatchError: when ``trials`` is empty
    """
    if not trials:
        raise EmptyBatchError('cannot aggregate an empty trial batch')

    n = len(trials)
    ordered = sorted(trials, key=lambda t: t.execution_time_ms)
    median = ordered[n // 2]

    times = [t.execution_time_ms for t in trials]
    mean_ms = sum(times) / n
    variance = sum((x - mean_ms) ** 2 for x in times) / n
    std_dev = math.sqrt(variance)

    rates = [t.throughput_mpx_per_sec for t in trials if t.throughput_mpx_per_sec is not None]
    mean_rate = sum(rates) / len(rates) if rates else None

    first = next((t for t in trials if t.is_first_trial), None)

    return AggregatedStatistics(
        median=median,
        mean=MeanValues(execution_time_ms=mean_ms, throughput_mpx_per_sec=mean_rate),
        std_dev_ms=std_dev,
        coefficient_of_variation_pct=coefficient_of_variation(std_dev, mean_ms),
        min=ordered[0],
        max=ordered[-1],
        count=n,
        first_trial=first,
        all_trials=list(trials),
    )


def sanitize_measurement(m: TrialMeasurement) -> Dict[str, Any]:
    return {
        'execution_time_ms': m.execution_time_ms,
        'throughput_mpx_per_sec': m.throughput_mpx_per_sec,
        'is_first_trial': m.is_first_trial,
        'image_dims': dict(m.image_dims),
        'memory_delta_mb': m.memory_delta_mb,
        'output_digest': m.output_digest,
    }


def inflate_measurement(d: Dict[str, Any]) -> TrialMeasurement:
    return TrialMeasurement(
        execution_time_ms=d['execution_time_ms'],
        throughput_mpx_per_sec=d.get('throughput_mpx_per_sec'),
        is_first_trial=bool(d.get('is_first_trial', False)),
        image_dims=dict(d.get('image_dims') or {}),
        memory_delta_mb=d.get('memory_delta_mb'),
        output_digest=d.get('output_digest'),
    )


def sanitize_statistics(stats: AggregatedStatistics) -> Dict[str, Any]:
    """JSON-ready projection of ``stats`` with every output buffer stripped."""
    return {
        'median': sanitize_measurement(stats.median),
        'mean': {
            'execution_time_ms': stats.mean.execution_time_ms,
            'throughput_mpx_per_sec': stats.mean.throughput_mpx_per_sec,
        },
        'std_dev_ms': stats.std_dev_ms,
        'coefficient_of_variation_pct': stats.coefficient_of_variation_pct,
        'min': sanitize_measurement(stats.min),
        'max': sanitize_measurement(stats.max),
        'count': stats.count,
        'first_trial': sanitize_measurement(stats.first_trial) if stats.first_trial is not None else None,
        'all_trials': [sanitize_measurement(t) for t in stats.all_trials],
    }


def inflate_statistics(d: Dict[str, Any]) -> AggregatedStatistics:
    """Rebuild statistics from their sanitized form; buffers come back as None."""
    mean = d['mean']
    first = d.get('first_trial')
    return AggregatedStatistics(
        median=inflate_measurement(d['median']),
        mean=MeanValues(execution_time_ms=mean['execution_time_ms'], throughput_mpx_per_sec=mean.get('throughput_mpx_per_sec')),
        std_dev_ms=d['std_dev_ms'],
        coefficient_of_variation_pct=d['coefficient_of_variation_pct'],
        min=inflate_measurement(d['min']),
        max=inflate_measurement(d['max']),
        count=int(d['count']),
        first_trial=inflate_measurement(first) if first is not None else None,
        all_trials=[inflate_measurement(t) for t in d.get('all_trials', [])],
    )


def summarize(stats: AggregatedStatistics) -> Dict[str, Optional[float]]:
    """Flat scalar summary used by reports and CSV exports."""
    return {
        'median_ms': stats.median.execution_time_ms,
        'mean_ms': stats.mean.execution_time_ms,
        'min_ms': stats.min.execution_time_ms,
        'max_ms': stats.max.execution_time_ms,
        'std_dev_ms': stats.std_dev_ms,
        'cv_pct': stats.coefficient_of_variation_pct,
        'median_mpx_per_sec': stats.median.throughput_mpx_per_sec,
        'mean_mpx_per_sec': stats.mean.throughput_mpx_per_sec,
        'first_trial_ms': stats.first_trial.execution_time_ms if stats.first_trial is not None else None,
        'cold_start_overhead_ms': stats.cold_start_overhead_ms,
        'count': stats.count,
    }
