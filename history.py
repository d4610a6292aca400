"""Rolling benchmark history and image-size correlation data.

``HistoryStore`` keeps, per scenario, the last N comparison runs in two forms:
an in-memory list whose freshest complete run may still hold the median output
buffers, and a sanitized JSON record in session-scoped storage that survives a
process restart within the same session. ``ImageSizeStore`` keeps the
longer-lived megapixel / speedup samples in durable storage.

Persistence is best effort. Read and write failures are logged and treated as
"no persisted history"; the in-memory state stays authoritative.
"""
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional
import json
import logging
import os
import re
import tempfile
import time

from metrics import AggregatedStatistics, sanitize_statistics, inflate_statistics
from scenarios import Implementation, Scenario

logger = logging.getLogger(__name__)

SIZE_MERGE_DISTANCE = 0.05
MIN_INSIGHT_SAMPLES = 3


class StorageError(RuntimeError):
    pass


class JsonFileStorage:
    """Key/value store with one JSON document per key inside ``directory``."""

    def __init__(self, directory: str):
        self.directory = directory

    def _path(self, key: str) -> str:
        safe = re.sub(r'[^A-Za-z0-9_.-]', '_', key)
        return os.path.join(self.directory, safe + '.json')

    def read(self, key: str) -> Any:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def write(self, key: str, value: Any) -> None:
        os.makedirs(self.directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix='.tmp_', dir=self.directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(value, f)
            os.replace(tmp, self._path(key))
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def remove(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass


@dataclass
class ScenarioRun:
    reference: Optional[AggregatedStatistics] = None
    optimized: Optional[AggregatedStatistics] = None

    def get(self, implementation) -> Optional[AggregatedStatistics]:
        return getattr(self, Implementation(implementation).value)

    def set(self, implementation, stats: AggregatedStatistics) -> None:
        setattr(self, Implementation(implementation).value, stats)

    def is_complete(self) -> bool:
        return self.reference is not None and self.optimized is not None

    def release_buffers(self) -> None:
        for stats in (self.reference, self.optimized):
            if stats is not None:
                stats.release_buffers()

    def sanitize(self) -> Dict[str, Any]:
        out = {}
        for impl in Implementation:
            stats = self.get(impl)
            if stats is not None:
                out[impl.value] = sanitize_statistics(stats)
        return out

    @classmethod
    def inflate(cls, record: Dict[str, Any]) -> 'ScenarioRun':
        run = cls()
        for impl in Implementation:
            if record.get(impl.value) is not None:
                run.set(impl, inflate_statistics(record[impl.value]))
        return run


class HistoryStore:
    def __init__(self, storage: JsonFileStorage, max_items: int = 10, key_prefix: str = 'results_'):
        if max_items < 1:
            raise ValueError(f'max_items must be >= 1, got {max_items}')
        self.storage = storage
        self.max_items = max_items
        self.key_prefix = key_prefix
        self._runs: Dict[str, List[ScenarioRun]] = {}
        self._clear_listeners: List[Callable[[str], None]] = []

    def _storage_key(self, scenario: str) -> str:
        return f'{self.key_prefix}{scenario}'

    def _load(self, scenario: str) -> List[ScenarioRun]:
        try:
            records = self.storage.read(self._storage_key(scenario))
        except (OSError, ValueError) as e:
            logger.warning('could not read persisted history for %s: %s', scenario, e)
            return []
        if records is None:
            return []
        if not isinstance(records, list):
            logger.warning('ignoring persisted history for %s: expected a list', scenario)
            return []
        try:
            return [ScenarioRun.inflate(r) for r in records]
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.warning('ignoring corrupt persisted history for %s: %s', scenario, e)
            return []

    def _persist(self, scenario: str, runs: List[ScenarioRun]) -> None:
        records = [run.sanitize() for run in runs][-self.max_items:]
        try:
            self.storage.write(self._storage_key(scenario), records)
        except (OSError, TypeError, ValueError) as e:
            logger.warning('could not persist history for %s: %s', scenario, e)

    def _runs_for(self, scenario: str) -> List[ScenarioRun]:
        if scenario not in self._runs:
            self._runs[scenario] = self._load(scenario)[-self.max_items:]
        return self._runs[scenario]

    def record(self, scenario, implementation, stats: AggregatedStatistics) -> ScenarioRun:
        """Add one side's statistics to the scenario's current run.

        The last run is filled in when it is still waiting for this side.
        Otherwise a new run is started; a half-run that already holds this
        side is stale and gets replaced, so an in-progress run is always the
        last element.
        """
        key = Scenario(scenario).value
        impl = Implementation(implementation)
        runs = self._runs_for(key)

        current = runs[-1] if runs else None
        if current is not None and not current.is_complete() and current.get(impl) is not None:
            logger.debug('discarding stale in-progress %s run', key)
            runs.pop()
            current = None
        if current is None or current.is_complete():
            current = ScenarioRun()
            runs.append(current)
        current.set(impl, stats)
        self._commit(key, runs)
        return current

    def record_pair(self, scenario, reference: AggregatedStatistics, optimized: AggregatedStatistics) -> ScenarioRun:
        """Append both sides of one comparison as a single complete run.

        A trailing in-progress run belongs to an earlier, unfinished
        comparison and is discarded rather than paired with these results.
        """
        key = Scenario(scenario).value
        runs = self._runs_for(key)
        if runs and not runs[-1].is_complete():
            logger.debug('discarding stale in-progress %s run', key)
            runs.pop()
        current = ScenarioRun(reference=reference, optimized=optimized)
        runs.append(current)
        self._commit(key, runs)
        return current

    def _commit(self, key: str, runs: List[ScenarioRun]) -> None:
        if runs[-1].is_complete():
            for run in runs[:-1]:
                run.release_buffers()
        if len(runs) > self.max_items:
            del runs[:-self.max_items]
        self._persist(key, runs)

    def read(self, scenario) -> List[ScenarioRun]:
        return list(self._runs_for(Scenario(scenario).value))

    def complete_runs(self, scenario) -> List[ScenarioRun]:
        return [run for run in self.read(scenario) if run.is_complete()]

    def latest_complete_run(self, scenario) -> Optional[ScenarioRun]:
        runs = self.complete_runs(scenario)
        return runs[-1] if runs else None

    def add_clear_listener(self, callback: Callable[[str], None]) -> None:
        self._clear_listeners.append(callback)

    def remove_clear_listener(self, callback: Callable[[str], None]) -> None:
        if callback in self._clear_listeners:
            self._clear_listeners.remove(callback)

    def clear(self, scenario) -> None:
        """Drop the persisted record, the in-memory runs and dependent caches together.

        Raises:
            StorageError: when the persisted record cannot be removed; nothing
                is cleared in that case
        """
        key = Scenario(scenario).value
        try:
            self.storage.remove(self._storage_key(key))
        except OSError as e:
            logger.error('could not clear persisted history for %s: %s', key, e)
            raise StorageError(f'Failed to clear history for {key}: {e}') from e
        self._runs[key] = []
        for listener in list(self._clear_listeners):
            listener(key)


@dataclass
class ImageSizeSample:
    megapixels: float
    reference_exec_ms: float
    optimized_exec_ms: float
    speedup_ratio: float
    timestamp: float

    @property
    def informativeness(self) -> float:
        return abs(self.speedup_ratio - 1.0)

    @property
    def winner(self) -> Implementation:
        return Implementation.OPTIMIZED if self.speedup_ratio > 1 else Implementation.REFERENCE

    @classmethod
    def from_medians(cls, megapixels: float, reference_ms: float, optimized_ms: float, timestamp: Optional[float] = None) -> 'ImageSizeSample':
        if optimized_ms > 0:
            ratio = reference_ms / optimized_ms
        else:
            ratio = 1.0 if reference_ms <= 0 else float('inf')
        return cls(megapixels=megapixels, reference_exec_ms=reference_ms, optimized_exec_ms=optimized_ms,
                   speedup_ratio=ratio, timestamp=time.time() if timestamp is None else timestamp)

    @classmethod
    def inflate(cls, record: Dict[str, Any]) -> 'ImageSizeSample':
        """Rebuild a persisted sample; missing or non-numeric fields raise KeyError/TypeError/ValueError."""
        return cls(
            megapixels=float(record['megapixels']),
            reference_exec_ms=float(record['reference_exec_ms']),
            optimized_exec_ms=float(record['optimized_exec_ms']),
            speedup_ratio=float(record['speedup_ratio']),
            timestamp=float(record['timestamp']),
        )


@dataclass
class ImageSizeInsights:
    sample_count: int
    optimized_wins: int
    reference_wins: int
    average_speedup: Optional[float] = None
    best_speedup: Optional[float] = None
    best_megapixels: Optional[float] = None
    smallest_optimized_win_mp: Optional[float] = None

    @property
    def enough_samples(self) -> bool:
        return self.sample_count >= MIN_INSIGHT_SAMPLES

    def lines(self) -> List[str]:
        if not self.enough_samples:
            return [
                f'Run comparisons at several image sizes to see trends ({self.sample_count} of {MIN_INSIGHT_SAMPLES} sizes so far)',
                'Tip: test small (< 1 MP), medium (1-5 MP) and large (> 10 MP) images',
            ]
        if self.optimized_wins > self.reference_wins:
            return [
                f'Optimized faster at {self.optimized_wins} of {self.sample_count} sizes',
                f'Average speedup: {self.average_speedup:.2f}x',
                f'Best speedup: {self.best_speedup:.2f}x at {self.best_megapixels:.1f} MP',
                f'Optimized wins from {self.smallest_optimized_win_mp:.1f} MP upward',
            ]
        if self.reference_wins > 0:
            return [
                f'Reference competitive at {self.reference_wins} of {self.sample_count} sizes',
                'Per-call overhead may outweigh vectorisation at smaller sizes',
            ]
        return [f'No clear winner across {self.sample_count} sizes']


def image_size_insights(samples: List[ImageSizeSample]) -> ImageSizeInsights:
    """Summarise which implementation wins across image sizes.

    Optimized-side figures (average, best and smallest winning size) are
    taken over the samples with a speedup above 1; ties count for neither side.
    """
    ordered = sorted(samples, key=lambda s: s.megapixels)
    faster = [s for s in ordered if s.speedup_ratio > 1]
    slower = [s for s in ordered if s.speedup_ratio < 1]
    insights = ImageSizeInsights(sample_count=len(ordered), optimized_wins=len(faster), reference_wins=len(slower))
    if faster:
        best = faster[0]
        for s in faster[1:]:
            if s.speedup_ratio > best.speedup_ratio:
                best = s
        insights.average_speedup = sum(s.speedup_ratio for s in faster) / len(faster)
        insights.best_speedup = best.speedup_ratio
        insights.best_megapixels = best.megapixels
        insights.smallest_optimized_win_mp = faster[0].megapixels
    return insights


class ImageSizeStore:
    def __init__(self, storage: JsonFileStorage, max_samples: int = 100, key_prefix: str = 'image_size_',
                 merge_distance: float = SIZE_MERGE_DISTANCE):
        self.storage = storage
        self.max_samples = max_samples
        self.key_prefix = key_prefix
        self.merge_distance = merge_distance
        self._samples: Dict[str, List[ImageSizeSample]] = {}

    def _samples_for(self, scenario: str) -> List[ImageSizeSample]:
        if scenario in self._samples:
            return self._samples[scenario]
        samples: List[ImageSizeSample] = []
        try:
            records = self.storage.read(f'{self.key_prefix}{scenario}') or []
            if not isinstance(records, list):
                raise TypeError('expected a list of samples')
            samples = [ImageSizeSample.inflate(r) for r in records]
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning('ignoring unreadable image size data for %s: %s', scenario, e)
            samples = []
        self._samples[scenario] = samples[-self.max_samples:]
        return self._samples[scenario]

    def _is_near(self, a: float, b: float) -> bool:
        if b == 0:
            return a == 0
        return abs(a - b) / b <= self.merge_distance

    def record(self, scenario, sample: ImageSizeSample) -> ImageSizeSample:
        """Add a sample, merging it with one of similar size if present.

        Returns the sample retained for that size.
        """
        key = Scenario(scenario).value
        samples = self._samples_for(key)
        kept = sample
        for i, existing in enumerate(samples):
            if self._is_near(sample.megapixels, existing.megapixels):
                if sample.informativeness > existing.informativeness:
                    samples[i] = sample
                else:
                    kept = existing
                break
        else:
            samples.append(sample)
        if len(samples) > self.max_samples:
            del samples[:-self.max_samples]
        try:
            self.storage.write(f'{self.key_prefix}{key}', [asdict(s) for s in samples])
        except (OSError, TypeError, ValueError) as e:
            logger.warning('could not persist image size data for %s: %s', key, e)
        return kept

    def read(self, scenario) -> List[ImageSizeSample]:
        return list(self._samples_for(Scenario(scenario).value))

    def clear(self, scenario) -> None:
        key = Scenario(scenario).value
        try:
            self.storage.remove(f'{self.key_prefix}{key}')
        except OSError as e:
            raise StorageError(f'Failed to clear image size data for {key}: {e}') from e
        self._samples[key] = []
