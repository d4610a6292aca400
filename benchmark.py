"""Benchmarking of the reference and optimized image routines.

This module implements the trial runner, the comparison orchestrator that
drives both implementations through repeated trials, report generation and
a small CLI for running comparisons.

Trials run strictly one after another on a single thread: all reference
trials finish before the first optimized trial starts, so one trial's work
never competes with another's timing. Trial output buffers are dropped as
soon as each measurement is captured; the median trial's output is rebuilt
afterwards by running the routine once more. That rebuild assumes the
routines are deterministic, which is checked against the digest recorded for
the median trial.
"""
from dataclasses import dataclass, asdict
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional
import argparse
import csv
import hashlib
import json
import logging
import os
import platform
import sys
import threading
import time

import numpy as np
import cv2
import psutil

from config import BenchmarkConfig, ConfigError, load_config, new_session_id
from history import HistoryStore, ImageSizeStore, ImageSizeSample, JsonFileStorage, ScenarioRun, image_size_insights
from metrics import AggregatedStatistics, TrialMeasurement, aggregate, calculate_throughput, sanitize_statistics, summarize
from scenarios import Implementation, Scenario, get_definition, load_implementation, resolve_routine
from utils import ImageBuffer, create_synthetic_test_image, format_time, load_image_buffer, validate_image_buffer
from validation import VerificationResult, compare_buffers

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Implementation, int, int], None]


class BenchmarkCancelled(RuntimeError):
    pass


def _digest(buffer: ImageBuffer) -> str:
    return hashlib.blake2b(buffer.pixels.tobytes(), digest_size=16).hexdigest()


def _rss_mb() -> float:
    return psutil.Process().memory_info().rss / (1024.0 * 1024.0)


def run_trial(scenario, implementation, input_buffer: ImageBuffer, is_first_trial: bool,
              params: Optional[Dict[str, Any]] = None, routine: Optional[Callable] = None) -> TrialMeasurement:
    """Time exactly one call of the scenario's routine for ``implementation``.

    ``input_buffer`` must be a private copy; the routine may consume it.
    Exceptions raised by the routine propagate unchanged.
    """
    if routine is None:
        routine = resolve_routine(load_implementation(implementation), scenario)
    params = params or {}
    dims = input_buffer.dims()

    rss_before = _rss_mb()
    t0 = time.perf_counter()
    output = routine(input_buffer, **params)
    elapsed_ms = (time.perf_counter() - t0) * 1000.0
    rss_after = _rss_mb()

    if not isinstance(output, ImageBuffer):
        raise TypeError(f'{Implementation(implementation).value} {Scenario(scenario).value} routine returned {type(output).__name__}, expected ImageBuffer')

    return TrialMeasurement(
        execution_time_ms=elapsed_ms,
        throughput_mpx_per_sec=calculate_throughput(dims['megapixels'], elapsed_ms),
        is_first_trial=is_first_trial,
        image_dims=dims,
        output_buffer=output,
        memory_delta_mb=rss_after - rss_before,
        output_digest=_digest(output),
    )


@dataclass
class ComparisonResult:
    scenario: Scenario
    winner: Implementation
    speedup_ratio: float
    verified: bool
    verification: VerificationResult
    reference: AggregatedStatistics
    optimized: AggregatedStatistics
    image_dims: Dict[str, float]
    trial_count: int
    median_reconstruction_consistent: bool = True

    def stats_for(self, implementation) -> AggregatedStatistics:
        return self.reference if Implementation(implementation) is Implementation.REFERENCE else self.optimized

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scenario': self.scenario.value,
            'winner': self.winner.value,
            'speedup_ratio': self.speedup_ratio,
            'verified': self.verified,
            'verification': asdict(self.verification),
            'reference': sanitize_statistics(self.reference),
            'optimized': sanitize_statistics(self.optimized),
            'image_dims': dict(self.image_dims),
            'trial_count': self.trial_count,
            'median_reconstruction_consistent': self.median_reconstruction_consistent,
        }


def determine_winner(reference_ms: float, optimized_ms: float):
    """Return (winner, speedup_ratio); lower median wins, ties go to the reference side."""
    if optimized_ms < reference_ms:
        winner, winner_ms, loser_ms = Implementation.OPTIMIZED, optimized_ms, reference_ms
    else:
        winner, winner_ms, loser_ms = Implementation.REFERENCE, reference_ms, optimized_ms
    if winner_ms > 0:
        return winner, loser_ms / winner_ms
    return winner, 1.0 if loser_ms <= 0 else float('inf')


class BenchmarkOrchestrator:
    """Runs measured comparisons of the two implementations and records them.

    Processing modules are imported on first use per implementation and kept
    for the orchestrator's lifetime. ``results`` caches the latest comparison
    per scenario and is reset whenever that scenario's history is cleared.
    """

    def __init__(self, config: Optional[BenchmarkConfig] = None, history: Optional[HistoryStore] = None,
                 size_store: Optional[ImageSizeStore] = None, pacing_delay: Optional[Callable[[float], None]] = None,
                 progress_callback: Optional[ProgressCallback] = None):
        self.config = config or BenchmarkConfig()
        storage_cfg = self.config.storage
        if history is None:
            history = HistoryStore(JsonFileStorage(storage_cfg.resolved_session_dir()),
                                   max_items=storage_cfg.max_history_items, key_prefix=storage_cfg.session_key_prefix)
        if size_store is None:
            size_store = ImageSizeStore(JsonFileStorage(storage_cfg.resolved_durable_dir()),
                                        max_samples=storage_cfg.max_size_samples, key_prefix=storage_cfg.size_key_prefix)
        self.history = history
        self.size_store = size_store
        if pacing_delay is None and self.config.timing.enabled:
            pacing_delay = time.sleep
        self._pacing = pacing_delay
        self.progress_callback = progress_callback
        self._handles: Dict[Implementation, ModuleType] = {}
        self.results: Dict[str, ComparisonResult] = {}
        self.history.add_clear_listener(self._on_history_cleared)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        self.history.remove_clear_listener(self._on_history_cleared)
        self._handles.clear()
        self.results.clear()

    def _on_history_cleared(self, scenario: str) -> None:
        self.results.pop(scenario, None)

    def pacing_delay(self, milliseconds: float) -> None:
        """Cosmetic pause between trials/phases; never inside a timed region."""
        if self._pacing is not None and milliseconds > 0:
            self._pacing(milliseconds / 1000.0)

    def routine_for(self, scenario, implementation) -> Callable:
        impl = Implementation(implementation)
        module = self._handles.get(impl)
        if module is None:
            logger.debug('loading %s processors', impl.value)
            module = load_implementation(impl)
            self._handles[impl] = module
        return resolve_routine(module, scenario)

    def _run_batch(self, scenario: Scenario, impl: Implementation, image: ImageBuffer, trial_count: int,
                   params: Dict[str, Any], cancel_event: Optional[threading.Event]) -> List[TrialMeasurement]:
        routine = self.routine_for(scenario, impl)
        trials: List[TrialMeasurement] = []
        for i in range(trial_count):
            if cancel_event is not None and cancel_event.is_set():
                raise BenchmarkCancelled(f'{scenario.value} comparison cancelled during {impl.value} trials')
            measurement = run_trial(scenario, impl, image.copy(), i == 0, params, routine=routine)
            measurement.release_buffer()
            trials.append(measurement)
            logger.debug('%s %s trial %d/%d: %.3f ms', scenario.value, impl.value, i + 1, trial_count,
                         measurement.execution_time_ms)
            if self.progress_callback is not None:
                self.progress_callback(impl, i + 1, trial_count)
            if i + 1 < trial_count:
                self.pacing_delay(self.config.timing.delay_between_runs_ms)
        return trials

    def _reconstruct_median(self, scenario: Scenario, impl: Implementation, image: ImageBuffer,
                            stats: AggregatedStatistics, params: Dict[str, Any]) -> bool:
        """Re-run the routine once, untimed, to rebuild the median trial's output."""
        output = self.routine_for(scenario, impl)(image.copy(), **params)
        stats.median.output_buffer = output
        expected = stats.median.output_digest
        if expected is not None and _digest(output) != expected:
            logger.warning('%s %s routine is not deterministic: rebuilt median output differs from the measured trial',
                           scenario.value, impl.value)
            return False
        return True

    def trial_count_for(self, scenario, image: ImageBuffer) -> int:
        return self.config.policy_for(scenario).run_count_for(image.megapixels)

    def compare_implementations(self, scenario, input_image: ImageBuffer, trial_count: Optional[int] = None,
                                params: Optional[Dict[str, Any]] = None,
                                cancel_event: Optional[threading.Event] = None) -> ComparisonResult:
        """Measure both implementations on ``input_image`` and record the outcome.

        Any failure aborts the whole comparison before anything is recorded.
        """
        scenario = Scenario(scenario)
        definition = get_definition(scenario)
        policy = self.config.policy_for(scenario)
        validate_image_buffer(input_image, max_size=policy.max_dimension)
        if trial_count is None:
            trial_count = policy.run_count_for(input_image.megapixels)
        if trial_count < 1:
            raise ValueError(f'trial_count must be >= 1, got {trial_count}')
        run_params = dict(definition.default_params)
        run_params.update(params or {})

        logger.info('comparing %s on %dx%d (%.2f MP), %d trials per implementation', scenario.value,
                    input_image.width, input_image.height, input_image.megapixels, trial_count)

        batches: Dict[Implementation, List[TrialMeasurement]] = {}
        for impl in (Implementation.REFERENCE, Implementation.OPTIMIZED):
            batches[impl] = self._run_batch(scenario, impl, input_image, trial_count, run_params, cancel_event)
            self.pacing_delay(self.config.timing.phase_delay_ms)

        stats = {impl: aggregate(trials) for impl, trials in batches.items()}

        consistent = True
        for impl in (Implementation.REFERENCE, Implementation.OPTIMIZED):
            consistent = self._reconstruct_median(scenario, impl, input_image, stats[impl], run_params) and consistent

        ref_stats = stats[Implementation.REFERENCE]
        opt_stats = stats[Implementation.OPTIMIZED]
        winner, speedup = determine_winner(ref_stats.median.execution_time_ms, opt_stats.median.execution_time_ms)

        verification = compare_buffers(ref_stats.median.output_buffer, opt_stats.median.output_buffer,
                                       tolerance=self.config.verification.pixel_diff_threshold)

        # size sample first: history is the last step and records the pair as one run
        self.size_store.record(scenario, ImageSizeSample.from_medians(
            input_image.megapixels, ref_stats.median.execution_time_ms, opt_stats.median.execution_time_ms))
        self.history.record_pair(scenario, ref_stats, opt_stats)

        result = ComparisonResult(
            scenario=scenario,
            winner=winner,
            speedup_ratio=speedup,
            verified=verification.verified,
            verification=verification,
            reference=ref_stats,
            optimized=opt_stats,
            image_dims=input_image.dims(),
            trial_count=trial_count,
            median_reconstruction_consistent=consistent,
        )
        self.results[scenario.value] = result
        self.pacing_delay(self.config.timing.result_display_delay_ms)
        return result

    def run_scenario_suite(self, input_image: ImageBuffer, scenarios=None, trial_count: Optional[int] = None) -> List[ComparisonResult]:
        scenarios = list(scenarios) if scenarios is not None else list(Scenario)
        return [self.compare_implementations(s, input_image, trial_count=trial_count) for s in scenarios]


def get_system_info() -> Dict[str, Any]:
    return {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'cpu_count': psutil.cpu_count(logical=True),
        'total_ram_bytes': psutil.virtual_memory().total,
        'numpy_version': np.__version__,
        'opencv_version': cv2.__version__,
    }


def export_statistics_csv(scenario, runs: List[ScenarioRun], path: str) -> Optional[str]:
    """Write one row per complete run: medians, cold start, pixel rate, CV and speedup."""
    runs = [r for r in runs if r.is_complete()]
    if not runs:
        return None
    definition = get_definition(scenario)
    headers = ['Run', 'Reference Execution Time (ms)', 'Optimized Execution Time (ms)',
               'Reference Cold Start Overhead (ms)', 'Optimized Cold Start Overhead (ms)']
    if definition.reports_pixel_rate:
        headers += ['Reference Pixel Rate (Mpx/s)', 'Optimized Pixel Rate (Mpx/s)']
    headers += ['Reference Consistency (CV %)', 'Optimized Consistency (CV %)', 'Speedup']

    def _fmt(v):
        return 'N/A' if v is None else f'{v:.2f}'

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(headers)
        for i, run in enumerate(runs, start=1):
            ref, opt = run.reference, run.optimized
            row = [i, _fmt(ref.median.execution_time_ms), _fmt(opt.median.execution_time_ms),
                   _fmt(ref.cold_start_overhead_ms), _fmt(opt.cold_start_overhead_ms)]
            if definition.reports_pixel_rate:
                row += [_fmt(ref.median.throughput_mpx_per_sec), _fmt(opt.median.throughput_mpx_per_sec)]
            speedup = None
            if opt.median.execution_time_ms > 0:
                speedup = ref.median.execution_time_ms / opt.median.execution_time_ms
            row += [_fmt(ref.coefficient_of_variation_pct), _fmt(opt.coefficient_of_variation_pct), _fmt(speedup)]
            writer.writerow(row)
    return path


def export_image_size_csv(scenario, samples: List[ImageSizeSample], path: str) -> Optional[str]:
    if not samples:
        return None
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(['Megapixels', 'Reference Time (ms)', 'Optimized Time (ms)', 'Speedup', 'Winner', 'Timestamp'])
        for s in sorted(samples, key=lambda s: s.megapixels):
            writer.writerow([f'{s.megapixels:.2f}', f'{s.reference_exec_ms:.2f}', f'{s.optimized_exec_ms:.2f}',
                             f'{abs(s.speedup_ratio):.2f}', s.winner.value,
                             time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(s.timestamp))])
    return path


def generate_benchmark_report(results: List[ComparisonResult], history: HistoryStore, size_store: ImageSizeStore,
                              output_dir: str = 'benchmark_reports', report_name: str = 'benchmark') -> Dict[str, str]:
    os.makedirs(output_dir, exist_ok=True)
    ts = int(time.time())
    base = f"{report_name}_{ts}"
    json_path = os.path.join(output_dir, base + '.json')
    csv_path = os.path.join(output_dir, base + '.csv')
    md_path = os.path.join(output_dir, base + '.md')
    scenarios = [r.scenario for r in results]

    # JSON
    with open(json_path, 'w', encoding='utf-8') as f:
        payload = {
            'results': [r.to_dict() for r in results],
            'history': {s.value: [run.sanitize() for run in history.read(s)] for s in scenarios},
            'image_size': {s.value: [asdict(x) for x in size_store.read(s)] for s in scenarios},
            'system_info': get_system_info(),
            'timestamp': ts,
        }
        json.dump(payload, f, indent=2)

    # CSV
    with open(csv_path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(['scenario', 'implementation', 'width', 'height', 'trials', 'median_ms', 'mean_ms', 'min_ms',
                         'max_ms', 'std_dev_ms', 'cv_pct', 'median_mpx_per_sec', 'first_trial_ms',
                         'cold_start_overhead_ms', 'winner', 'speedup_ratio', 'verified'])
        for r in results:
            for impl in Implementation:
                s = summarize(r.stats_for(impl))
                writer.writerow([r.scenario.value, impl.value, r.image_dims['width'], r.image_dims['height'], s['count'],
                                 s['median_ms'], s['mean_ms'], s['min_ms'], s['max_ms'], s['std_dev_ms'], s['cv_pct'],
                                 s['median_mpx_per_sec'], s['first_trial_ms'], s['cold_start_overhead_ms'],
                                 r.winner.value, r.speedup_ratio, r.verified])

    # Markdown summary
    with open(md_path, 'w', encoding='utf-8') as f:
        f.write(f"# Benchmark Report: {report_name}\n\n")
        for r in results:
            definition = get_definition(r.scenario)
            f.write(f"## {definition.label}\n\n")
            f.write(f"Image: {r.image_dims['width']}x{r.image_dims['height']} ({r.image_dims['megapixels']:.2f} MP), "
                    f"{r.trial_count} trials per implementation\n\n")
            f.write(f"Winner: {r.winner.label}, {r.speedup_ratio:.2f}x faster\n\n")
            f.write(f"Verified: {'yes' if r.verified else 'no'} ({r.verification.reason})\n\n")
            for impl in Implementation:
                s = summarize(r.stats_for(impl))
                f.write(f"- {impl.label}: median {format_time(s['median_ms'])}, mean {format_time(s['mean_ms'])}, "
                        f"CV {s['cv_pct']:.1f}%, cold start overhead {format_time(s['cold_start_overhead_ms'])}\n")
            f.write("\n### Image size analysis\n\n")
            for line in image_size_insights(size_store.read(r.scenario)).lines():
                f.write(f"- {line}\n")
            f.write("\n")

    return {'json': json_path, 'csv': csv_path, 'md': md_path}


def _parse_dimensions(value: str):
    try:
        w, h = value.lower().split('x')
        return int(w), int(h)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected WIDTHxHEIGHT, got '{value}'")


def _print_progress(impl: Implementation, index: int, total: int) -> None:
    print(f"  {impl.value}: run {index}/{total}", end='\r' if index < total else '\n', flush=True)


def _print_history(history: HistoryStore, scenario: Scenario) -> None:
    runs = history.read(scenario)
    print(f"{get_definition(scenario).label}: {len(runs)} run(s)")
    for i, run in enumerate(runs, start=1):
        parts = []
        for impl in Implementation:
            stats = run.get(impl)
            parts.append(f"{impl.value}={format_time(stats.median.execution_time_ms) if stats else 'pending'}")
        print(f"  Run {i}: " + ', '.join(parts))


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description='Compare reference and optimized image routines.')
    src = p.add_mutually_exclusive_group()
    src.add_argument('--image', help='Image file to benchmark')
    src.add_argument('--synthetic', type=_parse_dimensions, help='Generate a synthetic WIDTHxHEIGHT image')
    p.add_argument('--complexity', choices=['simple', 'moderate', 'complex'], default='moderate')
    p.add_argument('--scenario', choices=[s.value for s in Scenario] + ['all'], default='all')
    p.add_argument('--trials', type=int, help='Trials per implementation (default: from run policy)')
    p.add_argument('--config', help='Path to JSON settings file')
    p.add_argument('--output-dir', default='benchmark_reports')
    p.add_argument('--tolerance', type=int, help='Per-channel verification tolerance')
    p.add_argument('--pacing', action='store_true', help='Enable pacing delays between trials')
    p.add_argument('--session', help='Session id for the rolling history')
    p.add_argument('--new-session', action='store_true', help='Start a fresh history session')
    p.add_argument('--history', action='store_true', help='Print stored history and exit')
    p.add_argument('--clear', action='store_true', help='Clear stored history and exit')
    p.add_argument('--export-csv', action='store_true', help='Export per-run statistics and image size data as CSV')
    p.add_argument('--no-charts', action='store_true')
    p.add_argument('--verbose', '-v', action='store_true')
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Invalid configuration: {e}")
        return 1
    if args.session:
        config.storage.session_id = args.session
    if args.new_session:
        config.storage.session_id = new_session_id()
        print('Session:', config.storage.session_id)
    if args.tolerance is not None:
        if not 0 <= args.tolerance <= 255:
            print(f"Invalid tolerance {args.tolerance}: must be within 0..255")
            return 1
        config.verification.pixel_diff_threshold = args.tolerance
    if args.pacing:
        config.timing.enabled = True

    scenarios = list(Scenario) if args.scenario == 'all' else [Scenario(args.scenario)]

    with BenchmarkOrchestrator(config, progress_callback=_print_progress) as orchestrator:
        if args.clear:
            for s in scenarios:
                orchestrator.history.clear(s)
                print('Cleared history for', s.value)
            return 0

        if args.history:
            for s in scenarios:
                _print_history(orchestrator.history, s)
            return 0

        if args.image:
            try:
                image = load_image_buffer(args.image)
            except (OSError, ValueError) as e:
                print(f"Could not load image {args.image}: {e}")
                return 1
        else:
            w, h = args.synthetic or (640, 480)
            max_dim = min(config.policy_for(s).max_dimension for s in scenarios)
            if not (1 <= w <= max_dim and 1 <= h <= max_dim):
                print(f"Invalid synthetic size {w}x{h}: each dimension must be within 1..{max_dim}")
                return 1
            image = create_synthetic_test_image(w, h, complexity=args.complexity)

        rc = 0
        results: List[ComparisonResult] = []
        for s in scenarios:
            print(f"{get_definition(s).label} on {image.width}x{image.height}")
            try:
                r = orchestrator.compare_implementations(s, image, trial_count=args.trials)
            except Exception as e:
                print(f"Comparison failed for {s.value}: {e}")
                rc = 1
                continue
            results.append(r)
            print(f"  {r.winner.label} wins, {r.speedup_ratio:.2f}x faster; "
                  f"verified: {'yes' if r.verified else 'no'} ({r.verification.reason})")
            for line in image_size_insights(orchestrator.size_store.read(s)).lines():
                print(f"  {line}")

        if not results:
            return rc

        paths = generate_benchmark_report(results, orchestrator.history, orchestrator.size_store,
                                          output_dir=args.output_dir)
        print('Wrote', paths['json'])

        if args.export_csv:
            for s in (r.scenario for r in results):
                export_statistics_csv(s, orchestrator.history.read(s), os.path.join(args.output_dir, f'{s.value}_results.csv'))
                export_image_size_csv(s, orchestrator.size_store.read(s),
                                      os.path.join(args.output_dir, f'{s.value}_image_size_impact.csv'))

        if not args.no_charts:
            from visualization import create_performance_visualizations
            create_performance_visualizations([r.scenario for r in results], orchestrator.history,
                                              orchestrator.size_store, output_dir=args.output_dir)
        return rc


if __name__ == '__main__':
    sys.exit(main())
