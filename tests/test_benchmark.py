import csv
import json
import logging
import math
import os
import threading

import numpy as np
import pytest

import optimized_processors
from benchmark import (
    BenchmarkCancelled,
    BenchmarkOrchestrator,
    determine_winner,
    export_image_size_csv,
    export_statistics_csv,
    generate_benchmark_report,
    get_system_info,
    run_trial,
)
from history import ImageSizeSample
from metrics import aggregate
from scenarios import Implementation, Scenario
from utils import ImageBuffer

REF = Implementation.REFERENCE
OPT = Implementation.OPTIMIZED


@pytest.fixture
def small_image():
    arr = np.zeros((10, 12, 4), dtype=np.uint8)
    arr[..., 0] = np.arange(12, dtype=np.uint8) * 20
    arr[..., 1] = 90
    arr[:5, :, 2] = 250
    arr[..., 3] = 255
    return ImageBuffer.from_array(arr)


@pytest.fixture
def orchestrator(tmp_config, history_store, size_store):
    orch = BenchmarkOrchestrator(tmp_config, history=history_store, size_store=size_store)
    yield orch
    orch.close()


def test_run_trial_measures_one_call(small_image):
    m = run_trial(Scenario.INVERT, REF, small_image.copy(), True)
    assert m.is_first_trial
    assert m.execution_time_ms >= 0
    assert m.image_dims == small_image.dims()
    assert m.output_buffer is not None
    assert m.output_digest is not None
    assert m.memory_delta_mb is not None


def test_run_trial_rejects_non_buffer_output(small_image):
    with pytest.raises(TypeError):
        run_trial(Scenario.INVERT, OPT, small_image, False, routine=lambda buf: None)


def test_run_trial_propagates_routine_errors(small_image):
    def boom(buf):
        raise RuntimeError('routine failed')

    with pytest.raises(RuntimeError):
        run_trial(Scenario.EDGE_DETECT, REF, small_image, False, routine=boom)


@pytest.mark.parametrize('ref_ms,opt_ms,winner,speedup', [
    (10.0, 5.0, OPT, 2.0),
    (5.0, 10.0, REF, 2.0),
    (5.0, 5.0, REF, 1.0),
    (0.0, 0.0, REF, 1.0),
])
def test_determine_winner(ref_ms, opt_ms, winner, speedup):
    assert determine_winner(ref_ms, opt_ms) == (winner, speedup)


def test_determine_winner_with_zero_time_winner():
    winner, speedup = determine_winner(5.0, 0.0)
    assert winner is OPT
    assert math.isinf(speedup)


def test_compare_implementations_records_everything(orchestrator, small_image):
    result = orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=3)
    assert result.verified
    assert result.verification.reason == 'identical'
    assert result.trial_count == 3
    assert result.reference.count == 3 and result.optimized.count == 3
    assert result.reference.median.output_buffer is not None
    assert result.optimized.median.output_buffer is not None
    assert result.median_reconstruction_consistent
    assert result.speedup_ratio >= 1.0
    assert result.winner in (REF, OPT)

    runs = orchestrator.history.read(Scenario.INVERT)
    assert len(runs) == 1 and runs[0].is_complete()
    assert runs[0].reference is result.reference
    samples = orchestrator.size_store.read(Scenario.INVERT)
    assert len(samples) == 1
    assert samples[0].megapixels == pytest.approx(small_image.megapixels)
    assert orchestrator.results['invert'] is result


def test_input_image_is_not_modified(orchestrator, small_image):
    before = small_image.pixels.copy()
    orchestrator.compare_implementations(Scenario.QUANTIZE, small_image, trial_count=1)
    assert np.array_equal(small_image.pixels, before)


def test_trials_run_reference_first(tmp_config, history_store, size_store, small_image):
    calls = []
    orch = BenchmarkOrchestrator(tmp_config, history=history_store, size_store=size_store,
                                 progress_callback=lambda impl, i, n: calls.append((impl, i, n)))
    orch.compare_implementations(Scenario.INVERT, small_image, trial_count=2)
    assert calls == [(REF, 1, 2), (REF, 2, 2), (OPT, 1, 2), (OPT, 2, 2)]


def test_only_first_trial_is_flagged(orchestrator, small_image):
    result = orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=4)
    for stats in (result.reference, result.optimized):
        assert sum(t.is_first_trial for t in stats.all_trials) == 1
        assert stats.all_trials[0].is_first_trial
        # non-median trial buffers are dropped during the loop
        assert all(t.output_buffer is None for t in stats.all_trials if t is not stats.median)


def test_trial_count_from_policy(orchestrator, small_image):
    orchestrator.config.policy_for(Scenario.EDGE_DETECT).small_runs = 2
    result = orchestrator.compare_implementations(Scenario.EDGE_DETECT, small_image)
    assert result.trial_count == 2
    assert result.reference.count == 2


def test_invalid_trial_count(orchestrator, small_image):
    with pytest.raises(ValueError):
        orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=0)


def test_image_larger_than_policy_is_rejected(orchestrator, small_image):
    orchestrator.config.policy_for(Scenario.INVERT).max_dimension = 8
    with pytest.raises(ValueError):
        orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=1)
    assert orchestrator.history.read(Scenario.INVERT) == []


def test_failure_records_nothing(orchestrator, small_image, monkeypatch):
    def broken(buffer):
        raise RuntimeError('optimized routine crashed')

    monkeypatch.setattr(optimized_processors, 'invert_colors', broken)
    with pytest.raises(RuntimeError, match='crashed'):
        orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=2)
    assert orchestrator.history.read(Scenario.INVERT) == []
    assert orchestrator.size_store.read(Scenario.INVERT) == []
    assert 'invert' not in orchestrator.results


def test_stale_optimized_half_run_is_not_paired(orchestrator, small_image, trial_factory):
    stale = aggregate([trial_factory(999.0, first=True)])
    orchestrator.history.record(Scenario.INVERT, OPT, stale)
    result = orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=2)
    runs = orchestrator.history.read(Scenario.INVERT)
    assert len(runs) == 1 and runs[0].is_complete()
    latest = orchestrator.history.latest_complete_run(Scenario.INVERT)
    assert latest.reference is result.reference
    assert latest.optimized is result.optimized


@pytest.mark.edge
def test_unreadable_size_data_does_not_break_recording(orchestrator, small_image):
    directory = orchestrator.size_store.storage.directory
    os.makedirs(directory, exist_ok=True)
    bad = [{'megapixels': None, 'reference_exec_ms': 1.0, 'optimized_exec_ms': 1.0,
            'speedup_ratio': 1.0, 'timestamp': 0.0}]
    with open(os.path.join(directory, 'image_size_invert.json'), 'w', encoding='utf-8') as f:
        json.dump(bad, f)
    orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=1)
    assert len(orchestrator.history.complete_runs(Scenario.INVERT)) == 1
    samples = orchestrator.size_store.read(Scenario.INVERT)
    assert len(samples) == 1
    assert samples[0].megapixels == pytest.approx(small_image.megapixels)


def test_size_store_failure_leaves_history_empty(orchestrator, small_image, monkeypatch):
    def failing(scenario, sample):
        raise RuntimeError('size store unavailable')

    monkeypatch.setattr(orchestrator.size_store, 'record', failing)
    with pytest.raises(RuntimeError, match='unavailable'):
        orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=1)
    assert orchestrator.history.read(Scenario.INVERT) == []


def test_cancel_before_start(orchestrator, small_image):
    ev = threading.Event()
    ev.set()
    with pytest.raises(BenchmarkCancelled):
        orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=2, cancel_event=ev)
    assert orchestrator.history.read(Scenario.INVERT) == []


def test_cancel_midway(tmp_config, history_store, size_store, small_image):
    ev = threading.Event()

    def progress(impl, i, n):
        if impl is OPT:
            ev.set()

    orch = BenchmarkOrchestrator(tmp_config, history=history_store, size_store=size_store, progress_callback=progress)
    with pytest.raises(BenchmarkCancelled):
        orch.compare_implementations(Scenario.INVERT, small_image, trial_count=3, cancel_event=ev)
    assert history_store.read(Scenario.INVERT) == []


def test_pacing_between_trials_and_phases(tmp_config, history_store, size_store, small_image):
    delays = []
    orch = BenchmarkOrchestrator(tmp_config, history=history_store, size_store=size_store, pacing_delay=delays.append)
    orch.compare_implementations(Scenario.INVERT, small_image, trial_count=2)
    assert delays == [0.05, 0.8, 0.05, 0.8, 1.0]


def test_pacing_disabled_by_default(orchestrator):
    assert orchestrator._pacing is None
    orchestrator.pacing_delay(500)


def test_nondeterministic_routine_is_flagged(orchestrator, small_image, monkeypatch, caplog):
    counter = {'n': 0}

    def drifting(buffer):
        counter['n'] += 1
        return ImageBuffer.solid(buffer.width, buffer.height, (counter['n'] % 256, 0, 0, 255))

    monkeypatch.setattr(optimized_processors, 'invert_colors', drifting)
    with caplog.at_level(logging.WARNING, logger='benchmark'):
        result = orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=3)
    assert not result.median_reconstruction_consistent
    assert not result.verified
    assert 'not deterministic' in caplog.text


def test_clearing_history_drops_cached_result(orchestrator, small_image):
    orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=1)
    orchestrator.history.clear(Scenario.INVERT)
    assert 'invert' not in orchestrator.results


def test_close_detaches_from_history(tmp_config, history_store, size_store):
    orch = BenchmarkOrchestrator(tmp_config, history=history_store, size_store=size_store)
    orch.routine_for(Scenario.INVERT, REF)
    assert orch._handles
    orch.close()
    assert not orch._handles
    assert not history_store._clear_listeners


def test_module_handles_are_cached(orchestrator):
    orchestrator.routine_for(Scenario.INVERT, OPT)
    handle = orchestrator._handles[OPT]
    orchestrator.routine_for(Scenario.QUANTIZE, OPT)
    assert orchestrator._handles[OPT] is handle


def test_export_statistics_csv(orchestrator, small_image, tmp_path):
    orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=2)
    orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=2)
    path = export_statistics_csv(Scenario.INVERT, orchestrator.history.read(Scenario.INVERT), str(tmp_path / 'inv.csv'))
    with open(path, newline='', encoding='utf-8') as f:
        rows = list(csv.reader(f))
    assert 'Reference Pixel Rate (Mpx/s)' in rows[0]
    assert rows[0][-1] == 'Speedup'
    assert [r[0] for r in rows[1:]] == ['1', '2']


def test_export_statistics_csv_without_pixel_rate(orchestrator, small_image, tmp_path):
    orchestrator.compare_implementations(Scenario.EDGE_DETECT, small_image, trial_count=1)
    path = export_statistics_csv(Scenario.EDGE_DETECT, orchestrator.history.read(Scenario.EDGE_DETECT),
                                 str(tmp_path / 'edge.csv'))
    with open(path, newline='', encoding='utf-8') as f:
        header = next(csv.reader(f))
    assert not any('Pixel Rate' in h for h in header)


def test_export_skips_empty_history(tmp_path):
    assert export_statistics_csv(Scenario.INVERT, [], str(tmp_path / 'x.csv')) is None
    assert export_image_size_csv(Scenario.INVERT, [], str(tmp_path / 'y.csv')) is None
    assert not os.path.exists(str(tmp_path / 'x.csv'))


def test_export_image_size_csv_sorted(tmp_path):
    samples = [ImageSizeSample.from_medians(8.0, 20.0, 10.0, timestamp=1.0),
               ImageSizeSample.from_medians(1.0, 5.0, 10.0, timestamp=2.0)]
    path = export_image_size_csv(Scenario.QUANTIZE, samples, str(tmp_path / 'size.csv'))
    with open(path, newline='', encoding='utf-8') as f:
        rows = list(csv.reader(f))
    assert [r[0] for r in rows[1:]] == ['1.00', '8.00']
    assert rows[1][4] == 'reference' and rows[2][4] == 'optimized'


def test_generate_report(orchestrator, small_image, tmp_path):
    result = orchestrator.compare_implementations(Scenario.INVERT, small_image, trial_count=2)
    paths = generate_benchmark_report([result], orchestrator.history, orchestrator.size_store,
                                      output_dir=str(tmp_path / 'reports'), report_name='unit')
    for key in ('json', 'csv', 'md'):
        assert os.path.exists(paths[key])
    with open(paths['json'], encoding='utf-8') as f:
        payload = json.load(f)
    assert payload['results'][0]['scenario'] == 'invert'
    assert len(payload['history']['invert']) == 1
    assert 'output_buffer' not in json.dumps(payload)
    with open(paths['md'], encoding='utf-8') as f:
        md = f.read()
    assert 'Color Inversion' in md
    assert '### Image size analysis' in md
    assert '- Run comparisons at several image sizes to see trends (1 of 3 sizes so far)' in md


def test_get_system_info():
    info = get_system_info()
    for key in ('platform', 'python_version', 'cpu_count', 'total_ram_bytes', 'numpy_version', 'opencv_version'):
        assert key in info
