import os
from typing import Dict, List, Optional

import numpy as np

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from history import HistoryStore, ImageSizeStore, ImageSizeSample, ScenarioRun
from scenarios import Implementation, Scenario, get_definition

COLORS = {Implementation.REFERENCE: '#ff7f0e', Implementation.OPTIMIZED: '#1f77b4'}


def create_history_chart(runs: List[ScenarioRun], scenario, title: Optional[str] = None):
    """Line chart of median execution time per run for both implementations."""
    fig, ax = plt.subplots(figsize=(8, 4))
    complete = [r for r in runs if r.is_complete()]
    if not complete:
        ax.text(0.5, 0.5, 'No complete runs recorded', ha='center', va='center')
    else:
        x = list(range(1, len(complete) + 1))
        for impl in Implementation:
            y = [r.get(impl).median.execution_time_ms for r in complete]
            ax.plot(x, y, marker='o', color=COLORS[impl], label=impl.label)
        ax.set_xticks(x)
        ax.set_xlabel('Run')
        ax.set_ylabel('Median execution time (ms)')
        ax.legend()
    ax.set_title(title or f'{get_definition(scenario).label}: run history')
    plt.tight_layout()
    return fig


def speedup_trend(samples: List[ImageSizeSample]) -> Optional[np.ndarray]:
    """Least-squares line (slope, intercept) through megapixels vs speedup, when defined."""
    finite = [s for s in samples if np.isfinite(s.speedup_ratio)]
    if len({s.megapixels for s in finite}) < 2:
        return None
    x = np.array([s.megapixels for s in finite], dtype=float)
    y = np.array([s.speedup_ratio for s in finite], dtype=float)
    return np.polyfit(x, y, 1)


def create_image_size_chart(samples: List[ImageSizeSample], scenario, title: Optional[str] = None):
    """Scatter of speedup against image size, coloured by winner, with a trend line."""
    fig, ax = plt.subplots(figsize=(8, 4))
    if not samples:
        ax.text(0.5, 0.5, 'No image size samples recorded', ha='center', va='center')
    else:
        for impl in Implementation:
            pts = [s for s in samples if s.winner is impl and np.isfinite(s.speedup_ratio)]
            if pts:
                ax.scatter([s.megapixels for s in pts], [s.speedup_ratio for s in pts],
                           color=COLORS[impl], label=f'{impl.label} faster')
        ax.axhline(1.0, color='#7f7f7f', linestyle='--', linewidth=1)
        trend = speedup_trend(samples)
        if trend is not None:
            xs = np.linspace(min(s.megapixels for s in samples), max(s.megapixels for s in samples), 50)
            ax.plot(xs, np.polyval(trend, xs), color='#2ca02c', label='Trend')
        ax.set_xlabel('Image size (MP)')
        ax.set_ylabel('Speedup (reference / optimized)')
        ax.legend()
    ax.set_title(title or f'{get_definition(scenario).label}: speedup vs image size')
    plt.tight_layout()
    return fig


def create_performance_visualizations(scenarios, history: HistoryStore, size_store: ImageSizeStore,
                                      output_dir: str = 'benchmark_reports') -> Dict[str, str]:
    """Save history and image-size charts for each scenario as PNG files."""
    os.makedirs(output_dir, exist_ok=True)
    paths = {}
    for scenario in scenarios:
        key = Scenario(scenario).value
        fig = create_history_chart(history.read(scenario), scenario)
        paths[f'{key}_history'] = os.path.join(output_dir, f'{key}_history.png')
        fig.savefig(paths[f'{key}_history'], dpi=100)
        plt.close(fig)

        fig = create_image_size_chart(size_store.read(scenario), scenario)
        paths[f'{key}_image_size'] = os.path.join(output_dir, f'{key}_image_size.png')
        fig.savefig(paths[f'{key}_image_size'], dpi=100)
        plt.close(fig)
    return paths
