import pytest
import numpy as np

from config import BenchmarkConfig, StorageConfig
from history import HistoryStore, ImageSizeStore, JsonFileStorage
from metrics import TrialMeasurement
from utils import ImageBuffer


@pytest.fixture
def red_image():
    return ImageBuffer.solid(100, 100, (255, 0, 0, 255))


@pytest.fixture
def valid_test_image():
    # white background with a black rectangle, a coloured disc and a diagonal line
    h, w = 48, 64
    img = np.full((h, w, 4), 255, dtype=np.uint8)
    img[8:20, 6:30, :3] = 0
    yy, xx = np.ogrid[:h, :w]
    disc = (yy - 30) ** 2 + (xx - 44) ** 2 <= 100
    img[disc] = (200, 40, 90, 255)
    for r in range(h):
        c = min(w - 1, r + 10)
        img[r, c, :3] = (20, 160, 220)
    img[40:, :8, 3] = 128
    return ImageBuffer.from_array(img)


@pytest.fixture
def tmp_config(tmp_path):
    cfg = BenchmarkConfig()
    cfg.storage = StorageConfig(session_dir=str(tmp_path / 'session'), durable_dir=str(tmp_path / 'durable'))
    return cfg


@pytest.fixture
def history_store(tmp_path):
    return HistoryStore(JsonFileStorage(str(tmp_path / 'session')), max_items=10)


@pytest.fixture
def size_store(tmp_path):
    return ImageSizeStore(JsonFileStorage(str(tmp_path / 'durable')), max_samples=100)


def make_trial(ms, first=False, buffer=None):
    return TrialMeasurement(
        execution_time_ms=ms,
        throughput_mpx_per_sec=(0.01 / (ms / 1000.0)) if ms > 0 else None,
        is_first_trial=first,
        image_dims={'width': 100, 'height': 100, 'megapixels': 0.01},
        output_buffer=buffer,
    )


@pytest.fixture
def trial_factory():
    return make_trial
