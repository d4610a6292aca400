"""Benchmark configuration.

Run-count policies, pacing delays, storage locations and the verification
tolerance. Everything has a default; ``load_config`` overlays a JSON settings
file shaped like::

    {
      "invert": {"maxDimension": 10000, "smallThreshold": 4, "mediumThreshold": 25,
                 "smallRuns": 30, "mediumRuns": 10, "largeRuns": 1},
      "timing": {"enabled": false, "delay_between_runs_ms": 50},
      "storage": {"max_history_items": 10},
      "verification": {"pixel_diff_threshold": 1}
    }
"""
from dataclasses import dataclass, field, asdict, fields
from typing import Dict, Optional
import json
import os
import tempfile
import uuid

from scenarios import Scenario


class ConfigError(ValueError):
    pass


# settings-file key -> RunPolicy attribute
_POLICY_KEYS = {
    'maxDimension': 'max_dimension',
    'smallThreshold': 'small_threshold_mp',
    'mediumThreshold': 'medium_threshold_mp',
    'smallRuns': 'small_runs',
    'mediumRuns': 'medium_runs',
    'largeRuns': 'large_runs',
}


@dataclass
class RunPolicy:
    small_threshold_mp: float = 4.0
    medium_threshold_mp: float = 25.0
    small_runs: int = 30
    medium_runs: int = 10
    large_runs: int = 1
    max_dimension: int = 10000

    def size_category(self, megapixels: float) -> str:
        if megapixels < self.small_threshold_mp:
            return 'Small'
        if megapixels < self.medium_threshold_mp:
            return 'Medium'
        return 'Large'

    def run_count_for(self, megapixels: float) -> int:
        category = self.size_category(megapixels)
        if category == 'Small':
            return self.small_runs
        if category == 'Medium':
            return self.medium_runs
        return self.large_runs

    def validate(self) -> None:
        if self.small_threshold_mp > self.medium_threshold_mp:
            raise ConfigError('smallThreshold must not exceed mediumThreshold')
        for name in ('small_runs', 'medium_runs', 'large_runs', 'max_dimension'):
            if int(getattr(self, name)) < 1:
                raise ConfigError(f'{name} must be >= 1')


@dataclass
class TimingConfig:
    """UI pacing delays. They never affect measured times."""
    enabled: bool = False
    delay_between_runs_ms: float = 50.0
    phase_delay_ms: float = 800.0
    result_display_delay_ms: float = 1000.0


@dataclass
class StorageConfig:
    max_history_items: int = 10
    max_size_samples: int = 100
    session_key_prefix: str = 'results_'
    size_key_prefix: str = 'image_size_'
    session_id: Optional[str] = None
    session_dir: Optional[str] = None
    durable_dir: Optional[str] = None

    def resolved_session_dir(self) -> str:
        if self.session_dir:
            return self.session_dir
        session_id = self.session_id or os.environ.get('IMGBENCH_SESSION') or f'pid{os.getppid()}'
        return os.path.join(tempfile.gettempdir(), f'imgbench-session-{session_id}')

    def resolved_durable_dir(self) -> str:
        return self.durable_dir or os.path.join(os.path.expanduser('~'), '.imgbench')


@dataclass
class VerificationConfig:
    pixel_diff_threshold: int = 1
    floating_point_tolerance: float = 0.004


@dataclass
class BenchmarkConfig:
    run_policies: Dict[str, RunPolicy] = field(default_factory=lambda: {s.value: RunPolicy() for s in Scenario})
    timing: TimingConfig = field(default_factory=TimingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)

    def policy_for(self, scenario) -> RunPolicy:
        key = Scenario(scenario).value
        return self.run_policies.setdefault(key, RunPolicy())

    def to_settings(self) -> Dict:
        settings = {}
        for key, policy in self.run_policies.items():
            settings[key] = {file_key: getattr(policy, attr) for file_key, attr in _POLICY_KEYS.items()}
        settings['timing'] = asdict(self.timing)
        settings['storage'] = asdict(self.storage)
        settings['verification'] = asdict(self.verification)
        return settings


def _overlay(target, values: Dict, section: str) -> None:
    if not isinstance(values, dict):
        raise ConfigError(f"'{section}' must be an object")
    known = {f.name for f in fields(target)}
    for k, v in values.items():
        if k not in known:
            raise ConfigError(f"Unknown setting '{section}.{k}'")
        setattr(target, k, v)


def config_from_settings(settings: Dict) -> BenchmarkConfig:
    cfg = BenchmarkConfig()
    if not isinstance(settings, dict):
        raise ConfigError('settings must be a JSON object')
    for key, values in settings.items():
        if key in ('timing', 'storage', 'verification'):
            _overlay(getattr(cfg, key), values, key)
            continue
        try:
            scenario = Scenario(key)
        except ValueError:
            raise ConfigError(f"Unknown scenario '{key}' in settings")
        if not isinstance(values, dict):
            raise ConfigError(f"settings for '{key}' must be an object")
        policy = cfg.policy_for(scenario)
        for file_key, v in values.items():
            attr = _POLICY_KEYS.get(file_key)
            if attr is None:
                raise ConfigError(f"Unknown setting '{key}.{file_key}'")
            setattr(policy, attr, v)
        policy.validate()
    if int(cfg.storage.max_history_items) < 1 or int(cfg.storage.max_size_samples) < 1:
        raise ConfigError('storage caps must be >= 1')
    if not 0 <= int(cfg.verification.pixel_diff_threshold) <= 255:
        raise ConfigError('pixel_diff_threshold must be within 0..255')
    return cfg


def load_config(path: Optional[str] = None) -> BenchmarkConfig:
    """Load settings from a JSON file; a missing file yields the defaults."""
    if path is None or not os.path.exists(path):
        return BenchmarkConfig()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            settings = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f'Invalid settings file {path}: {e}')
    return config_from_settings(settings)


def save_config(config: BenchmarkConfig, path: str) -> str:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(config.to_settings(), f, indent=2)
    return path


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]
