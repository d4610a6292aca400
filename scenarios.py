"""Benchmark scenarios and the two implementations compared for each of them."""
from dataclasses import dataclass, field
from enum import Enum
from types import ModuleType
from typing import Any, Callable, Dict
import importlib


class Implementation(str, Enum):
    REFERENCE = 'reference'
    OPTIMIZED = 'optimized'

    @property
    def module_name(self) -> str:
        return f'{self.value}_processors'

    @property
    def label(self) -> str:
        return 'Reference (Python)' if self is Implementation.REFERENCE else 'Optimized (numpy/OpenCV)'


class Scenario(str, Enum):
    INVERT = 'invert'
    EDGE_DETECT = 'edge'
    QUANTIZE = 'quantize'


@dataclass(frozen=True)
class ScenarioDefinition:
    scenario: Scenario
    label: str
    routine_name: str
    default_params: Dict[str, Any] = field(default_factory=dict)
    reports_pixel_rate: bool = False


SCENARIO_DEFINITIONS: Dict[Scenario, ScenarioDefinition] = {
    Scenario.INVERT: ScenarioDefinition(Scenario.INVERT, 'Color Inversion', 'invert_colors', reports_pixel_rate=True),
    Scenario.EDGE_DETECT: ScenarioDefinition(Scenario.EDGE_DETECT, 'Edge Detection', 'detect_edges'),
    Scenario.QUANTIZE: ScenarioDefinition(Scenario.QUANTIZE, 'K-Means Quantization', 'quantize', default_params={'k': 8}),
}

_missing = set(Scenario) - set(SCENARIO_DEFINITIONS)
if _missing:
    raise RuntimeError(f'Scenarios without a definition: {sorted(s.value for s in _missing)}')


def get_definition(scenario) -> ScenarioDefinition:
    return SCENARIO_DEFINITIONS[Scenario(scenario)]


def load_implementation(implementation) -> ModuleType:
    """Import the processing module backing an implementation."""
    return importlib.import_module(Implementation(implementation).module_name)


def resolve_routine(module: ModuleType, scenario) -> Callable:
    definition = get_definition(scenario)
    try:
        return getattr(module, definition.routine_name)
    except AttributeError:
        raise ImportError(f"{module.__name__} does not provide '{definition.routine_name}'")
