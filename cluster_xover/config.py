"""
Configuration handling for cluster crossover.

Loads YAML run configurations, merges them over the defaults, validates
them and builds crossover operators from them.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import yaml

from .collision import ENGINES, SCORERS
from .crossover import SpatialCrossover
from .cut_utils import AXES, PlaneCut, SphereCut
from .interfaces import EnergyBackend
from .properties import AtomicProperties, DEFAULT_PROPERTIES
from .refinement import RefinementConfig

logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when run configuration is invalid."""
    pass


DEFAULT_CONFIG: Dict[str, Any] = {
    'seed': None,
    'crossover_strategy': 'plane',
    'plane': {'axis': 'z'},
    'cut_mode': 'uniform',
    'gauss_width': 0.3,
    'random_rotation': False,
    'adjust_exchanged': True,
    'max_attempts': 1000,
    'degeneracy_tolerance': 1e-8,
    'collision': {
        'engine': 'advancedgrid',
        'cell_size': 7.0,
        'blow_factor': 1.0,
        'scorer': 'constant',
        'check_children': False,
        'reject_clashing': False,
    },
    'refinement': {
        'enabled': False,
        'inflate': True,
        'optimize': True,
        'max_inflation': 1.3,
        'inflation_increment': 0.05,
        'min_scale': 0.8,
        'max_scale': 1.5,
        'blow_collision': 1.0,
        'blow_dissociation': 3.0,
        'initial_trust': 0.1,
        'stopping_trust': 1e-5,
        'max_iterations': 250,
        'penalty_energy': 1e10,
    },
}


def load_run_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load run configuration from YAML file.

    Args:
        config_path: Path to run configuration YAML file

    Returns:
        Dictionary containing run configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigValidationError: If config is invalid
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with open(config_file, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML in configuration file: {e}")

    if config is None:
        raise ConfigValidationError("Configuration file is empty")
    if not isinstance(config, dict):
        raise ConfigValidationError("Configuration must be a mapping at the top level")

    return config


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _require_number(value: Any, name: str, positive: bool = True) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigValidationError(f"'{name}' must be a number, got: {value!r}")
    if positive and value <= 0:
        raise ConfigValidationError(f"'{name}' must be positive, got: {value}")


def _require_bool(value: Any, name: str) -> None:
    if not isinstance(value, bool):
        raise ConfigValidationError(f"'{name}' must be true or false, got: {value!r}")


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate a merged crossover configuration.

    Args:
        config: Configuration dictionary (defaults already merged in)

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    unknown = set(config) - set(DEFAULT_CONFIG)
    if unknown:
        raise ConfigValidationError(f"Unknown configuration key: '{sorted(unknown)[0]}'")

    seed = config['seed']
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int) or seed < 0):
        raise ConfigValidationError(f"'seed' must be a non-negative integer or null, got: {seed!r}")

    strategy = config['crossover_strategy']
    if strategy not in ('plane', 'sphere'):
        raise ConfigValidationError(
            f"Invalid crossover_strategy: '{strategy}'. Must be 'plane' or 'sphere'"
        )

    if not isinstance(config['plane'], dict):
        raise ConfigValidationError("'plane' must be a dictionary")
    if config['plane'].get('axis') not in AXES:
        raise ConfigValidationError(
            f"Invalid plane.axis: '{config['plane'].get('axis')}'. Must be one of {sorted(AXES)}"
        )

    modes = PlaneCut.modes if strategy == 'plane' else SphereCut.modes
    if config['cut_mode'] not in modes:
        raise ConfigValidationError(
            f"Invalid cut_mode for {strategy} crossover: '{config['cut_mode']}'. "
            f"Must be one of {list(modes)}"
        )

    _require_number(config['gauss_width'], 'gauss_width')
    _require_bool(config['random_rotation'], 'random_rotation')
    _require_bool(config['adjust_exchanged'], 'adjust_exchanged')
    _require_number(config['degeneracy_tolerance'], 'degeneracy_tolerance')

    max_attempts = config['max_attempts']
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts <= 0:
        raise ConfigValidationError(
            f"'max_attempts' must be a positive integer, got: {max_attempts!r}"
        )

    collision = config['collision']
    if not isinstance(collision, dict):
        raise ConfigValidationError("'collision' must be a dictionary")
    unknown = set(collision) - set(DEFAULT_CONFIG['collision'])
    if unknown:
        raise ConfigValidationError(f"Unknown configuration key: 'collision.{sorted(unknown)[0]}'")
    if str(collision['engine']).lower() not in ENGINES:
        raise ConfigValidationError(
            f"Invalid collision.engine: '{collision['engine']}'. Must be one of {sorted(ENGINES)}"
        )
    if str(collision['scorer']).lower() not in SCORERS:
        raise ConfigValidationError(
            f"Invalid collision.scorer: '{collision['scorer']}'. Must be one of {sorted(SCORERS)}"
        )
    _require_number(collision['cell_size'], 'collision.cell_size')
    _require_number(collision['blow_factor'], 'collision.blow_factor')
    _require_bool(collision['check_children'], 'collision.check_children')
    _require_bool(collision['reject_clashing'], 'collision.reject_clashing')

    refinement = config['refinement']
    if not isinstance(refinement, dict):
        raise ConfigValidationError("'refinement' must be a dictionary")
    unknown = set(refinement) - set(DEFAULT_CONFIG['refinement'])
    if unknown:
        raise ConfigValidationError(
            f"Unknown configuration key: 'refinement.{sorted(unknown)[0]}'"
        )
    for key in ('enabled', 'inflate', 'optimize'):
        _require_bool(refinement[key], f'refinement.{key}')
    for key, value in refinement.items():
        if key not in ('enabled', 'inflate', 'optimize'):
            _require_number(value, f'refinement.{key}')
    try:
        RefinementConfig(**refinement)
    except ValueError as e:
        raise ConfigValidationError(f"Invalid refinement settings: {e}")


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load, merge and validate a configuration.

    Args:
        config_path: YAML file, or None for the defaults

    Returns:
        Validated configuration dictionary
    """
    user_config = load_run_config(config_path) if config_path is not None else {}
    config = merge_config(DEFAULT_CONFIG, user_config)
    validate_config(config)
    logger.debug(f"Loaded crossover configuration from {config_path or 'defaults'}")
    return config


def create_crossover_from_config(
    config: Optional[Union[str, Path, Dict[str, Any]]] = None,
    rng: Optional[np.random.Generator] = None,
    backend: Optional[EnergyBackend] = None,
    properties: AtomicProperties = DEFAULT_PROPERTIES
) -> SpatialCrossover:
    """
    Create a crossover operator from a configuration file or dictionary.

    Args:
        config: YAML path, partial configuration dictionary or None
        rng: Random number generator; seeded from config['seed'] if omitted
        backend: Energy backend for refinement
        properties: Atomic property table

    Returns:
        Configured SpatialCrossover
    """
    if isinstance(config, dict):
        merged = merge_config(DEFAULT_CONFIG, config)
        validate_config(merged)
    else:
        merged = load_config(config)

    if rng is None:
        rng = np.random.default_rng(merged['seed'])
    return SpatialCrossover.from_config(merged, rng, backend, properties)
