"""
Configuration management and loading.

Handles engine settings: window sizes, compiler thresholds, scheduler
cadence and the pricing table.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict

import yaml

from ai_cost_controller.core.compiler import CompilerConfig
from ai_cost_controller.core.pricing import DEFAULT_PRICING, TIERS, ModelPricing, PricingTable
from ai_cost_controller.core.runtime import DEFAULT_ANALYSIS_EVENTS, DEFAULT_MAX_EVENTS


@dataclass(frozen=True)
class WindowConfig:
    """Rolling window sizes."""
    max_events: int = DEFAULT_MAX_EVENTS
    analysis_events: int = DEFAULT_ANALYSIS_EVENTS

    def __post_init__(self):
        """Validate the analysis slice fits in the buffer."""
        if self.max_events <= 0:
            raise ValueError("max_events must be > 0")
        if self.analysis_events <= 0:
            raise ValueError("analysis_events must be > 0")
        if self.analysis_events > self.max_events:
            raise ValueError("analysis_events cannot exceed max_events")


@dataclass(frozen=True)
class SchedulerConfig:
    """Cold-path cadence."""
    interval_seconds: float = 0.5

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    window: WindowConfig = field(default_factory=WindowConfig)
    compiler: CompilerConfig = field(default_factory=CompilerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    pricing: PricingTable = DEFAULT_PRICING

    @classmethod
    def default(cls) -> "EngineConfig":
        return cls()


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys and
    wrongly typed values are rejected rather than ignored. Omitted sections
    and keys take their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'window', 'compiler', 'scheduler', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return EngineConfig(
        window=_parse_section(raw_config.get('window', {}), WindowConfig, 'window'),
        compiler=_parse_section(raw_config.get('compiler', {}), CompilerConfig, 'compiler'),
        scheduler=_parse_section(raw_config.get('scheduler', {}), SchedulerConfig, 'scheduler'),
        pricing=_parse_pricing(raw_config['pricing']) if 'pricing' in raw_config else DEFAULT_PRICING,
    )


def _parse_section(data: Any, section_cls, path: str):
    """Parse a flat section into its dataclass, type-checking each value.

    Args:
        data: Section mapping from YAML
        section_cls: Dataclass to build
        path: Path for error messages

    Returns:
        Validated section dataclass

    Raises:
        ValueError: If the section is invalid
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    defaults = section_cls()
    allowed_keys = {f.name for f in fields(section_cls)}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, value in data.items():
        default = getattr(defaults, key)
        if key == 'seed' and value is None:
            values[key] = None
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in {path} must be a number")
        if isinstance(default, int) and not isinstance(default, bool):
            if not isinstance(value, int):
                raise ValueError(f"'{key}' in {path} must be an integer")
            values[key] = value
        else:
            values[key] = float(value)

    return section_cls(**values)


def _parse_pricing(data: Any) -> PricingTable:
    """Parse the `pricing` section into a PricingTable.

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict) or not data:
        raise ValueError("'pricing' must be a non-empty dictionary")

    prices = {}
    for model, entry in data.items():
        path = f"pricing.{model}"
        if not isinstance(entry, dict):
            raise ValueError(f"'{path}' must be a dictionary")

        allowed_keys = {'cost_per_1k', 'tier'}
        unknown_keys = set(entry.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        if 'cost_per_1k' not in entry:
            raise ValueError(f"Missing required 'cost_per_1k' in {path}")
        if 'tier' not in entry:
            raise ValueError(f"Missing required 'tier' in {path}")

        try:
            cost = Decimal(str(entry['cost_per_1k']))
        except InvalidOperation:
            raise ValueError(f"'cost_per_1k' in {path} must be a number")
        if cost < 0:
            raise ValueError(f"'cost_per_1k' in {path} must be >= 0")

        tier = entry['tier']
        if not isinstance(tier, str) or tier.lower() not in TIERS:
            raise ValueError(f"'tier' in {path} must be one of: {list(TIERS)}")

        prices[str(model)] = ModelPricing(cost_per_1k=cost, tier=tier.lower())

    return PricingTable(prices)
