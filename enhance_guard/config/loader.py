"""
Configuration management and loading.

Handles credit capacities, the reset schedule, per-task provider routes and
frame scoring weights.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from enhance_guard.core.errors import NoProvidersAvailable
from enhance_guard.core.types import CostClass, EditTask, ProviderID, Tier

UNLIMITED = 2 ** 63 - 1


@dataclass(frozen=True)
class CapacityConfig:
    """Credits available per period for one tier."""
    budget: int
    premium: int

    def __post_init__(self):
        """Validate capacities are non-negative integers."""
        if not isinstance(self.budget, int) or self.budget < 0:
            raise ValueError("budget capacity must be an integer >= 0")
        if not isinstance(self.premium, int) or self.premium < 0:
            raise ValueError("premium capacity must be an integer >= 0")

    def for_cost_class(self, cost_class: CostClass) -> int:
        if cost_class is CostClass.BUDGET:
            return self.budget
        if cost_class is CostClass.PREMIUM:
            return self.premium
        return UNLIMITED


@dataclass(frozen=True)
class ResetPeriod:
    """Recurring window after which consumed credits return to zero.

    ``days=None`` is a calendar month starting on the 1st at 00:00 UTC.
    Otherwise periods are fixed runs of ``days`` days.
    """
    days: Optional[int] = None

    def __post_init__(self):
        if self.days is not None and self.days <= 0:
            raise ValueError("reset period days must be > 0")

    @property
    def is_monthly(self) -> bool:
        return self.days is None

    @property
    def label(self) -> str:
        return "monthly" if self.is_monthly else f"{self.days}d"

    @classmethod
    def parse(cls, value: str) -> "ResetPeriod":
        """Parse ``monthly`` or ``<N>d``."""
        text = str(value).strip().lower()
        if text == "monthly":
            return cls()
        if text.endswith("d") and text[:-1].isdigit():
            return cls(days=int(text[:-1]))
        raise ValueError(f"reset_period must be 'monthly' or '<N>d', got '{value}'")

    def period_start_for(self, now: datetime) -> datetime:
        """Start of the period that contains ``now``."""
        if self.is_monthly:
            return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return now.replace(hour=0, minute=0, second=0, microsecond=0)

    def next_boundary(self, start: datetime) -> datetime:
        """Start of the period following the one beginning at ``start``."""
        if not self.is_monthly:
            return start + timedelta(days=self.days)
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1, day=1)
        return start.replace(month=start.month + 1, day=1)


@dataclass(frozen=True)
class ScoreWeights:
    """Weights combining frame sub-scores into the overall score."""
    sharpness: float = 0.5
    exposure: float = 0.3
    composition: float = 0.2

    def __post_init__(self):
        for name in ("sharpness", "exposure", "composition"):
            if getattr(self, name) < 0:
                raise ValueError(f"score weight '{name}' must be >= 0")
        if self.total <= 0:
            raise ValueError("score weights must not all be zero")

    @property
    def total(self) -> float:
        return self.sharpness + self.exposure + self.composition

    def combine(self, sharpness: float, exposure: float, composition: float) -> float:
        """Weighted mean of the sub-scores, clamped to [0, 1]."""
        value = (
            sharpness * self.sharpness
            + exposure * self.exposure
            + composition * self.composition
        ) / self.total
        return min(max(value, 0.0), 1.0)


@dataclass(frozen=True)
class TaskRoute:
    """Default cost class and preferred provider order for one task."""
    cost_class: CostClass
    providers: Tuple[ProviderID, ...]
    on_device_fallback: bool = False

    def __post_init__(self):
        if ProviderID.ON_DEVICE in self.providers:
            raise ValueError("on_device is added through on_device_fallback, not the provider list")
        if len(set(self.providers)) != len(self.providers):
            raise ValueError("provider list contains duplicates")
        if self.cost_class is CostClass.FREE and not self.on_device_fallback:
            raise ValueError("a free task route must enable on_device_fallback")
        if not self.providers and not self.on_device_fallback:
            raise ValueError("a task route needs at least one provider")

    def priority(self, provider: ProviderID) -> int:
        """Position in the preferred order; unlisted providers sort last."""
        try:
            return self.providers.index(provider)
        except ValueError:
            return len(self.providers)


DEFAULT_CAPACITIES: Dict[Tier, CapacityConfig] = {
    Tier.FREE: CapacityConfig(budget=50, premium=5),
    Tier.PRO: CapacityConfig(budget=500, premium=300),
}

DEFAULT_ROUTES: Dict[EditTask, TaskRoute] = {
    EditTask.SIMPLE_ENHANCE: TaskRoute(
        CostClass.BUDGET,
        (ProviderID.FAL_FLUX, ProviderID.OPENAI, ProviderID.GEMINI),
        on_device_fallback=True,
    ),
    EditTask.BACKGROUND_REMOVAL: TaskRoute(
        CostClass.BUDGET,
        (ProviderID.CLIPDROP, ProviderID.GEMINI),
        on_device_fallback=False,
    ),
    EditTask.CLEANUP: TaskRoute(
        CostClass.BUDGET,
        (ProviderID.CLIPDROP, ProviderID.OPENAI, ProviderID.GEMINI),
        on_device_fallback=True,
    ),
    EditTask.CREATIVE_EDIT: TaskRoute(
        CostClass.BUDGET,
        (ProviderID.FAL_FLUX, ProviderID.OPENAI, ProviderID.GEMINI),
        on_device_fallback=True,
    ),
    EditTask.CUSTOM_PROMPT: TaskRoute(
        CostClass.PREMIUM,
        (ProviderID.GEMINI, ProviderID.OPENAI),
        on_device_fallback=False,
    ),
}

DEFAULT_PROVIDER_QUALITY: Dict[ProviderID, float] = {
    ProviderID.GEMINI: 0.95,
    ProviderID.OPENAI: 0.9,
    ProviderID.FAL_FLUX: 0.85,
    ProviderID.CLIPDROP: 0.85,
    ProviderID.ON_DEVICE: 0.6,
}


@dataclass(frozen=True)
class RouterConfig:
    """Complete routing and accounting configuration."""
    capacities: Dict[Tier, CapacityConfig] = field(default_factory=lambda: dict(DEFAULT_CAPACITIES))
    tasks: Dict[EditTask, TaskRoute] = field(default_factory=lambda: dict(DEFAULT_ROUTES))
    reset_period: ResetPeriod = field(default_factory=ResetPeriod)
    provider_timeout_seconds: float = 30.0
    high_quality_threshold: float = 0.9
    # Completed results kept for identical repeat requests; 0 disables the cache
    result_cache_size: int = 50
    result_cache_ttl_seconds: float = 7 * 24 * 3600.0
    score_weights: ScoreWeights = field(default_factory=ScoreWeights)
    provider_quality: Dict[ProviderID, float] = field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_QUALITY)
    )

    def __post_init__(self):
        missing = set(Tier) - set(self.capacities)
        if missing:
            raise ValueError(f"Missing capacities for tiers: {sorted(t.value for t in missing)}")
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be > 0")
        if not 0.0 <= self.high_quality_threshold <= 1.0:
            raise ValueError("high_quality_threshold must be within [0, 1]")
        if self.result_cache_size < 0:
            raise ValueError("result_cache_size must be >= 0")
        if self.result_cache_ttl_seconds <= 0:
            raise ValueError("result_cache_ttl_seconds must be > 0")
        for provider, quality in self.provider_quality.items():
            if not 0.0 <= quality <= 1.0:
                raise ValueError(f"provider_quality for {provider.value} must be within [0, 1]")

    def route_for(self, task: EditTask) -> TaskRoute:
        """Get the route of a task.

        Raises:
            NoProvidersAvailable: If the task has no configured route
        """
        route = self.tasks.get(task)
        if route is None:
            raise NoProvidersAvailable(task, "no route configured")
        return route

    def capacity(self, tier: Tier, cost_class: CostClass) -> int:
        return self.capacities[tier].for_cost_class(cost_class)

    def quality_of(self, provider: ProviderID) -> float:
        return self.provider_quality.get(provider, 0.0)


def default_config() -> RouterConfig:
    """Built-in configuration used when no file is given."""
    return RouterConfig()


def load_router_config(path: str) -> RouterConfig:
    """Load and validate routing configuration from a YAML file.

    Strict validation ensures no silent misconfiguration can hand out more
    credits than intended or leave a task without providers.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated RouterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Router config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {
        'capacities', 'tasks', 'reset_period', 'provider_timeout_seconds',
        'high_quality_threshold', 'score_weights', 'provider_quality',
        'result_cache_size', 'result_cache_ttl_seconds',
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'capacities' not in raw_config:
        raise ValueError("Missing required 'capacities' section")
    capacities = _parse_capacities(raw_config['capacities'])

    if 'tasks' not in raw_config:
        raise ValueError("Missing required 'tasks' section")
    tasks = _parse_tasks(raw_config['tasks'])

    reset_period = ResetPeriod.parse(raw_config.get('reset_period', 'monthly'))

    timeout = raw_config.get('provider_timeout_seconds', 30.0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError("'provider_timeout_seconds' must be > 0")

    threshold = raw_config.get('high_quality_threshold', 0.9)
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        raise ValueError("'high_quality_threshold' must be a number")

    cache_size = raw_config.get('result_cache_size', 50)
    if isinstance(cache_size, bool) or not isinstance(cache_size, int) or cache_size < 0:
        raise ValueError("'result_cache_size' must be a non-negative integer")

    cache_ttl = raw_config.get('result_cache_ttl_seconds', 7 * 24 * 3600.0)
    if isinstance(cache_ttl, bool) or not isinstance(cache_ttl, (int, float)) or cache_ttl <= 0:
        raise ValueError("'result_cache_ttl_seconds' must be > 0")

    score_weights = ScoreWeights()
    if 'score_weights' in raw_config:
        score_weights = _parse_score_weights(raw_config['score_weights'])

    provider_quality = dict(DEFAULT_PROVIDER_QUALITY)
    if 'provider_quality' in raw_config:
        provider_quality.update(_parse_provider_quality(raw_config['provider_quality']))

    return RouterConfig(
        capacities=capacities,
        tasks=tasks,
        reset_period=reset_period,
        provider_timeout_seconds=float(timeout),
        high_quality_threshold=float(threshold),
        result_cache_size=cache_size,
        result_cache_ttl_seconds=float(cache_ttl),
        score_weights=score_weights,
        provider_quality=provider_quality,
    )


def _parse_capacities(data) -> Dict[Tier, CapacityConfig]:
    """Parse the per-tier capacity table.

    Raises:
        ValueError: If a tier is unknown or missing, or a capacity is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'capacities' must be a dictionary")

    capacities = {}
    for tier_name, tier_data in data.items():
        tier = _parse_enum(Tier, tier_name, "capacities")
        if not isinstance(tier_data, dict):
            raise ValueError(f"capacities.{tier_name} must be a dictionary")

        allowed_keys = {'budget', 'premium'}
        unknown_keys = set(tier_data.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in capacities.{tier_name}: {unknown_keys}")
        for key in allowed_keys:
            if key not in tier_data:
                raise ValueError(f"Missing required '{key}' in capacities.{tier_name}")
            value = tier_data[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"'{key}' in capacities.{tier_name} must be an integer >= 0")

        capacities[tier] = CapacityConfig(budget=tier_data['budget'], premium=tier_data['premium'])

    missing = set(Tier) - set(capacities)
    if missing:
        raise ValueError(f"Missing capacities for tiers: {sorted(t.value for t in missing)}")
    return capacities


def _parse_tasks(data) -> Dict[EditTask, TaskRoute]:
    """Parse the task to provider route table."""
    if not isinstance(data, dict) or not data:
        raise ValueError("'tasks' must be a non-empty dictionary")

    tasks = {}
    for task_name, route_data in data.items():
        task = _parse_enum(EditTask, task_name, "tasks")
        path = f"tasks.{task_name}"
        if not isinstance(route_data, dict):
            raise ValueError(f"{path} must be a dictionary")

        allowed_keys = {'cost_class', 'providers', 'on_device_fallback'}
        unknown_keys = set(route_data.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

        if 'cost_class' not in route_data:
            raise ValueError(f"Missing required 'cost_class' in {path}")
        cost_class = _parse_enum(CostClass, route_data['cost_class'], f"{path}.cost_class")

        providers_data = route_data.get('providers', [])
        if not isinstance(providers_data, list):
            raise ValueError(f"'providers' in {path} must be a list")
        providers = tuple(
            _parse_enum(ProviderID, name, f"{path}.providers") for name in providers_data
        )

        fallback = route_data.get('on_device_fallback', False)
        if not isinstance(fallback, bool):
            raise ValueError(f"'on_device_fallback' in {path} must be a boolean")

        try:
            tasks[task] = TaskRoute(cost_class, providers, on_device_fallback=fallback)
        except ValueError as e:
            raise ValueError(f"Invalid route in {path}: {e}")

    return tasks


def _parse_score_weights(data) -> ScoreWeights:
    if not isinstance(data, dict):
        raise ValueError("'score_weights' must be a dictionary")

    allowed_keys = {'sharpness', 'exposure', 'composition'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown score weight keys: {unknown_keys}")
    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"score weight '{key}' must be a number")

    return ScoreWeights(**{key: float(value) for key, value in data.items()})


def _parse_provider_quality(data) -> Dict[ProviderID, float]:
    if not isinstance(data, dict):
        raise ValueError("'provider_quality' must be a dictionary")

    quality = {}
    for name, value in data.items():
        provider = _parse_enum(ProviderID, name, "provider_quality")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"provider_quality.{name} must be a number")
        quality[provider] = float(value)
    return quality


def _parse_enum(enum_cls, value, path: str):
    """Parse an enum member from its string value with a helpful error."""
    if not isinstance(value, str):
        raise ValueError(f"'{path}' entries must be strings, got {value!r}")
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{value}' in {path} must be one of: {valid}")
