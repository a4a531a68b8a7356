"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for router configs.
"""

import os
import tempfile
from datetime import datetime, timezone

import pytest
import yaml

from enhance_guard.config.loader import (
    DEFAULT_CAPACITIES,
    CapacityConfig,
    ResetPeriod,
    ScoreWeights,
    TaskRoute,
    default_config,
    load_router_config,
)
from enhance_guard.core.errors import NoProvidersAvailable
from enhance_guard.core.types import CostClass, EditTask, ProviderID, Tier


def _valid_config() -> dict:
    return {
        "capacities": {
            "free": {"budget": 10, "premium": 2},
            "pro": {"budget": 100, "premium": 20},
        },
        "tasks": {
            "simple_enhance": {
                "cost_class": "budget",
                "providers": ["openai", "gemini"],
                "on_device_fallback": True,
            },
            "custom_prompt": {
                "cost_class": "premium",
                "providers": ["gemini"],
            },
        },
    }


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config = load_router_config(self._write_config(_valid_config()))

        assert config.capacities[Tier.FREE] == CapacityConfig(budget=10, premium=2)
        assert config.capacities[Tier.PRO] == CapacityConfig(budget=100, premium=20)

        route = config.route_for(EditTask.SIMPLE_ENHANCE)
        assert route.cost_class == CostClass.BUDGET
        assert route.providers == (ProviderID.OPENAI, ProviderID.GEMINI)
        assert route.on_device_fallback is True

        premium_route = config.route_for(EditTask.CUSTOM_PROMPT)
        assert premium_route.cost_class == CostClass.PREMIUM
        assert premium_route.on_device_fallback is False

        # Defaults for optional sections
        assert config.reset_period.is_monthly
        assert config.provider_timeout_seconds == 30.0
        assert config.high_quality_threshold == 0.9
        assert config.score_weights == ScoreWeights()

    def test_optional_sections_load(self):
        """Test reset period, timeout, weights and provider quality overrides."""
        data = _valid_config()
        data["reset_period"] = "7d"
        data["provider_timeout_seconds"] = 5
        data["high_quality_threshold"] = 0.95
        data["score_weights"] = {"sharpness": 1, "exposure": 1, "composition": 0}
        data["provider_quality"] = {"openai": 0.7}

        config = load_router_config(self._write_config(data))

        assert config.reset_period == ResetPeriod(days=7)
        assert config.provider_timeout_seconds == 5.0
        assert config.high_quality_threshold == 0.95
        assert config.score_weights == ScoreWeights(sharpness=1.0, exposure=1.0, composition=0.0)
        assert config.quality_of(ProviderID.OPENAI) == 0.7
        # Unlisted providers keep their defaults
        assert config.quality_of(ProviderID.GEMINI) == 0.95

    def test_result_cache_settings_load(self):
        data = _valid_config()
        data["result_cache_size"] = 0
        data["result_cache_ttl_seconds"] = 3600

        config = load_router_config(self._write_config(data))

        assert config.result_cache_size == 0
        assert config.result_cache_ttl_seconds == 3600.0
        assert default_config().result_cache_size == 50

    @pytest.mark.parametrize("key, value", [
        ("result_cache_size", -1),
        ("result_cache_size", 2.5),
        ("result_cache_size", True),
        ("result_cache_ttl_seconds", 0),
    ])
    def test_invalid_result_cache_settings_raise(self, key, value):
        data = _valid_config()
        data[key] = value

        with pytest.raises(ValueError, match=key):
            load_router_config(self._write_config(data))

    def test_missing_file_raises(self):
        """Test that a missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Router config file not found"):
            load_router_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises(self):
        """Test that malformed YAML raises YAMLError."""
        path = os.path.join(self.temp_dir, "broken.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("capacities: [unclosed\n")

        with pytest.raises(yaml.YAMLError, match="Invalid YAML"):
            load_router_config(path)

    def test_empty_file_raises(self):
        """Test that an empty config file is rejected."""
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()

        with pytest.raises(ValueError, match="empty"):
            load_router_config(path)

    def test_unknown_top_level_key_raises(self):
        """Test that unknown keys are rejected rather than ignored."""
        data = _valid_config()
        data["cache"] = {"enabled": True}

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_router_config(self._write_config(data))

    def test_missing_capacities_raises(self):
        """Test that the capacities section is required."""
        data = _valid_config()
        del data["capacities"]

        with pytest.raises(ValueError, match="Missing required 'capacities'"):
            load_router_config(self._write_config(data))

    def test_missing_tier_raises(self):
        """Test that every tier needs a capacity."""
        data = _valid_config()
        del data["capacities"]["pro"]

        with pytest.raises(ValueError, match="Missing capacities for tiers"):
            load_router_config(self._write_config(data))

    def test_negative_capacity_raises(self):
        """Test that capacities must be non-negative integers."""
        data = _valid_config()
        data["capacities"]["free"]["budget"] = -1

        with pytest.raises(ValueError, match="must be an integer >= 0"):
            load_router_config(self._write_config(data))

    def test_boolean_capacity_raises(self):
        """Test that booleans are not accepted as capacities."""
        data = _valid_config()
        data["capacities"]["free"]["premium"] = True

        with pytest.raises(ValueError, match="must be an integer >= 0"):
            load_router_config(self._write_config(data))

    def test_unknown_task_raises(self):
        """Test that unknown task names are rejected."""
        data = _valid_config()
        data["tasks"]["teleport"] = {"cost_class": "budget", "providers": ["openai"]}

        with pytest.raises(ValueError, match="'teleport' in tasks must be one of"):
            load_router_config(self._write_config(data))

    def test_unknown_provider_raises(self):
        """Test that unknown provider names are rejected."""
        data = _valid_config()
        data["tasks"]["simple_enhance"]["providers"] = ["openai", "midjourney"]

        with pytest.raises(ValueError, match="'midjourney'"):
            load_router_config(self._write_config(data))

    def test_on_device_in_provider_list_raises(self):
        """Test that on_device is only enabled through the fallback flag."""
        data = _valid_config()
        data["tasks"]["simple_enhance"]["providers"] = ["openai", "on_device"]

        with pytest.raises(ValueError, match="Invalid route in tasks.simple_enhance"):
            load_router_config(self._write_config(data))

    def test_free_route_without_fallback_raises(self):
        """Test that a free route must allow on-device processing."""
        data = _valid_config()
        data["tasks"]["cleanup"] = {"cost_class": "free", "providers": []}

        with pytest.raises(ValueError, match="on_device_fallback"):
            load_router_config(self._write_config(data))

    def test_non_positive_timeout_raises(self):
        """Test that the provider timeout must be positive."""
        data = _valid_config()
        data["provider_timeout_seconds"] = 0

        with pytest.raises(ValueError, match="provider_timeout_seconds"):
            load_router_config(self._write_config(data))

    def test_invalid_reset_period_raises(self):
        """Test that reset periods other than monthly or <N>d are rejected."""
        data = _valid_config()
        data["reset_period"] = "weekly"

        with pytest.raises(ValueError, match="reset_period"):
            load_router_config(self._write_config(data))


class TestDefaults:
    """Test built-in defaults."""

    def test_default_capacities(self):
        """Test the default per-tier credit table."""
        assert DEFAULT_CAPACITIES[Tier.FREE] == CapacityConfig(budget=50, premium=5)
        assert DEFAULT_CAPACITIES[Tier.PRO] == CapacityConfig(budget=500, premium=300)

    def test_default_config_routes_every_task(self):
        """Test that the default config has a route for every task."""
        config = default_config()
        for task in EditTask:
            assert config.route_for(task) is not None

    def test_route_for_unconfigured_task_raises(self):
        """Test that a missing route surfaces as NoProvidersAvailable."""
        config = default_config()
        tasks = dict(config.tasks)
        del tasks[EditTask.CLEANUP]
        trimmed = type(config)(capacities=config.capacities, tasks=tasks)

        with pytest.raises(NoProvidersAvailable):
            trimmed.route_for(EditTask.CLEANUP)

    def test_capacity_lookup(self):
        """Test capacity lookups per tier and class."""
        config = default_config()
        assert config.capacity(Tier.PRO, CostClass.PREMIUM) == 300
        assert config.capacity(Tier.FREE, CostClass.BUDGET) == 50


class TestResetPeriod:
    """Test reset period arithmetic."""

    def test_parse(self):
        assert ResetPeriod.parse("monthly") == ResetPeriod()
        assert ResetPeriod.parse("30d") == ResetPeriod(days=30)
        assert ResetPeriod.parse(" Monthly ").is_monthly

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            ResetPeriod.parse("30")
        with pytest.raises(ValueError):
            ResetPeriod(days=0)

    def test_monthly_period_start(self):
        """Test that monthly periods start on the 1st at midnight."""
        now = datetime(2024, 3, 17, 15, 42, tzinfo=timezone.utc)
        assert ResetPeriod().period_start_for(now) == datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_monthly_boundary_rolls_over_year(self):
        """Test that December rolls over into January."""
        start = datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert ResetPeriod().next_boundary(start) == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_fixed_days_boundary(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert ResetPeriod(days=30).next_boundary(start) == datetime(2024, 1, 31, tzinfo=timezone.utc)


class TestValueObjects:
    """Test smaller config value objects."""

    def test_score_weights_are_normalised(self):
        """Test that weights need not sum to one."""
        weights = ScoreWeights(sharpness=2, exposure=2, composition=0)
        assert weights.combine(1.0, 0.5, 0.0) == pytest.approx(0.75)

    def test_score_weights_reject_all_zero(self):
        with pytest.raises(ValueError, match="must not all be zero"):
            ScoreWeights(sharpness=0, exposure=0, composition=0)

    def test_route_priority(self):
        """Test preferred order lookups, with unlisted providers last."""
        route = TaskRoute(CostClass.BUDGET, (ProviderID.OPENAI, ProviderID.CLIPDROP))
        assert route.priority(ProviderID.OPENAI) == 0
        assert route.priority(ProviderID.CLIPDROP) == 1
        assert route.priority(ProviderID.GEMINI) == 2

    def test_route_rejects_duplicates(self):
        with pytest.raises(ValueError, match="duplicates"):
            TaskRoute(CostClass.BUDGET, (ProviderID.OPENAI, ProviderID.OPENAI))
