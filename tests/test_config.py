"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for engine configs.
"""

import copy
import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from fulfillment_engine.config.loader import (
    BalancerPolicy,
    SlaTargetConfig,
    load_engine_config,
    parse_engine_config,
)
from fulfillment_engine.storage.models import RequestKind

from conftest import BASE_CONFIG


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "engine.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, sort_keys=False)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config = load_engine_config(self._write_config(BASE_CONFIG))

        assert set(config.services) == {"design", "post", "copy", "kit"}
        assert config.services["design"].kind == RequestKind.AD_HOC
        assert config.services["kit"].kind == RequestKind.BUNDLE
        assert config.services["design"].price == Decimal("20")
        assert config.services["copy"].sla is None

        assert list(config.vendors) == ["inhouse", "acme_vendor"]
        assert config.vendors["inhouse"].internal is True
        assert config.vendors["acme_vendor"].service_costs["design"] == Decimal("9")
        assert config.admins == ("admin",)

    def test_defaults_applied(self):
        """Test that optional sections fall back to defaults."""
        config = parse_engine_config(copy.deepcopy(BASE_CONFIG))

        assert config.billing_timezone == "America/Chicago"
        assert config.lock_timeout_seconds == 5.0
        assert config.max_attempts == 3
        assert config.balancer == BalancerPolicy()
        assert config.vendors["inhouse"].kinds == (RequestKind.AD_HOC, RequestKind.BUNDLE)

    def test_sla_target_hours(self):
        """Test that SLA days and hours combine into one target."""
        assert SlaTargetConfig(days=1, hours=6).target_hours == 30.0
        config = parse_engine_config(copy.deepcopy(BASE_CONFIG))
        assert config.services["design"].sla.target_hours == 24.0
        assert config.services["post"].sla.target_hours == 4.0

    def test_zero_sla_rejected(self):
        """Test that an SLA of zero days and zero hours is rejected."""
        raw = copy.deepcopy(BASE_CONFIG)
        raw["services"]["design"]["sla"] = {"days": 0, "hours": 0}
        with pytest.raises(ValueError, match="greater than zero"):
            parse_engine_config(raw)

    def test_missing_file_raises_error(self):
        """Test that missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Engine config file not found"):
            load_engine_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file_raises_error(self):
        """Test that empty config file raises ValueError."""
        path = os.path.join(self.temp_dir, "empty.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("")
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_engine_config(path)

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises YAMLError."""
        path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("services: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_engine_config(path)


class TestStrictValidation:
    """Test that misconfiguration is rejected instead of ignored."""

    def test_unknown_top_level_key(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["discounts"] = {}
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            parse_engine_config(raw)

    def test_missing_services_section(self):
        raw = copy.deepcopy(BASE_CONFIG)
        del raw["services"]
        with pytest.raises(ValueError, match="Missing required 'services' section"):
            parse_engine_config(raw)

    def test_missing_vendors_section(self):
        raw = copy.deepcopy(BASE_CONFIG)
        del raw["vendors"]
        with pytest.raises(ValueError, match="Missing required 'vendors' section"):
            parse_engine_config(raw)

    def test_unknown_vendor_key(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["vendors"]["inhouse"]["priority"] = 1
        with pytest.raises(ValueError, match="Unknown keys in vendors.inhouse"):
            parse_engine_config(raw)

    def test_service_missing_price(self):
        raw = copy.deepcopy(BASE_CONFIG)
        del raw["services"]["design"]["price"]
        with pytest.raises(ValueError, match="Missing required 'price'"):
            parse_engine_config(raw)

    def test_negative_price(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["services"]["design"]["price"] = -1
        with pytest.raises(ValueError, match="must be >= 0"):
            parse_engine_config(raw)

    def test_service_and_bundle_ids_must_be_unique(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["bundles"]["design"] = {"price": 10}
        with pytest.raises(ValueError, match="Duplicate service or bundle id"):
            parse_engine_config(raw)

    def test_designer_in_two_vendors(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["vendors"]["acme_vendor"]["designers"].append("alice")
        with pytest.raises(ValueError, match="Designer 'alice' listed under both"):
            parse_engine_config(raw)

    def test_service_cost_for_unknown_service(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["vendors"]["acme_vendor"]["service_costs"]["video"] = 50
        with pytest.raises(ValueError, match="Unknown service 'video'"):
            parse_engine_config(raw)

    def test_invalid_vendor_kind(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["vendors"]["acme_vendor"]["kinds"] = ["retainer"]
        with pytest.raises(ValueError, match="entries must be one of"):
            parse_engine_config(raw)

    def test_non_positive_weight(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["vendors"]["acme_vendor"]["weight"] = 0
        with pytest.raises(ValueError, match="weight' must be > 0"):
            parse_engine_config(raw)

    def test_share_cap_out_of_range(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["vendors"]["acme_vendor"]["max_share_percent"] = 150
        with pytest.raises(ValueError, match=r"must be in \(0, 100\]"):
            parse_engine_config(raw)

    def test_vendor_capacity_limits(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["vendors"]["acme_vendor"].update(
            daily_capacity=4, max_open_per_designer=2, auto_assign=False
        )
        vendor = parse_engine_config(raw).vendors["acme_vendor"]
        assert vendor.daily_capacity == 4
        assert vendor.max_open_per_designer == 2
        assert vendor.auto_assign is False

    def test_vendor_capacity_defaults(self):
        vendor = parse_engine_config(copy.deepcopy(BASE_CONFIG)).vendors["inhouse"]
        assert vendor.daily_capacity is None
        assert vendor.max_open_per_designer is None
        assert vendor.auto_assign is True

    @pytest.mark.parametrize("name,value", [
        ("daily_capacity", 0),
        ("daily_capacity", 2.5),
        ("max_open_per_designer", -1),
        ("max_open_per_designer", True),
    ])
    def test_invalid_capacity_limit(self, name, value):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["vendors"]["acme_vendor"][name] = value
        with pytest.raises(ValueError, match=f"vendors.acme_vendor.{name}' must be an integer >= 1"):
            parse_engine_config(raw)

    def test_auto_assign_must_be_boolean(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["vendors"]["acme_vendor"]["auto_assign"] = "no"
        with pytest.raises(ValueError, match="auto_assign' must be true or false"):
            parse_engine_config(raw)

    def test_unknown_timezone(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["billing_timezone"] = "Mars/Olympus_Mons"
        with pytest.raises(ValueError, match="Unknown billing_timezone"):
            parse_engine_config(raw)

    def test_retries_must_be_positive_integer(self):
        raw = copy.deepcopy(BASE_CONFIG)
        raw["retries"] = {"max_attempts": 0}
        with pytest.raises(ValueError, match="max_attempts"):
            parse_engine_config(raw)

    def test_unsupported_service_lookup(self):
        config = parse_engine_config(copy.deepcopy(BASE_CONFIG))
        with pytest.raises(ValueError, match="Unsupported service: video"):
            config.get_service("video")

    def test_vendor_of_designer(self):
        config = parse_engine_config(copy.deepcopy(BASE_CONFIG))
        assert config.vendor_of_designer("vince").vendor_id == "acme_vendor"
        assert config.vendor_of_designer("nobody") is None

    def test_example_config_is_valid(self):
        """The example shipped at the repository root must load cleanly."""
        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        config = load_engine_config(os.path.join(root, "engine.example.yaml"))
        assert "brand_kit" in config.services
        assert config.balancer.max_backlog_assigned_percent == 90.0
