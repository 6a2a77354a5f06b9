"""
Configuration management and loading.

Handles the engine's reference data: service and bundle catalog with SLA
targets, the vendor roster, balancer policy, and runtime limits.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from fulfillment_engine.storage.models import RequestKind


@dataclass(frozen=True)
class SlaTargetConfig:
    """Expected turnaround, expressed the way operators enter it."""
    days: int = 0
    hours: int = 0

    def __post_init__(self):
        """Validate SLA values are non-negative and not both zero."""
        if self.days < 0 or self.hours < 0:
            raise ValueError("SLA days and hours must be >= 0")
        if self.days == 0 and self.hours == 0:
            raise ValueError("SLA target must be greater than zero")

    @property
    def target_hours(self) -> float:
        return float(self.days * 24 + self.hours)


@dataclass(frozen=True)
class ServiceConfig:
    """A sellable service or bundle type."""
    service_id: str
    kind: RequestKind
    price: Decimal
    sla: Optional[SlaTargetConfig] = None

    def __post_init__(self):
        """Validate the standalone price."""
        if self.price < 0:
            raise ValueError("price must be >= 0")


@dataclass(frozen=True)
class VendorConfig:
    """A vendor organization in the assignment pool."""
    vendor_id: str
    weight: float = 1.0
    max_share_percent: Optional[float] = None
    active: bool = True
    internal: bool = False
    kinds: Tuple[RequestKind, ...] = (RequestKind.AD_HOC, RequestKind.BUNDLE)
    designers: Tuple[str, ...] = ()
    service_costs: Dict[str, Decimal] = field(default_factory=dict)
    daily_capacity: Optional[int] = None
    max_open_per_designer: Optional[int] = None
    auto_assign: bool = True

    def __post_init__(self):
        """Validate fairness and capacity settings."""
        if self.weight <= 0:
            raise ValueError("weight must be > 0")
        if self.max_share_percent is not None and not 0 < self.max_share_percent <= 100:
            raise ValueError("max_share_percent must be in (0, 100]")
        for name in ("daily_capacity", "max_open_per_designer"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValueError(f"{name} must be >= 1")


@dataclass(frozen=True)
class BalancerPolicy:
    """Pool-wide assignment policy."""
    max_backlog_assigned_percent: Optional[float] = None

    def __post_init__(self):
        """Validate the backlog cap."""
        if (self.max_backlog_assigned_percent is not None
                and not 0 < self.max_backlog_assigned_percent <= 100):
            raise ValueError("max_backlog_assigned_percent must be in (0, 100]")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    services: Dict[str, ServiceConfig]
    vendors: Dict[str, VendorConfig]
    balancer: BalancerPolicy = field(default_factory=BalancerPolicy)
    admins: Tuple[str, ...] = ()
    billing_timezone: str = "America/Chicago"
    lock_timeout_seconds: float = 5.0
    max_attempts: int = 3

    def get_service(self, service_id: str) -> ServiceConfig:
        """Get a service or bundle type.

        Raises:
            ValueError: If the type is not in the catalog
        """
        if service_id not in self.services:
            raise ValueError(f"Unsupported service: {service_id}")
        return self.services[service_id]

    def vendor_of_designer(self, designer_id: str) -> Optional[VendorConfig]:
        """Find the vendor a designer works for."""
        for vendor in self.vendors.values():
            if designer_id in vendor.designers:
                return vendor
        return None

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.billing_timezone)


_TOP_KEYS = {
    'billing_timezone', 'locks', 'retries', 'balancer', 'admins',
    'services', 'bundles', 'vendors',
}
_VENDOR_KEYS = {
    'weight', 'max_share_percent', 'active', 'internal', 'kinds',
    'designers', 'service_costs', 'daily_capacity', 'max_open_per_designer', 'auto_assign',
}


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    misprice deliveries or starve vendors of work.

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

    return parse_engine_config(raw_config)


def parse_engine_config(raw_config: Dict) -> EngineConfig:
    """Validate an already-parsed configuration mapping.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - _TOP_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'services' not in raw_config:
        raise ValueError("Missing required 'services' section")

    services: Dict[str, ServiceConfig] = {}
    for section, kind in (('services', RequestKind.AD_HOC), ('bundles', RequestKind.BUNDLE)):
        section_data = raw_config.get(section) or {}
        if not isinstance(section_data, dict):
            raise ValueError(f"'{section}' must be a dictionary")
        for service_id, service_data in section_data.items():
            if service_id in services:
                raise ValueError(f"Duplicate service or bundle id: {service_id}")
            services[service_id] = _parse_service(
                service_id, kind, service_data, f"{section}.{service_id}"
            )

    if 'vendors' not in raw_config:
        raise ValueError("Missing required 'vendors' section")
    vendors_data = raw_config['vendors']
    if not isinstance(vendors_data, dict):
        raise ValueError("'vendors' must be a dictionary")

    vendors: Dict[str, VendorConfig] = {}
    seen_designers: Dict[str, str] = {}
    for vendor_id, vendor_data in vendors_data.items():
        vendor = _parse_vendor(vendor_id, vendor_data, f"vendors.{vendor_id}")
        for designer_id in vendor.designers:
            if designer_id in seen_designers:
                raise ValueError(
                    f"Designer '{designer_id}' listed under both "
                    f"'{seen_designers[designer_id]}' and '{vendor_id}'"
                )
            seen_designers[designer_id] = vendor_id
        for service_id in vendor.service_costs:
            if service_id not in services:
                raise ValueError(f"Unknown service '{service_id}' in vendors.{vendor_id}.service_costs")
        vendors[vendor_id] = vendor

    balancer_data = raw_config.get('balancer') or {}
    _check_keys(balancer_data, {'max_backlog_assigned_percent'}, 'balancer')
    backlog_cap = balancer_data.get('max_backlog_assigned_percent')
    balancer = BalancerPolicy(
        max_backlog_assigned_percent=None if backlog_cap is None
        else _number(backlog_cap, 'balancer.max_backlog_assigned_percent')
    )

    admins = raw_config.get('admins') or []
    if not isinstance(admins, list) or not all(isinstance(a, str) for a in admins):
        raise ValueError("'admins' must be a list of user ids")

    billing_timezone = raw_config.get('billing_timezone', "America/Chicago")
    try:
        ZoneInfo(billing_timezone)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise ValueError(f"Unknown billing_timezone: {billing_timezone}")

    locks_data = raw_config.get('locks') or {}
    _check_keys(locks_data, {'timeout_seconds'}, 'locks')
    lock_timeout = _number(locks_data.get('timeout_seconds', 5.0), 'locks.timeout_seconds')
    if lock_timeout <= 0:
        raise ValueError("'locks.timeout_seconds' must be > 0")

    retries_data = raw_config.get('retries') or {}
    _check_keys(retries_data, {'max_attempts'}, 'retries')
    max_attempts = retries_data.get('max_attempts', 3)
    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
        raise ValueError("'retries.max_attempts' must be an integer >= 1")

    return EngineConfig(
        services=services,
        vendors=vendors,
        balancer=balancer,
        admins=tuple(admins),
        billing_timezone=billing_timezone,
        lock_timeout_seconds=lock_timeout,
        max_attempts=max_attempts,
    )


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(value, path: str) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _money(value, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if amount < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return amount


def _parse_service(service_id: str, kind: RequestKind, data: Dict, path: str) -> ServiceConfig:
    """Parse and validate one catalog entry.

    Args:
        service_id: Service or bundle identifier
        kind: Whether the entry came from 'services' or 'bundles'
        data: Entry configuration data
        path: Path for error messages

    Returns:
        Validated ServiceConfig

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(data, {'price', 'sla'}, path)

    if 'price' not in data:
        raise ValueError(f"Missing required 'price' in {path}")
    price = _money(data['price'], f"{path}.price")

    sla = None
    if data.get('sla') is not None:
        sla_data = data['sla']
        _check_keys(sla_data, {'days', 'hours'}, f"{path}.sla")
        days = sla_data.get('days', 0)
        hours = sla_data.get('hours', 0)
        for name, value in (('days', days), ('hours', hours)):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"'{path}.sla.{name}' must be an integer")
        sla = SlaTargetConfig(days=days, hours=hours)

    return ServiceConfig(service_id=service_id, kind=kind, price=price, sla=sla)


def _parse_vendor(vendor_id: str, data: Dict, path: str) -> VendorConfig:
    """Parse and validate one vendor entry.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(data, _VENDOR_KEYS, path)

    weight = _number(data.get('weight', 1), f"{path}.weight")
    if weight <= 0:
        raise ValueError(f"'{path}.weight' must be > 0")

    max_share = data.get('max_share_percent')
    if max_share is not None:
        max_share = _number(max_share, f"{path}.max_share_percent")
        if not 0 < max_share <= 100:
            raise ValueError(f"'{path}.max_share_percent' must be in (0, 100]")

    for flag in ('active', 'internal', 'auto_assign'):
        if flag in data and not isinstance(data[flag], bool):
            raise ValueError(f"'{path}.{flag}' must be true or false")

    kinds_data = data.get('kinds', [kind.value for kind in RequestKind])
    if not isinstance(kinds_data, list) or not kinds_data:
        raise ValueError(f"'{path}.kinds' must be a non-empty list")
    kinds: List[RequestKind] = []
    for kind_str in kinds_data:
        try:
            kinds.append(RequestKind(kind_str))
        except ValueError:
            valid_kinds = [kind.value for kind in RequestKind]
            raise ValueError(f"'{path}.kinds' entries must be one of: {valid_kinds}")

    designers = data.get('designers', [])
    if not isinstance(designers, list) or not all(isinstance(d, str) for d in designers):
        raise ValueError(f"'{path}.designers' must be a list of user ids")
    if len(set(designers)) != len(designers):
        raise ValueError(f"'{path}.designers' contains duplicates")

    costs_data = data.get('service_costs') or {}
    if not isinstance(costs_data, dict):
        raise ValueError(f"'{path}.service_costs' must be a dictionary")
    service_costs = {
        service_id: _money(cost, f"{path}.service_costs.{service_id}")
        for service_id, cost in costs_data.items()
    }

    limits = {}
    for name in ('daily_capacity', 'max_open_per_designer'):
        value = data.get(name)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 1):
            raise ValueError(f"'{path}.{name}' must be an integer >= 1")
        limits[name] = value

    return VendorConfig(
        vendor_id=vendor_id,
        weight=weight,
        max_share_percent=max_share,
        active=data.get('active', True),
        internal=data.get('internal', False),
        kinds=tuple(kinds),
        designers=tuple(designers),
        service_costs=service_costs,
        daily_capacity=limits['daily_capacity'],
        max_open_per_designer=limits['max_open_per_designer'],
        auto_assign=data.get('auto_assign', True),
    )
