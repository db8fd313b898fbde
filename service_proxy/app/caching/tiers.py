"""
Fresh/stale TTL configuration per endpoint type.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Union

from .keys import EndpointType, normalize_endpoint_type

HOUR = 60 * 60
DAY = 24 * HOUR


@dataclass(frozen=True)
class TierConfig:
    """TTLs (seconds) for the fresh and stale tiers of one endpoint type."""
    fresh_ttl: float
    stale_ttl: float

    def __post_init__(self):
        if self.fresh_ttl <= 0 or self.stale_ttl <= 0:
            raise ValueError("Tier TTLs must be positive")
        if self.stale_ttl < self.fresh_ttl:
            raise ValueError(
                f"stale_ttl ({self.stale_ttl}) must be >= fresh_ttl ({self.fresh_ttl})"
            )

    def to_dict(self) -> Dict[str, float]:
        return {"fresh_ttl": self.fresh_ttl, "stale_ttl": self.stale_ttl}


DEFAULT_TIER_CONFIG = TierConfig(fresh_ttl=HOUR, stale_ttl=DAY)

DEFAULT_TIERS: Dict[str, TierConfig] = {
    EndpointType.SERVICE.value: TierConfig(fresh_ttl=DAY, stale_ttl=7 * DAY),
    EndpointType.UNIT.value: TierConfig(fresh_ttl=HOUR, stale_ttl=DAY),
    EndpointType.ANNOUNCEMENT.value: TierConfig(fresh_ttl=HOUR, stale_ttl=DAY),
}


class TierPolicy:
    """Resolves the effective TierConfig for an endpoint type."""

    def __init__(
        self,
        tiers: Optional[Mapping[str, TierConfig]] = None,
        default: TierConfig = DEFAULT_TIER_CONFIG,
    ):
        self.default = default
        self._tiers: Dict[str, TierConfig] = dict(DEFAULT_TIERS)
        for endpoint_type, config in (tiers or {}).items():
            self._tiers[normalize_endpoint_type(endpoint_type)] = config

    @classmethod
    def from_settings(cls, overrides: Mapping[str, Mapping[str, float]]) -> "TierPolicy":
        """Build a policy from ``{"unit": {"fresh_ttl": 300, "stale_ttl": 86400}}`` style settings.

        A partial override keeps the other TTL from the shipped defaults.
        """
        tiers: Dict[str, TierConfig] = {}
        for endpoint_type, values in overrides.items():
            base = DEFAULT_TIERS.get(endpoint_type, DEFAULT_TIER_CONFIG)
            tiers[endpoint_type] = TierConfig(
                fresh_ttl=float(values.get("fresh_ttl", base.fresh_ttl)),
                stale_ttl=float(values.get("stale_ttl", base.stale_ttl)),
            )
        return cls(tiers)

    def for_type(self, endpoint_type: Union[EndpointType, str]) -> TierConfig:
        return self._tiers.get(normalize_endpoint_type(endpoint_type), self.default)

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        config = {name: tier.to_dict() for name, tier in sorted(self._tiers.items())}
        config["default"] = self.default.to_dict()
        return config
