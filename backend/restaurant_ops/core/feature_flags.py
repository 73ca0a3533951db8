"""
Feature flags for optional operational behaviour.

Flags default to OFF. Enable via environment variables:
FEATURE_<FLAG_NAME>=true

Usage:
    from restaurant_ops.core.feature_flags import is_enabled

    if is_enabled("MODE_EXPIRY_SWEEP"):
        scheduler.add_task(...)
"""

import os
from typing import Dict, Optional


class FeatureFlags:
    """Environment-backed feature flag registry."""

    REGISTRY: Dict[str, str] = {
        "MODE_EXPIRY_SWEEP": "Periodically expire operational modes so observers see the transition",
        "CORRELATION_IDS_ENABLED": "Add correlation IDs to all requests",
    }

    def __init__(self):
        self._cache: Dict[str, bool] = {}
        self._load_from_environment()

    def _load_from_environment(self) -> None:
        for flag_name in self.REGISTRY:
            env_value = os.environ.get(f"FEATURE_{flag_name}", "").lower()
            # Only enable if explicitly set to 'true', '1', or 'yes'
            self._cache[flag_name] = env_value in ("true", "1", "yes")

    def is_enabled(self, flag_name: str) -> bool:
        """Check if a feature flag is enabled. Unknown flags are off."""
        if flag_name not in self.REGISTRY:
            return False
        return self._cache.get(flag_name, False)

    def get_all(self) -> Dict[str, bool]:
        return {flag: self.is_enabled(flag) for flag in self.REGISTRY}

    def override(self, flag_name: str, value: bool) -> None:
        """Override a flag value (for testing only)."""
        if flag_name in self.REGISTRY:
            self._cache[flag_name] = value

    def reset(self) -> None:
        """Reset all flags to environment values (for testing)."""
        self._load_from_environment()

    def __repr__(self) -> str:
        enabled = [f for f in self.REGISTRY if self.is_enabled(f)]
        return f"<FeatureFlags enabled={enabled}>"


_flags_instance: Optional[FeatureFlags] = None


def get_flags() -> FeatureFlags:
    """Get the global FeatureFlags instance."""
    global _flags_instance
    if _flags_instance is None:
        _flags_instance = FeatureFlags()
    return _flags_instance


def is_enabled(flag_name: str) -> bool:
    return get_flags().is_enabled(flag_name)
