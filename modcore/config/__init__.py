"""Config subsystem public API.

Provides:
    get_config() -> AggregatedConfig (schema_version + section objects)
    as_dict()    -> dict representation
    ConfigError  -> raised on validation / unknown key
"""

from .loader import (  # noqa: F401
    AggregatedConfig,
    get_config,
    as_dict,
    ConfigError,
    clear_config_cache,
)


def reset_for_tests() -> None:
    """Test helper: drop the cached aggregated config."""
    clear_config_cache()


__all__ = [
    "AggregatedConfig",
    "get_config",
    "as_dict",
    "ConfigError",
    "clear_config_cache",
    "reset_for_tests",
]
