"""Configuration loading for the dispatch engine."""

from .loader import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_LABEL_RULES,
    DispatchConfig,
    JobFilter,
    LabelRule,
    load_config,
    parse_config,
)
from .settings import DispatchSettings

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_LABEL_RULES",
    "DispatchConfig",
    "DispatchSettings",
    "JobFilter",
    "LabelRule",
    "load_config",
    "parse_config",
]
