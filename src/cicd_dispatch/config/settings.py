#!/usr/bin/env python3
"""
Dispatch Settings

Runtime options for the pipeline runner and CLI, read from the ``settings:``
block of the dispatch config file and overridable through
``CICD_DISPATCH_<OPTION>`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ValidationError

SUPERSEDE_POLICIES = ("cancel", "allow-parallel")
LOG_FORMATS = ("json", "text")
ENV_PREFIX = "CICD_DISPATCH_"


@dataclass
class DispatchSettings:
    max_concurrency: int = 4
    retry_max: int = 3
    retry_backoff_base_seconds: float = 2.0
    retry_backoff_max_seconds: float = 60.0
    supersede_policy: str = "cancel"
    # Seconds a running job of a superseded run may take to finish
    grace_period_seconds: float = 0.0

    audit_log: str = "logs/dispatch_audit.jsonl"
    log_level: str = "INFO"
    log_format: str = "json"

    def backoff_delay(self, retry_index: int) -> float:
        """Delay before retry ``retry_index`` (0 for the first retry)."""
        delay = self.retry_backoff_base_seconds * (2**retry_index)
        return min(delay, self.retry_backoff_max_seconds)

    def validate(self) -> List[str]:
        """Validate settings and return a list of problems."""
        errors = []
        if self.max_concurrency < 1:
            errors.append(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.retry_max < 1:
            errors.append(f"retry_max must be >= 1, got {self.retry_max}")
        if self.retry_backoff_base_seconds < 0:
            errors.append("retry_backoff_base_seconds must be >= 0")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append(
                "retry_backoff_max_seconds must be >= retry_backoff_base_seconds"
            )
        if self.supersede_policy not in SUPERSEDE_POLICIES:
            errors.append(
                f"supersede_policy must be one of {', '.join(SUPERSEDE_POLICIES)}, "
                f"got '{self.supersede_policy}'"
            )
        if self.grace_period_seconds < 0:
            errors.append("grace_period_seconds must be >= 0")
        if self.log_format not in LOG_FORMATS:
            errors.append(f"log_format must be one of {', '.join(LOG_FORMATS)}")
        return errors

    @classmethod
    def from_mapping(
        cls, data: Optional[Mapping[str, Any]], env: Optional[Mapping[str, str]] = None
    ) -> "DispatchSettings":
        """Build settings from a mapping, then apply environment overrides."""
        settings = cls()
        problems = []
        known = {f.name: f for f in fields(cls)}

        merged: Dict[str, Any] = dict(data or {})
        for key, value in (env or {}).items():
            if key.startswith(ENV_PREFIX):
                merged[key[len(ENV_PREFIX) :].lower()] = value

        for key, value in merged.items():
            if key not in known:
                problems.append(f"unknown setting '{key}'")
                continue
            default = getattr(settings, key)
            try:
                if isinstance(default, bool):
                    value = str(value).lower() in ("1", "true", "yes")
                elif isinstance(default, int):
                    value = int(value)
                elif isinstance(default, float):
                    value = float(value)
                else:
                    value = str(value)
            except (TypeError, ValueError):
                problems.append(f"setting '{key}' has invalid value {value!r}")
                continue
            setattr(settings, key, value)

        problems.extend(settings.validate())
        if problems:
            raise ValidationError("Invalid settings", problems)
        return settings

    @classmethod
    def from_env(cls) -> "DispatchSettings":
        return cls.from_mapping({}, env=os.environ)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
