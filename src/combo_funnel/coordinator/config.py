"""Configuration loader for funnel profiles and task files."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from combo_funnel.classification import TemperatureThresholds
from combo_funnel.funnel import DEFAULT_SAMPLE_LIMIT, DEFAULT_SAMPLE_STAGES
from combo_funnel.scoring import DEFAULT_PRIZE_TABLE, PrizeTier
from combo_funnel.universe import UniverseSpec

from .models import FunnelTask

_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class UniverseConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pool_size: int = Field(..., ge=1)
    arity: int = Field(..., ge=1)
    zones: list[tuple[int, int]] = []

    def as_spec(self) -> UniverseSpec:
        return UniverseSpec(pool_size=self.pool_size, arity=self.arity, zones=tuple(self.zones))


class ThresholdConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hot_max: int = 4
    warm_max: int = 9

    def as_thresholds(self) -> TemperatureThresholds:
        return TemperatureThresholds(hot_max=self.hot_max, warm_max=self.warm_max)


class FunnelProfile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile_id: str = "local"
    store_locator: str
    batch_size: int = Field(50, ge=1)
    max_workers: int = Field(4, ge=1)
    sample_stages: list[int] = list(DEFAULT_SAMPLE_STAGES)
    sample_limit: int = Field(DEFAULT_SAMPLE_LIMIT, ge=0)
    record_excluded_ids: bool = True
    max_ids_per_row: int = Field(5000, ge=1)
    universe: UniverseConfig = UniverseConfig(pool_size=35, arity=5, zones=[(1, 12), (13, 24), (25, 35)])
    secondary_universe: UniverseConfig = UniverseConfig(pool_size=12, arity=2)
    thresholds: ThresholdConfig = ThresholdConfig()
    prize_table: list[PrizeTier] = list(DEFAULT_PRIZE_TABLE)
    runs_root: Optional[str] = None


def _expand_str(value: str) -> str:
    def replacer(match: re.Match[str]) -> str:
        token = match.group(1)
        if ":-" in token:
            key, default = token.split(":-", 1)
            actual = os.getenv(key, "")
            return actual if actual.strip() else default
        actual = os.getenv(token, "")
        if not actual.strip():
            raise ValueError(f"missing environment variable: {token}")
        return actual

    return _VAR_PATTERN.sub(replacer, value)


def _expand_payload(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_str(value)
    if isinstance(value, list):
        return [_expand_payload(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _expand_payload(item) for key, item in value.items()}
    return value


def load_profile(path: Path) -> FunnelProfile:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    expanded = _expand_payload(data)
    return FunnelProfile(**expanded)


def load_task(path: Path) -> FunnelTask:
    """Task files are YAML; JSON parses as YAML too."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return FunnelTask(**_expand_payload(data))
