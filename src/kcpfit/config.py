from __future__ import annotations

"""Configuration utilities for kcpfit.

This module defines a hierarchical configuration schema using Pydantic models.
The :class:`Settings` container groups the change-point search, the
Levenberg-Marquardt solver, distribution building, molecule selection and
logging options.  Instances can be populated from environment variables or
from YAML/JSON files with matching nested keys.
"""

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import EnvSettingsSource

import yaml


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _split_strings(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class SectionModel(BaseModel):
    """Base model for configuration subsections that ignores unknown fields."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)


# ---------------------------------------------------------------------------
# Settings schema
# ---------------------------------------------------------------------------


class KCPSettings(SectionModel):
    """Parameters of the change-point search and its region handling."""

    confidence_level: float = Field(0.99, gt=0.0, lt=1.0)
    global_sigma: float = Field(1.0, gt=0.0)
    step_analysis: bool = False
    calc_background_sigma: bool = True
    background_region: str | None = None
    region: str | None = None
    x_column: str = "x"
    y_column: str = "y"
    threads: int | None = Field(None, ge=1)


class LMSettings(SectionModel):
    """Levenberg-Marquardt solver defaults."""

    precision: float = Field(1e-5, ge=0.0)
    max_iterations: int = Field(10000, ge=1)
    lam: float = Field(0.001, gt=0.0)
    delta_parameter: float = Field(1e-6, gt=0.0)
    factor: float = Field(10.0, gt=1.0)


class DistributionSettings(SectionModel):
    """Binning, filtering and bootstrap options for segment distributions."""

    start: float = 0.0
    end: float = 1.0
    bins: int = Field(20, ge=1)
    filter: bool = False
    filter_start: float = 0.0
    filter_stop: float = 100.0
    integration_resolution: int = Field(100, ge=1)
    bootstrap: Literal["none", "segments", "molecules"] = "none"
    bootstrap_cycles: int = Field(100, ge=2)
    seed: int | None = None
    threads: int | None = Field(None, ge=1)

    @model_validator(mode="after")
    def _check_range(self) -> "DistributionSettings":
        if not self.end > self.start:
            raise ValueError("distribution end must be greater than start")
        return self


class SelectionSettings(SectionModel):
    """Which molecules of an archive take part in a batch run."""

    include: Literal["all", "tagged", "untagged"] = "all"
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _split_strings(value)
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value]
        return value


class LoggingSettings(SectionModel):
    """Log level used by the command line tools."""

    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class Settings(BaseSettings):
    """Container for all runtime configuration sections."""

    kcp: KCPSettings = Field(default_factory=KCPSettings)
    lm: LMSettings = Field(default_factory=LMSettings)
    distribution: DistributionSettings = Field(default_factory=DistributionSettings)
    selection: SelectionSettings = Field(default_factory=SelectionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix="KCPFIT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        class LenientEnvSettingsSource(EnvSettingsSource):
            def decode_complex_value(self, field_name, target_field, value):  # type: ignore[override]
                try:
                    return super().decode_complex_value(field_name, target_field, value)
                except json.JSONDecodeError:
                    return value

        env_settings.__class__ = LenientEnvSettingsSource
        return init_settings, env_settings, dotenv_settings, file_secret_settings


# ---------------------------------------------------------------------------
# Loading utilities
# ---------------------------------------------------------------------------


def load_settings(path: str | Path) -> Settings:
    """Load settings from a JSON or YAML file."""

    p = Path(path)
    text = p.read_text()
    if p.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise TypeError("Configuration file must define a mapping")
    return Settings.model_validate(data)


__all__ = [
    "KCPSettings",
    "LMSettings",
    "DistributionSettings",
    "SelectionSettings",
    "LoggingSettings",
    "Settings",
    "load_settings",
]
