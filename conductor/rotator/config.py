# CFSv2 Forecast Rotator - Configuration
# SPDX-License-Identifier: Apache-2.0

"""
Runtime settings loaded from environment variables (prefix ROTATOR_) or .env.

Environment Variables:
- ROTATOR_DATA_DIR: Root of the forecast window (default: ./data/forecasts)
- ROTATOR_LOG_DIR: Per-variable log files (default: ./log)
- ROTATOR_BASE_URL: THREDDS fileServer root for the 90-day CFSv2 archive
- ROTATOR_MAX_ATTEMPTS: Download attempts per file (default: 3)
- ROTATOR_STALE_CUTOFF_HOUR: UTC hour after which stale data is accepted (default: 18)
"""

import logging
from pathlib import Path

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rotator.errors import ConfigurationError
from rotator.sources import (
    AGGREGATED_TEMPLATE,
    BASE_URL,
    ENSEMBLE_TEMPLATE,
    ISSUANCE_HOURS,
    MEMBERS,
)
from rotator.variables import FormatPolicy, validate_variable_id

logger = logging.getLogger(__name__)


# gdd_0 is derived downstream from daily max/min temperature
DERIVED_VARIABLES = {
    "gdd_0": ("tmmx", "tmmn"),
}


class RotatorSettings(BaseSettings):
    """Settings for one acquisition run"""

    model_config = SettingsConfigDict(
        env_prefix="ROTATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_dir: Path = Path("./data/forecasts")
    log_dir: Path = Path("./log")
    log_level: str = "INFO"

    # Remote archive
    base_url: str = BASE_URL
    ensemble_template: str = ENSEMBLE_TEMPLATE
    aggregated_template: str = AGGREGATED_TEMPLATE
    aggregated_variables: frozenset[str] = frozenset({"vpd"})
    issuance_hours: tuple[str, ...] = ISSUANCE_HOURS
    members: tuple[int, ...] = MEMBERS

    # Fetch tuning
    request_timeout: float = Field(60.0, gt=0, description="Per-request timeout (s)")
    max_attempts: int = Field(3, ge=1, le=10, description="Attempts per file")
    backoff_min: float = Field(2.0, ge=0, description="Minimum retry wait (s)")
    backoff_max: float = Field(30.0, ge=0, description="Maximum retry wait (s)")
    fetch_workers: int = Field(8, ge=1, le=16, description="Parallel downloads per cycle")
    max_concurrent_cycles: int = Field(3, ge=1, description="Parallel day-offset cycles")

    # Output
    time_dim: str = "day"
    check_freshness: bool = True
    stale_cutoff_hour: int = Field(18, ge=0, le=23)

    # Variables whose day-offsets must rotate together
    coupled_variables: tuple[str, ...] = ("tmmx", "tmmn")

    @field_validator("aggregated_variables", "coupled_variables")
    @classmethod
    def check_variable_ids(cls, v):
        for variable_id in v:
            validate_variable_id(variable_id)
        return v

    def format_policy(self) -> FormatPolicy:
        return FormatPolicy(aggregated=frozenset(self.aggregated_variables))

    def variable_dir(self, variable: str) -> Path:
        return self.data_dir / variable

    def output_path(self, variable: str, day_offset: int) -> Path:
        """Canonical NormalizedOutput path for (variable, day-offset)"""
        return self.variable_dir(variable) / f"cfsv2_metdata_forecast_{variable}_daily_{day_offset}.nc"


def expand_derived(variables: list[str]) -> list[str]:
    """Replace derived variables by their inputs, keeping order and dropping duplicates"""
    expanded = []
    for variable in variables:
        for source in DERIVED_VARIABLES.get(variable, (variable,)):
            if source not in expanded:
                expanded.append(source)
    return expanded


def discover_variables(config_path: Path) -> list[str]:
    """
    Collect the forecast variables required by enabled ecoregions.

    Expects the ecoregions YAML layout:

        ecoregions:
          - name: southern_rockies
            enabled: true
            cover_types:
              forest: {gridmet_varname: fm1000}
              shrub: {gridmet_varname: vpd}
    """
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read ecoregion config {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"Ecoregion config {config_path} must be a mapping with an 'ecoregions' list")

    found = set()
    for ecoregion in config.get("ecoregions") or []:
        if not isinstance(ecoregion, dict):
            raise ConfigurationError(f"Malformed ecoregion entry in {config_path}: {ecoregion!r}")
        if not ecoregion.get("enabled"):
            continue
        for cover_name, cover in (ecoregion.get("cover_types") or {}).items():
            varname = (cover or {}).get("gridmet_varname")
            if not varname:
                raise ConfigurationError(
                    f"Empty gridmet_varname for {ecoregion.get('name')}/{cover_name}"
                )
            found.add(validate_variable_id(varname))

    if not found:
        raise ConfigurationError(f"No forecast variables discovered in {config_path}")

    variables = expand_derived(sorted(found))
    logger.info(f"Required forecast variables: {' '.join(variables)}")
    return variables
