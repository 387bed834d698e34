from __future__ import annotations

import pathlib
from typing import Any
from typing import Dict
from typing import Optional

import hjson
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator

from klinecache.exceptions import ConfigError
from klinecache.periods import normalize_period
from klinecache.utils.logs import SORTED_LEVEL_NAMES


class NonMutatingMixin(BaseModel):
    """
    Base class for non mutating configurations
    """

    model_config = ConfigDict(frozen=True, extra="forbid")


class KlineCacheConfig(NonMutatingMixin):
    storage_root: pathlib.Path = pathlib.Path("caches", "klines")
    ttl_seconds: Dict[str, float] = Field(default_factory=dict)
    default_window: int = Field(500, ge=1)
    slack: int = Field(2, ge=1)
    max_concurrency: int = Field(10, ge=1)
    request_timeout: float = Field(10.0, gt=0)
    sync_timeout: Optional[float] = Field(None, gt=0)
    max_retries: int = Field(3, ge=0)
    exchange: Optional[str] = None
    log_level: str = "info"
    log_file: Optional[pathlib.Path] = None

    @field_validator("ttl_seconds")
    @classmethod
    def _validate_ttl_seconds(cls, value: Dict[str, float]) -> Dict[str, float]:
        normalized: Dict[str, float] = {}
        for period, seconds in value.items():
            try:
                key = normalize_period(period)
            except ValueError as exc:
                raise ValueError(f"ttl_seconds: {exc}") from None
            if seconds <= 0:
                raise ValueError(f"ttl_seconds[{period!r}] must be positive, got {seconds}")
            normalized[key] = float(seconds)
        return normalized

    @field_validator("log_level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        value = value.lower()
        if value not in SORTED_LEVEL_NAMES:
            raise ValueError(
                f"The log level {value!r} is not valid. Available levels: {', '.join(SORTED_LEVEL_NAMES)}"
            )
        return value


def load_config(path: str | pathlib.Path, **overrides: Any) -> KlineCacheConfig:
    """
    Load an hjson configuration file into :class:`KlineCacheConfig`

    Keyword ``overrides`` take precedence over values from the file.
    """
    config_path = pathlib.Path(path)
    try:
        with open(config_path, encoding="utf-8") as rfh:
            loaded = hjson.load(rfh)
    except OSError as exc:
        raise ConfigError(f"failed to load config file {config_path}: {exc}") from exc
    except hjson.HjsonDecodeError as exc:
        raise ConfigError(f"failed to parse config file {config_path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"config file {config_path} must contain a mapping at the top level")
    data = {**dict(loaded), **overrides}
    try:
        return KlineCacheConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid config file {config_path}: {exc}") from exc
