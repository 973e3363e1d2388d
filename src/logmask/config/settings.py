"""Masking settings.

Settings are assembled from defaults, an optional YAML file and environment
variables, in that order (later sources win).

Example YAML configuration:

    masking:
      mask_token: "****"
      encoding: utf-8
      variants: [bash, dollar, batch]
      max_pattern_bytes: 4000000

Environment variables:
    LOGMASK_CONFIG_PATH         Path to the YAML file
    LOGMASK_MASK_TOKEN          Placeholder for masked secrets
    LOGMASK_ENCODING            Output encoding
    LOGMASK_VARIANTS            Comma separated variant names ("" for none)
    LOGMASK_MAX_PATTERN_BYTES   Size limit of the aggregate pattern
"""

import os
import threading
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from logmask.core.patterns import DEFAULT_MAX_PATTERN_BYTES, stream_encoding
from logmask.core.stream import DEFAULT_MASK_TOKEN
from logmask.core.variants import KNOWN_VARIANTS
from logmask.logging.setup import get_logger

logger = get_logger(__name__)


class MaskingSettings(BaseModel):
    """Validated masking configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    mask_token: str = Field(
        default=DEFAULT_MASK_TOKEN,
        min_length=1,
        description="Placeholder substituted for every masked secret",
    )
    encoding: str = Field(default="utf-8", description="Encoding of filtered output")
    variants: list[str] = Field(
        default_factory=lambda: list(KNOWN_VARIANTS),
        description="Secret variant factories to apply",
    )
    max_pattern_bytes: int = Field(
        default=DEFAULT_MAX_PATTERN_BYTES,
        gt=0,
        description="Upper bound on the aggregate pattern source size",
    )

    @field_validator("encoding")
    @classmethod
    def _known_encoding(cls, value: str) -> str:
        try:
            stream_encoding(value)
        except LookupError as e:
            raise ValueError(f"Unknown encoding: {value}") from e
        return value

    @field_validator("variants")
    @classmethod
    def _known_variants(cls, value: list[str]) -> list[str]:
        unknown = [v for v in value if v not in KNOWN_VARIANTS]
        if unknown:
            raise ValueError(
                f"Unknown secret variants: {', '.join(unknown)} (known: {', '.join(KNOWN_VARIANTS)})"
            )
        return value


def load_settings_from_yaml(path: Path | str) -> MaskingSettings:
    """Load masking settings from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        MaskingSettings built from the ``masking`` section.

    Raises:
        FileNotFoundError: If the configuration file doesn't exist.
        ValueError: If the YAML structure or a value is invalid.
        yaml.YAMLError: If the YAML is malformed.
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        return MaskingSettings()

    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML structure: expected dict, got {type(data).__name__}")

    section = data.get("masking", {})
    if section is None:
        section = {}
    if not isinstance(section, dict):
        raise ValueError(
            f"Invalid masking structure: expected dict, got {type(section).__name__}"
        )

    return _validate(section, source=str(path))


def load_settings_from_yaml_safe(path: Path | str) -> tuple[MaskingSettings, Optional[str]]:
    """Load settings, returning defaults and an error message on failure.

    Example:
        >>> settings, error = load_settings_from_yaml_safe("config/logmask.yaml")
        >>> if error:
        ...     print(f"Warning: {error}")
    """
    try:
        return load_settings_from_yaml(path), None
    except FileNotFoundError as e:
        return MaskingSettings(), str(e)
    except ValueError as e:
        return MaskingSettings(), f"Configuration error: {e}"
    except yaml.YAMLError as e:
        return MaskingSettings(), f"YAML parsing error: {e}"


def load_settings() -> MaskingSettings:
    """Assemble settings from the YAML file (if configured) and environment.

    Raises:
        FileNotFoundError: If LOGMASK_CONFIG_PATH points to a missing file.
        ValueError: If any value is invalid.
    """
    values: dict = {}

    config_path = os.getenv("LOGMASK_CONFIG_PATH")
    if config_path:
        values.update(load_settings_from_yaml(config_path).model_dump())

    mask_token = os.getenv("LOGMASK_MASK_TOKEN")
    if mask_token is not None:
        values["mask_token"] = mask_token

    encoding = os.getenv("LOGMASK_ENCODING")
    if encoding:
        values["encoding"] = encoding

    variants = os.getenv("LOGMASK_VARIANTS")
    if variants is not None:
        values["variants"] = [v.strip() for v in variants.split(",") if v.strip()]

    max_pattern_bytes = os.getenv("LOGMASK_MAX_PATTERN_BYTES")
    if max_pattern_bytes:
        try:
            values["max_pattern_bytes"] = int(max_pattern_bytes)
        except ValueError:
            raise ValueError(
                f"LOGMASK_MAX_PATTERN_BYTES must be an integer, got {max_pattern_bytes!r}"
            ) from None

    return _validate(values, source="environment")


def _validate(values: dict, source: str) -> MaskingSettings:
    try:
        settings = MaskingSettings(**values)
    except ValidationError as e:
        # ValidationError is a ValueError; re-raise with the source for context
        raise ValueError(f"Invalid masking settings from {source}: {e}") from e

    logger.debug(
        "Masking settings loaded",
        extra={
            "event": "settings_loaded",
            "source": source,
            "encoding": settings.encoding,
            "variants": settings.variants,
        },
    )
    return settings


# Global settings (singleton-like)
_settings: Optional[MaskingSettings] = None
_settings_lock = threading.Lock()


def get_settings() -> MaskingSettings:
    """Get the process masking settings, loading them on first use."""
    global _settings

    with _settings_lock:
        if _settings is None:
            _settings = load_settings()

    return _settings


def reset_settings() -> None:
    """Reset the process settings (for testing)."""
    global _settings
    with _settings_lock:
        _settings = None
