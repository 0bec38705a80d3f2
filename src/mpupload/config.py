"""Configuration loading for the upload engine."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import fields
from pathlib import Path

from mpupload.constants import ENV_PREFIX
from mpupload.models import UploadConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/upload_config.json")


def _coerce(raw: str, current: object) -> object:
    """Convert an environment string to the type of the field default."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def load_upload_config(
    config_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> UploadConfig:
    """Load upload configuration from JSON, then apply environment overrides.

    Reads ``config/upload_config.json`` when *config_path* is ``None``.
    If the file does not exist, defaults are used.  Each field can be
    overridden with an ``MPUPLOAD_<FIELD>`` environment variable, e.g.
    ``MPUPLOAD_BASE_URL`` or ``MPUPLOAD_CHUNK_BYTES``.

    Args:
        config_path: Optional explicit path to upload_config.json.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        UploadConfig populated from file + environment.

    Raises:
        ValueError: If a value cannot be converted or fails validation.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if environ is None:
        environ = dict(os.environ)

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)
        logger.debug("Loaded upload config from %s", config_path)

    # Build kwargs from JSON data, only including recognised fields
    defaults = UploadConfig()
    field_names = {f.name for f in fields(UploadConfig)}
    kwargs = {k: v for k, v in data.items() if k in field_names}
    ignored = sorted(set(data) - field_names)
    if ignored:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(ignored))

    for name in field_names:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        try:
            kwargs[name] = _coerce(raw, getattr(defaults, name))
        except ValueError:
            raise ValueError(
                f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}"
            ) from None

    return UploadConfig(**kwargs)
