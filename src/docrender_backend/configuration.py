from __future__ import annotations

import logging
import math
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import PageDimensions

# Environment values reach the config through oc.env interpolations.
load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"

MIN_DEVICE_SCALE_FACTOR = 1
MAX_DEVICE_SCALE_FACTOR = 6
DEFAULT_DEVICE_SCALE_FACTOR = 3


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime settings by merging overrides onto the packaged defaults.

    Args:
        overrides: Nested dictionary of values to replace; unknown keys are rejected

    Returns:
        A struct-mode DictConfig; interpolations resolve on access
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    if not overrides:
        return base
    return OmegaConf.merge(base, OmegaConf.create(overrides))  # type: ignore[return-value]


def page_dimensions(settings: DictConfig) -> PageDimensions:
    page = settings.render.page
    return PageDimensions(
        width_mm=page.width_mm,
        height_mm=page.height_mm,
        viewport_width=page.viewport_width,
        viewport_height=page.viewport_height,
        device_scale_factor=clamp_device_scale_factor(settings.render.device_scale_factor),
    )


def clamp_device_scale_factor(value: Any) -> float:
    try:
        factor = float(value)
    except (TypeError, ValueError):
        return DEFAULT_DEVICE_SCALE_FACTOR
    if not math.isfinite(factor):
        return DEFAULT_DEVICE_SCALE_FACTOR
    return max(MIN_DEVICE_SCALE_FACTOR, min(MAX_DEVICE_SCALE_FACTOR, factor))


def configure_logging(settings: DictConfig) -> None:
    level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
