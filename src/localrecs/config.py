"""
Configuration constants for the local recommendations engine.

This module centralizes all tunable parameters. Values can be overridden
via environment variables (``LOCALRECS_*``); invalid values fall back to
the defaults with a warning.
"""
import os
import logging
from dataclasses import dataclass, asdict
from pathlib import Path

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_bool_env(key: str, default: bool) -> bool:
    """Parse a boolean flag such as ``1``/``true``/``off`` from the environment."""
    raw = os.environ.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning(f"Invalid {key}='{raw}', using default {default}")
    return default


# Storage
DB_PATH = Path(os.environ.get("LOCALRECS_DB", "data/localrecs.db"))

# Output rows
MAX_ITEMS_PER_ROW = _get_int_env("LOCALRECS_MAX_ITEMS_PER_ROW", 30, min_val=1)
CREATE_TOP_PICKS_ROW = _get_bool_env("LOCALRECS_TOP_PICKS", True)
CREATE_BECAUSE_ROWS = _get_bool_env("LOCALRECS_BECAUSE_ROWS", True)
BECAUSE_ROWS_PER_USER = _get_int_env("LOCALRECS_BECAUSE_ROWS_PER_USER", 5, min_val=0)
DRY_RUN = _get_bool_env("LOCALRECS_DRY_RUN", False)

# Profile building
RECENT_ITEMS_TO_LEARN_FROM = _get_int_env("LOCALRECS_RECENT_ITEMS", 50, min_val=1)
HALF_LIFE_DAYS = _get_int_env("LOCALRECS_HALF_LIFE_DAYS", 30, min_val=1)

# Interaction signal weights
FINISHED_WEIGHT = _get_float_env("LOCALRECS_FINISHED_WEIGHT", 1.0)
PARTIAL_OVER_40_WEIGHT = _get_float_env("LOCALRECS_PARTIAL_WEIGHT", 0.5)
FAVORITE_OR_LIKE_WEIGHT = _get_float_env("LOCALRECS_FAVORITE_WEIGHT", 0.25)
RATING_WEIGHT = _get_float_env("LOCALRECS_RATING_WEIGHT", 0.1)
PARTIAL_PLAY_THRESHOLD = 0.4  # Played fraction at which the partial signal applies

# Ranking
MINIMUM_SCORE_THRESHOLD = _get_float_env("LOCALRECS_MIN_SCORE", 0.05)

# Collaborative filtering (optional, best effort)
ENABLE_COLLABORATIVE_FILTERING = _get_bool_env("LOCALRECS_ENABLE_CF", False)
CF_BLEND_WEIGHT = _get_float_env("LOCALRECS_CF_BLEND_WEIGHT", 0.5)
CF_N_FACTORS = _get_int_env("LOCALRECS_CF_FACTORS", 64, min_val=1)

# Notifications
NOTIFICATION_WEBHOOK_URL = os.environ.get("LOCALRECS_WEBHOOK_URL")
NOTIFICATION_TIMEOUT = 10.0

# Tokenizer
TOKEN_NAMESPACES = ("genre", "tag", "person", "studio", "title", "overview")
OVERVIEW_KEYWORD_CAP = 10
MIN_KEYWORD_LENGTH = 3
STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "of", "to", "in", "on", "for", "with",
    "by", "at", "from", "as", "is", "it", "this", "that", "these", "those",
})


@dataclass
class RecsSettings:
    """
    Per-run settings consumed by the pipeline.

    Defaults mirror the module constants so callers only override what
    they need (CLI flags, tests).
    """

    max_items_per_row: int = MAX_ITEMS_PER_ROW
    recent_items_to_learn_from: int = RECENT_ITEMS_TO_LEARN_FROM
    half_life_days: int = HALF_LIFE_DAYS
    finished_weight: float = FINISHED_WEIGHT
    partial_over_40_weight: float = PARTIAL_OVER_40_WEIGHT
    favorite_or_like_weight: float = FAVORITE_OR_LIKE_WEIGHT
    rating_weight: float = RATING_WEIGHT
    minimum_score_threshold: float = MINIMUM_SCORE_THRESHOLD
    create_top_picks_row: bool = CREATE_TOP_PICKS_ROW
    create_because_rows: bool = CREATE_BECAUSE_ROWS
    because_rows_per_user: int = BECAUSE_ROWS_PER_USER
    dry_run: bool = DRY_RUN
    enable_collaborative_filtering: bool = ENABLE_COLLABORATIVE_FILTERING
    cf_blend_weight: float = CF_BLEND_WEIGHT
    cf_n_factors: int = CF_N_FACTORS

    @classmethod
    def from_args(cls, args) -> "RecsSettings":
        """Overlay argparse values that were actually supplied onto the defaults."""
        settings = cls()
        overrides = {
            "max_items": "max_items_per_row",
            "min_score": "minimum_score_threshold",
            "half_life": "half_life_days",
            "recent": "recent_items_to_learn_from",
        }
        for arg_name, field_name in overrides.items():
            value = getattr(args, arg_name, None)
            if value is not None:
                setattr(settings, field_name, value)

        if getattr(args, "dry_run", False):
            settings.dry_run = True
        if getattr(args, "enable_cf", False):
            settings.enable_collaborative_filtering = True
        if getattr(args, "no_top_picks", False):
            settings.create_top_picks_row = False
        if getattr(args, "no_because", False):
            settings.create_because_rows = False
        return settings

    def describe(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in asdict(self).items())
