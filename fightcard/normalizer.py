"""
Normalizers for admin-supplied values (winner side, images, social links, sizes)
"""
from typing import Any, Dict, Optional

from fightcard.core.errors import CommandValidationError


SIDES = ("a", "b", "draw")

FONTS = ("bebas", "anton", "oswald", "montserrat", "poppins", "playfair", "impact")
DEFAULT_FONT = "bebas"

SOCIAL_CHANNELS = ("website", "facebook", "instagram", "additional")

INFO_MAX_LEN = 800
SOCIAL_VALUE_MAX_LEN = 180
METHOD_MAX_LEN = 40
NAME_MAX_LEN = 120
COLOR_MAX_LEN = 32

# Sizes are tenths of a rem
EVENT_SIZE_RANGE = (10, 80)
IMAGE_SIZE_RANGE = (20, 400)


def normalize_side(side: Any) -> str:
    """
    Normalize a winner side

    Args:
        side: Raw side value, e.g. "A", " b ", "Draw"

    Returns:
        One of "a", "b", "draw"

    Raises:
        CommandValidationError: If the value is not a known side
    """
    value = str(side if side is not None else "").strip().lower()
    if value not in SIDES:
        raise CommandValidationError(f"Invalid side: {side!r} (expected a, b or draw)", field="side")
    return value


def normalize_text(value: Any, max_len: int) -> str:
    """Coerce to a trimmed string capped at max_len characters"""
    if value is None:
        return ""
    return str(value).strip()[:max_len]


def normalize_image(value: Any) -> str:
    """
    Normalize an image reference to a plain string

    Accepts a direct string or a wrapper object such as {"src": "..."} or {"v": "..."}.
    Anything else clears the image.
    """
    if isinstance(value, dict):
        value = value.get("src", value.get("v"))
    if not isinstance(value, str):
        return ""
    return value.strip()


def normalize_font(value: Any) -> str:
    font = normalize_text(value, 32).lower()
    return font if font in FONTS else DEFAULT_FONT


def clamp_size(value: Any, bounds: tuple, default: int) -> int:
    """Clamp a numeric size into bounds; non-numeric input yields the default"""
    low, high = bounds
    if isinstance(value, bool):
        return default
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def coerce_bool(value: Any, default: bool = False) -> bool:
    """Coerce JSON-ish truthy values ("true", 1, "on") to a bool"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1", "on", "yes"):
            return True
        if text in ("false", "0", "off", "no", ""):
            return False
    return default


def sanitize_social_channel(entry: Any) -> Dict[str, Any]:
    if not isinstance(entry, dict):
        return {"enabled": False, "value": ""}
    return {
        "enabled": coerce_bool(entry.get("enabled")),
        "value": normalize_text(entry.get("value"), SOCIAL_VALUE_MAX_LEN),
    }


def sanitize_social(social: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """
    Sanitize all four social channels independently

    Unknown or malformed channel entries become {"enabled": False, "value": ""};
    extra keys are dropped.
    """
    if not isinstance(social, dict):
        social = {}
    return {name: sanitize_social_channel(social.get(name)) for name in SOCIAL_CHANNELS}
