"""
State store: the authoritative in-memory state of one card
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from fightcard.core.errors import CommandValidationError
from fightcard.models import CardState, Fight, Social
from fightcard.normalizer import (
    DEFAULT_FONT,
    EVENT_SIZE_RANGE,
    IMAGE_SIZE_RANGE,
    INFO_MAX_LEN,
    clamp_size,
    coerce_bool,
    normalize_font,
    normalize_image,
    normalize_text,
    sanitize_social,
)


logger = logging.getLogger(__name__)

# Extra metadata row persisted alongside the envelope (never broadcast)
FIGHT_SEQ_KEY = "fightSeq"


class StateStore:
    """
    Owns one CardState plus the fight id high-water mark

    Only the command processor mutates the store; everything else reads
    snapshots.
    """

    def __init__(self, state: Optional[CardState] = None, fight_seq: int = 0):
        self.state = state if state is not None else CardState()
        self.fight_seq = max(fight_seq, self._max_fight_id())
        self.clamp_current()

    @property
    def fights(self) -> List[Fight]:
        return self.state.fights

    def snapshot(self) -> Dict[str, Any]:
        return self.state.snapshot()

    def _max_fight_id(self) -> int:
        return max((f.id for f in self.state.fights), default=0)

    def next_fight_id(self) -> int:
        """Allocate a fight id; ids are never reused on this card"""
        self.fight_seq = max(self.fight_seq, self._max_fight_id()) + 1
        return self.fight_seq

    def check_index(self, index: int) -> Fight:
        if not 0 <= index < len(self.state.fights):
            raise CommandValidationError(
                f"Index {index} out of range (card has {len(self.state.fights)} fights)",
                field="index",
            )
        return self.state.fights[index]

    def index_of(self, fight_id: int) -> Optional[int]:
        for i, fight in enumerate(self.state.fights):
            if fight.id == fight_id:
                return i
        return None

    def live_fight_id(self) -> Optional[int]:
        fights = self.state.fights
        if 0 <= self.state.current < len(fights):
            return fights[self.state.current].id
        return None

    def clamp_current(self) -> None:
        """Keep the live index inside [0, len-1], or 0 on an empty card"""
        count = len(self.state.fights)
        if count == 0:
            self.state.current = 0
        else:
            self.state.current = max(0, min(self.state.current, count - 1))


# ==================== RESTORE FROM MIRROR ====================

_BOOL_KEYS = {"standby": True, "infoVisible": True, "fightsVisible": True}
_TEXT_KEYS = {
    "eventName": 120,
    "eventColor": 32,
    "eventInfo": INFO_MAX_LEN,
    "eventBgColor": 32,
}
_IMAGE_KEYS = ("eventImage", "eventFootnoteImage")


def _coerce_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def restore_store(fight_rows: List[Dict[str, Any]], meta: Dict[str, Any]) -> StateStore:
    """
    Rebuild a StateStore from persisted rows

    Args:
        fight_rows: Fight dicts already ordered by position
        meta: Metadata key -> decoded value; missing or malformed values fall
              back to defaults

    Returns:
        StateStore seeded with the persisted state
    """
    fights = []
    for row in fight_rows:
        try:
            fights.append(Fight.model_validate(row))
        except ValidationError as e:
            logger.warning(f"⚠️ Skipping malformed persisted fight {row!r}: {e}")
        else:
            # empty strings from older rows mean "not set"
            fights[-1].winner = fights[-1].winner or None
            fights[-1].method = fights[-1].method or None

    defaults = CardState()
    values: Dict[str, Any] = {"fights": fights}
    for key, default in _BOOL_KEYS.items():
        values[key] = coerce_bool(meta.get(key), default)
    for key, max_len in _TEXT_KEYS.items():
        values[key] = normalize_text(meta.get(key), max_len)
    for key in _IMAGE_KEYS:
        values[key] = normalize_image(meta.get(key))
    values["eventFont"] = normalize_font(meta.get("eventFont") or DEFAULT_FONT)
    values["eventSize"] = clamp_size(meta.get("eventSize"), EVENT_SIZE_RANGE, defaults.event_size)
    values["eventImageSize"] = clamp_size(
        meta.get("eventImageSize"), IMAGE_SIZE_RANGE, defaults.event_image_size
    )
    values["social"] = Social.model_validate(sanitize_social(meta.get("social")))
    values["current"] = _coerce_int(meta.get("current"), 0)

    state = CardState.model_validate(values)
    return StateStore(state, fight_seq=_coerce_int(meta.get(FIGHT_SEQ_KEY), 0))


def split_snapshot(snapshot: Dict[str, Any]) -> tuple:
    """Split a snapshot envelope into (fight dicts, scalar metadata dict)"""
    fights = list(snapshot.get("fights") or [])
    meta = {k: v for k, v in snapshot.items() if k != "fights"}
    return fights, meta
