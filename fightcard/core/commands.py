"""
Command processor: validate-then-apply admin commands against one card

Commands for a card are serialized by an asyncio.Lock. Inside the critical
section the in-memory state is mutated synchronously, the resulting snapshot
is queued for broadcast and a durable write is scheduled; neither of the
latter is awaited by the caller.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from fightcard.core.errors import CommandValidationError
from fightcard.core.idempotency import IdempotencyGuard
from fightcard.core.store import StateStore
from fightcard.models import (
    ClearAllFights,
    ClearWinner,
    Command,
    CommandResult,
    CreateFight,
    DeleteFight,
    Fight,
    ReorderFights,
    SetCurrent,
    SetEventMeta,
    SetFightsVisible,
    SetInfoVisible,
    SetSocial,
    SetStandby,
    SetWinMethod,
    SetWinner,
    Social,
)
from fightcard.normalizer import (
    COLOR_MAX_LEN,
    EVENT_SIZE_RANGE,
    IMAGE_SIZE_RANGE,
    INFO_MAX_LEN,
    METHOD_MAX_LEN,
    NAME_MAX_LEN,
    clamp_size,
    normalize_font,
    normalize_image,
    normalize_side,
    normalize_text,
    sanitize_social,
)


logger = logging.getLogger(__name__)

_command_adapter = TypeAdapter(Command)

# Legacy command tags still sent by older admin consoles
COMMAND_ALIASES = {"setLive": "setCurrent"}


def parse_command(raw: Any) -> Command:
    """
    Parse a command envelope into its typed variant

    Args:
        raw: Decoded JSON body, e.g. {"type": "setCurrent", "index": 2}

    Returns:
        One of the command models

    Raises:
        CommandValidationError: Unknown type or malformed payload
    """
    if not isinstance(raw, dict):
        raise CommandValidationError("Command must be a JSON object")
    body = dict(raw)
    if not isinstance(body.get("type"), str):
        raise CommandValidationError("Command type must be a string", field="type")
    body["type"] = COMMAND_ALIASES.get(body["type"], body["type"])
    try:
        return _command_adapter.validate_python(body)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise CommandValidationError(
            f"Invalid command {raw.get('type')!r}: {loc} {first.get('msg', str(e))}".strip(),
            field=loc or None,
        )


# ==================== APPLY ====================
# Each handler mutates the store and returns (changed, fight).

def _apply_set_current(store: StateStore, cmd: SetCurrent) -> Tuple[bool, None]:
    store.check_index(cmd.index)
    store.state.current = cmd.index
    # an explicit live selection resumes live display
    store.state.standby = False
    return True, None


def _apply_set_winner(store: StateStore, cmd: SetWinner) -> Tuple[bool, Fight]:
    fight = store.check_index(cmd.index)
    fight.winner = normalize_side(cmd.side)
    return True, fight


def _apply_clear_winner(store: StateStore, cmd: ClearWinner) -> Tuple[bool, Fight]:
    fight = store.check_index(cmd.index)
    fight.winner = None
    fight.method = None
    return True, fight


def _apply_set_win_method(store: StateStore, cmd: SetWinMethod) -> Tuple[bool, Fight]:
    fight = store.check_index(cmd.index)
    fight.method = normalize_text(cmd.method, METHOD_MAX_LEN) or None
    return True, fight


def _apply_create_fight(store: StateStore, cmd: CreateFight) -> Tuple[bool, Fight]:
    data = cmd.data
    a = (data.a or "").strip()
    b = (data.b or "").strip()
    if not a:
        raise CommandValidationError("Fighter A name is required", field="data.a")
    if not b:
        raise CommandValidationError("Fighter B name is required", field="data.b")

    candidate = Fight(
        id=0,
        a=a,
        b=b,
        weight=(data.weight or "").strip(),
        klass=(data.klass or "").strip(),
        a_gym=(data.a_gym or "").strip(),
        b_gym=(data.b_gym or "").strip(),
    )
    key = candidate.content_key()
    for existing in store.fights:
        if existing.content_key() == key:
            logger.info(f"♻️ Duplicate fight ignored: {a} vs {b} (existing id {existing.id})")
            return False, existing

    candidate.id = store.next_fight_id()
    store.fights.append(candidate)
    store.state.fights_visible = True
    store.state.standby = False
    return True, candidate


def _apply_delete_fight(store: StateStore, cmd: DeleteFight) -> Tuple[bool, Fight]:
    fight = store.check_index(cmd.index)
    del store.fights[cmd.index]
    # the live fight stays live by identity unless it was the one deleted
    if cmd.index < store.state.current:
        store.state.current -= 1
    store.clamp_current()
    return True, fight


def _reorder(fights: List[Fight], order: List[int]) -> List[Fight]:
    by_id = {f.id: f for f in fights}
    picked: List[Fight] = []
    seen = set()
    for fight_id in order:
        fight = by_id.get(fight_id)
        if fight is not None and fight.id not in seen:
            picked.append(fight)
            seen.add(fight.id)

    # Legacy callers send positions instead of ids. Only used when nothing matched
    # by id and the list looks like a full permutation of indices; an id that
    # happens to equal a valid index makes this ambiguous.
    if not picked and len(order) == len(fights) and all(0 <= i < len(fights) for i in order):
        for i in order:
            fight = fights[i]
            if fight.id not in seen:
                picked.append(fight)
                seen.add(fight.id)

    picked.extend(f for f in fights if f.id not in seen)
    return picked


def _apply_reorder_fights(store: StateStore, cmd: ReorderFights) -> Tuple[bool, None]:
    live_id = store.live_fight_id()
    store.state.fights = _reorder(store.fights, cmd.order)
    if live_id is not None:
        position = store.index_of(live_id)
        if position is not None:
            store.state.current = position
    store.clamp_current()
    return True, None


def _apply_set_standby(store: StateStore, cmd: SetStandby) -> Tuple[bool, None]:
    store.state.standby = cmd.on
    return True, None


def _apply_set_info_visible(store: StateStore, cmd: SetInfoVisible) -> Tuple[bool, None]:
    store.state.info_visible = cmd.on
    return True, None


def _apply_set_fights_visible(store: StateStore, cmd: SetFightsVisible) -> Tuple[bool, None]:
    store.state.fights_visible = cmd.on
    return True, None


def _apply_clear_all_fights(store: StateStore, cmd: ClearAllFights) -> Tuple[bool, None]:
    store.state.fights = []
    store.state.current = 0
    return True, None


def _apply_set_event_meta(store: StateStore, cmd: SetEventMeta) -> Tuple[bool, None]:
    present = cmd.model_fields_set
    state = store.state
    if "name" in present:
        state.event_name = normalize_text(cmd.name, NAME_MAX_LEN)
    if "font" in present:
        state.event_font = normalize_font(cmd.font)
    if "color" in present:
        state.event_color = normalize_text(cmd.color, COLOR_MAX_LEN)
    if "size" in present:
        state.event_size = clamp_size(cmd.size, EVENT_SIZE_RANGE, state.event_size)
    if "image" in present:
        state.event_image = normalize_image(cmd.image)
    if "image_size" in present:
        state.event_image_size = clamp_size(cmd.image_size, IMAGE_SIZE_RANGE, state.event_image_size)
    if "info" in present:
        state.event_info = (cmd.info or "")[:INFO_MAX_LEN]
        if state.event_info.strip():
            state.info_visible = True
    if "bg_color" in present:
        state.event_bg_color = normalize_text(cmd.bg_color, COLOR_MAX_LEN)
    if "footnote_image" in present:
        state.event_footnote_image = normalize_image(cmd.footnote_image)
    return True, None


def _apply_set_social(store: StateStore, cmd: SetSocial) -> Tuple[bool, None]:
    store.state.social = Social.model_validate(sanitize_social(cmd.social))
    return True, None


HANDLERS: Dict[type, Callable] = {
    SetCurrent: _apply_set_current,
    SetWinner: _apply_set_winner,
    ClearWinner: _apply_clear_winner,
    SetWinMethod: _apply_set_win_method,
    CreateFight: _apply_create_fight,
    DeleteFight: _apply_delete_fight,
    ReorderFights: _apply_reorder_fights,
    SetStandby: _apply_set_standby,
    SetInfoVisible: _apply_set_info_visible,
    SetFightsVisible: _apply_set_fights_visible,
    ClearAllFights: _apply_clear_all_fights,
    SetEventMeta: _apply_set_event_meta,
    SetSocial: _apply_set_social,
}


def apply_command(store: StateStore, command: Command) -> Tuple[bool, Optional[Fight]]:
    """
    Validate and apply one command to the store

    Validation happens before any mutation, so a rejected command leaves the
    state untouched.

    Returns:
        (changed, fight) where fight is the affected/created fight if any

    Raises:
        CommandValidationError: Out-of-range index, empty fighter name, bad side
    """
    handler = HANDLERS.get(type(command))
    if handler is None:
        raise CommandValidationError(f"Unsupported command: {type(command).__name__}")
    return handler(store, command)


# ==================== PROCESSOR ====================

class CommandProcessor:
    """
    Single-writer command pipeline for one card

    Args:
        slug: Card slug (used for logging and persistence keys)
        store: The card's StateStore
        channel: BroadcastChannel receiving each post-command snapshot
        mirror: Optional DurableMirror; writes are scheduled, never awaited
        guard: IdempotencyGuard for request ids
    """

    def __init__(self, slug: str, store: StateStore, channel, mirror=None,
                 guard: Optional[IdempotencyGuard] = None):
        self.slug = slug
        self.store = store
        self.channel = channel
        self.mirror = mirror
        self.guard = guard or IdempotencyGuard()
        self._lock = asyncio.Lock()

    def snapshot(self) -> Dict[str, Any]:
        return self.store.snapshot()

    async def submit(self, command: Command, actor: str = "admin") -> CommandResult:
        """
        Apply a command and fan out the result

        Duplicate request ids replay the result of their first application and
        content-duplicate fights report success, neither changing state or broadcasting.
        """
        request_id = command.request_id
        async with self._lock:
            if request_id is not None and self.guard.seen(request_id):
                logger.info(f"♻️ [{self.slug}] Duplicate request {request_id} ({command.type}) absorbed")
                prior = self.guard.result_for(request_id)
                if prior is None:
                    return CommandResult(duplicate=True, broadcast_id=self.channel.last_broadcast_id)
                return prior.model_copy(update={"duplicate": True}, deep=True)

            changed, fight = apply_command(self.store, command)

            if not changed:
                result = CommandResult(duplicate=True, broadcast_id=self.channel.last_broadcast_id, fight=fight)
                self._remember(request_id, result)
                return result

            snapshot = self.store.snapshot()
            broadcast_id = self.channel.publish(snapshot)
            if self.mirror is not None:
                self.mirror.schedule(
                    self.slug,
                    snapshot,
                    self.store.fight_seq,
                    audit=(command.type, actor, command.model_dump(by_alias=True, exclude_none=True)),
                )

            result = CommandResult(broadcast_id=broadcast_id, fight=fight)
            self._remember(request_id, result)

        logger.info(f"✅ [{self.slug}] {command.type} by {actor} -> broadcast {broadcast_id}")
        return result

    def _remember(self, request_id: Optional[str], result: CommandResult) -> None:
        if request_id is not None:
            # the fight as it was when first applied
            self.guard.remember(request_id, result.model_copy(deep=True))

    async def enter_standby(self) -> CommandResult:
        """Synthesized when the last admin session leaves"""
        return await self.submit(SetStandby(on=True), actor="presence")

    async def reset_fights(self) -> None:
        """One-time startup reconciliation for the start-empty policy"""
        await self.submit(ClearAllFights(), actor="startup")
