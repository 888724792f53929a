"""
Tests for the durable mirror: SQL round trip, file fallback, coalescing and
failure isolation
"""
import json
import shutil
import subprocess

import pytest

from fightcard.core.commands import apply_command, parse_command
from fightcard.core.mirror import DurableMirror, FileMirror, SqlMirror
from fightcard.core.store import StateStore, restore_store
from fightcard.models import CardEntryInfo, CardOwner


def sample_store() -> StateStore:
    store = StateStore()
    for raw in (
        {"type": "createFight", "data": {"a": "Smith", "b": "Jones", "weight": "70kg", "aGym": "North"}},
        {"type": "createFight", "data": {"a": "Åsa", "b": "Béa", "klass": "B"}},
        {"type": "createFight", "data": {"a": "Lee", "b": "Kim"}},
        {"type": "setWinner", "index": 0, "side": "a"},
        {"type": "setWinMethod", "index": 0, "method": "KO"},
        {"type": "deleteFight", "index": 2},
        {"type": "setCurrent", "index": 1},
        {"type": "setEventMeta", "name": "Spring Gala", "font": "oswald", "size": 64, "info": "Doors 18:00"},
        {"type": "setSocial", "social": {"instagram": {"enabled": True, "value": "@gala"}}},
    ):
        apply_command(store, parse_command(raw))
    return store


class BrokenSqlMirror:
    """Primary store whose writes always fail"""

    database_url = "broken://"

    def __init__(self):
        self.writes = 0

    async def init(self):
        pass

    async def save_card(self, slug, snapshot, fight_seq, audit=()):
        self.writes += 1
        raise OSError("disk full")

    async def dispose(self):
        pass


@pytest.mark.asyncio
async def test_sql_round_trip(tmp_path):
    mirror = SqlMirror(f"sqlite+aiosqlite:///{tmp_path}/db/cards.db")
    await mirror.init()
    store = sample_store()
    try:
        await mirror.save_card("gala", store.snapshot(), store.fight_seq)
        restored = await mirror.load_card("gala")
    finally:
        await mirror.dispose()

    assert restored.snapshot() == store.snapshot()
    # the deleted fight's id stays burned
    assert restored.fight_seq == 3
    assert restored.next_fight_id() == 4


@pytest.mark.asyncio
async def test_sql_save_replaces_previous_fights(tmp_path):
    mirror = SqlMirror(f"sqlite+aiosqlite:///{tmp_path}/cards.db")
    await mirror.init()
    store = sample_store()
    try:
        await mirror.save_card("gala", store.snapshot(), store.fight_seq)
        apply_command(store, parse_command({"type": "reorderFights", "order": [2, 1]}))
        apply_command(store, parse_command({"type": "deleteFight", "index": 1}))
        await mirror.save_card("gala", store.snapshot(), store.fight_seq)
        restored = await mirror.load_card("gala")
    finally:
        await mirror.dispose()

    assert [f.id for f in restored.fights] == [2]
    assert restored.state.current == 0


@pytest.mark.asyncio
async def test_sql_missing_card_is_none(tmp_path):
    mirror = SqlMirror(f"sqlite+aiosqlite:///{tmp_path}/cards.db")
    await mirror.init()
    try:
        assert await mirror.load_card("nothing-here") is None
    finally:
        await mirror.dispose()


@pytest.mark.asyncio
async def test_sql_entries_and_audit(tmp_path):
    mirror = SqlMirror(f"sqlite+aiosqlite:///{tmp_path}/cards.db")
    await mirror.init()
    info = CardEntryInfo(slug="gala", owner=CardOwner(club="Loyalty", event_name="Gala"),
                         created_at=100.0, expires_at=200.0)
    audit = [
        {"action": "createFight", "actor": "http", "details": {"type": "createFight"}, "at": 1.0},
        {"action": "setCurrent", "actor": "ws", "details": {"type": "setCurrent", "index": 0}, "at": 2.0},
    ]
    try:
        await mirror.save_entry(info)
        await mirror.save_card("gala", sample_store().snapshot(), 3, audit)
        entries = await mirror.load_entries()
        events = await mirror.audit_log("gala", limit=10)
    finally:
        await mirror.dispose()

    assert entries == [info]
    assert [e["action"] for e in events] == ["setCurrent", "createFight"]
    assert events[0]["details"]["index"] == 0


def test_restore_tolerates_bad_metadata():
    store = restore_store(
        [{"id": 1, "a": "A", "b": "B", "winner": "", "method": ""}, {"a": "missing id"}],
        {"current": 7, "standby": "yes?", "eventSize": "huge", "eventFont": "papyrus", "social": "nope"},
    )
    assert [f.id for f in store.fights] == [1]
    assert store.fights[0].winner is None
    assert store.fights[0].method is None
    assert store.state.current == 0
    assert store.state.standby is True
    assert store.state.event_font == "bebas"


@pytest.mark.asyncio
async def test_file_mirror_round_trip(tmp_path):
    mirror = FileMirror(str(tmp_path / "cards"))
    store = sample_store()
    await mirror.save_card("gala", store.snapshot(), store.fight_seq)

    on_disk = json.loads((tmp_path / "cards" / "gala.json").read_text(encoding="utf-8"))
    assert on_disk["fightSeq"] == 3
    restored = await mirror.load_card("gala")
    assert restored.snapshot() == store.snapshot()
    assert restored.fight_seq == 3


@pytest.mark.asyncio
async def test_primary_failure_falls_back_to_file(tmp_path):
    primary = BrokenSqlMirror()
    mirror = DurableMirror(primary, FileMirror(str(tmp_path)), retries=3, backoff_seconds=0)
    await mirror.start()
    store = sample_store()

    result = await mirror.persist("gala", store.snapshot(), store.fight_seq)

    assert result.ok is True
    assert result.backend == "file"
    assert result.attempts == 3
    assert "disk full" in result.error
    assert primary.writes == 3
    assert (tmp_path / "gala.json").exists()


@pytest.mark.asyncio
async def test_total_failure_is_reported_not_raised():
    mirror = DurableMirror(BrokenSqlMirror(), None, retries=2, backoff_seconds=0)
    await mirror.start()
    result = await mirror.persist("gala", sample_store().snapshot(), 3)
    assert result.ok is False
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_scheduled_writes_coalesce_to_latest(tmp_path):
    mirror = DurableMirror(SqlMirror(f"sqlite+aiosqlite:///{tmp_path}/cards.db"), None, backoff_seconds=0)
    await mirror.start()
    store = StateStore()
    for n in range(5):
        apply_command(store, parse_command({"type": "createFight", "data": {"a": f"A{n}", "b": f"B{n}"}}))
        mirror.schedule("gala", store.snapshot(), store.fight_seq)
    await mirror.flush()
    restored = await mirror.load_card("gala")
    await mirror.close()

    assert restored.snapshot() == store.snapshot()
    assert mirror.last_result["gala"].ok is True


@pytest.mark.asyncio
async def test_load_prefers_primary_then_file(tmp_path):
    fallback = FileMirror(str(tmp_path / "files"))
    store = sample_store()
    await fallback.save_card("gala", store.snapshot(), store.fight_seq)

    mirror = DurableMirror(SqlMirror(f"sqlite+aiosqlite:///{tmp_path}/cards.db"), fallback)
    await mirror.start()
    restored = await mirror.load_card("gala")
    await mirror.close()

    assert restored.snapshot() == store.snapshot()


@pytest.mark.asyncio
async def test_method_without_winner_survives_reload(tmp_path):
    store = StateStore()
    apply_command(store, parse_command({"type": "createFight", "data": {"a": "A", "b": "B"}}))
    apply_command(store, parse_command({"type": "setWinMethod", "index": 0, "method": "KO"}))
    mirror = SqlMirror(f"sqlite+aiosqlite:///{tmp_path}/cards.db")
    await mirror.init()
    try:
        await mirror.save_card("gala", store.snapshot(), store.fight_seq)
        restored = await mirror.load_card("gala")
    finally:
        await mirror.dispose()

    assert restored.snapshot() == store.snapshot()
    assert restored.fights[0].method == "KO"
    assert restored.fights[0].winner is None


class FlakySqlMirror:
    """Primary store that can be switched off; records the audit events it receives"""

    database_url = "flaky://"

    def __init__(self):
        self.down = False
        self.audit = []

    async def init(self):
        pass

    async def save_card(self, slug, snapshot, fight_seq, audit=()):
        if self.down:
            raise ConnectionError("database unreachable")
        self.audit.extend(audit)

    async def dispose(self):
        pass


@pytest.mark.asyncio
async def test_audit_events_wait_for_the_primary(tmp_path):
    primary = FlakySqlMirror()
    mirror = DurableMirror(primary, FileMirror(str(tmp_path)), retries=1, backoff_seconds=0)
    await mirror.start()
    snapshot = sample_store().snapshot()

    primary.down = True
    mirror.schedule("gala", snapshot, 3, audit=("setCurrent", "http", {"index": 0}))
    await mirror.flush()
    assert mirror.last_result["gala"].backend == "file"
    assert primary.audit == []

    primary.down = False
    mirror.schedule("gala", snapshot, 3, audit=("setStandby", "presence", {"on": True}))
    await mirror.flush()
    await mirror.close()

    assert mirror.last_result["gala"].backend == "sql"
    assert [e["action"] for e in primary.audit] == ["setCurrent", "setStandby"]


@pytest.mark.asyncio
async def test_failed_git_commit_keeps_file_write(tmp_path):
    # tmp_path is not a git work tree, so the commit cannot succeed
    mirror = DurableMirror(None, FileMirror(str(tmp_path / "cards"), git_commit=True))
    result = await mirror.persist("gala", sample_store().snapshot(), 3)
    assert result.ok is True
    assert result.backend == "file"
    assert (tmp_path / "cards" / "gala.json").exists()


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
@pytest.mark.asyncio
async def test_unchanged_card_is_not_committed_again(tmp_path):
    subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
    subprocess.run(["git", "config", "user.email", "ops@example.com"], cwd=tmp_path, check=True)
    subprocess.run(["git", "config", "user.name", "Ops"], cwd=tmp_path, check=True)
    mirror = FileMirror(str(tmp_path), git_commit=True)
    snapshot = sample_store().snapshot()
    path = mirror.path_for("gala")

    await mirror.save_card("gala", snapshot, 3)
    assert await mirror.commit(path, "again") is False

    await mirror.save_card("gala", {**snapshot, "standby": True}, 3)
    log = subprocess.run(["git", "log", "--oneline"], cwd=tmp_path, check=True,
                         capture_output=True, text=True).stdout
    assert len(log.strip().splitlines()) == 2
