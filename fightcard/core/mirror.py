"""
Durable mirror: best-effort persistence of card state

Primary store is a relational database through SQLAlchemy's async engine;
a JSON file per card (optionally committed to git) is the fallback. Writes
are coalesced per card by a single writer task, so the newest snapshot is
always the last one written. Nothing here raises into the command path:
every write ends in a PersistResult that the writer logs.
"""
import asyncio
import json
import logging
import os
import time
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import Float, Integer, String, Text, delete, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fightcard.core.errors import PersistenceFailure
from fightcard.core.store import FIGHT_SEQ_KEY, StateStore, restore_store, split_snapshot
from fightcard.models import CardEntryInfo


logger = logging.getLogger(__name__)

# Audit events held per card while the SQL store is unavailable
AUDIT_BACKLOG = 500


class PersistResult(BaseModel):
    """Outcome of one best-effort write"""
    ok: bool
    backend: str            # "sql" | "file" | "none"
    attempts: int = 0
    error: Optional[str] = None


# ==================== SQL MODELS ====================

class Base(DeclarativeBase):
    """Base model class."""

    pass


class CardRow(Base):
    __tablename__ = "cards"

    slug: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[float] = mapped_column(Float)
    expires_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class FightRow(Base):
    __tablename__ = "fights"

    card: Mapped[str] = mapped_column(String(64), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    fight_id: Mapped[int] = mapped_column(Integer)
    a: Mapped[str] = mapped_column(String(200))
    b: Mapped[str] = mapped_column(String(200))
    weight: Mapped[str] = mapped_column(String(100), default="")
    klass: Mapped[str] = mapped_column(String(100), default="")
    a_gym: Mapped[str] = mapped_column(String(200), default="")
    b_gym: Mapped[str] = mapped_column(String(200), default="")
    winner: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    method: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)


class MetaRow(Base):
    """One scalar field of a card, JSON-encoded (new fields need no migration)"""
    __tablename__ = "card_meta"

    card: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text)


class AuditRow(Base):
    __tablename__ = "audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    card: Mapped[str] = mapped_column(String(64), index=True)
    action: Mapped[str] = mapped_column(String(40))
    actor: Mapped[str] = mapped_column(String(40))
    details: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[float] = mapped_column(Float)


def _fight_to_row(slug: str, position: int, fight: Dict[str, Any]) -> FightRow:
    return FightRow(
        card=slug,
        position=position,
        fight_id=int(fight["id"]),
        a=fight.get("a", ""),
        b=fight.get("b", ""),
        weight=fight.get("weight", ""),
        klass=fight.get("klass", ""),
        a_gym=fight.get("aGym", ""),
        b_gym=fight.get("bGym", ""),
        winner=fight.get("winner"),
        method=fight.get("method"),
    )


def _row_to_fight(row: FightRow) -> Dict[str, Any]:
    return {
        "id": row.fight_id,
        "a": row.a,
        "b": row.b,
        "weight": row.weight or "",
        "klass": row.klass or "",
        "aGym": row.a_gym or "",
        "bGym": row.b_gym or "",
        "winner": row.winner,
        "method": row.method,
    }


class SqlMirror:
    """Card state in a relational database (sqlite+aiosqlite by default)"""

    backend = "sql"

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False, future=True)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def init(self) -> None:
        """Create tables (and the sqlite directory) if missing"""
        url = make_url(self.database_url)
        if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def save_card(self, slug: str, snapshot: Dict[str, Any], fight_seq: int,
                        audit: List[Dict[str, Any]] = ()) -> None:
        """Replace the card's fights by position and upsert its metadata in one transaction"""
        fights, meta = split_snapshot(snapshot)
        meta[FIGHT_SEQ_KEY] = fight_seq
        async with self.session_maker() as session:
            async with session.begin():
                await session.execute(delete(FightRow).where(FightRow.card == slug))
                session.add_all([_fight_to_row(slug, i, f) for i, f in enumerate(fights)])
                for key, value in meta.items():
                    await session.merge(MetaRow(card=slug, key=key, value=json.dumps(value, ensure_ascii=False)))
                session.add_all([
                    AuditRow(
                        card=slug,
                        action=event["action"],
                        actor=event["actor"],
                        details=json.dumps(event["details"], ensure_ascii=False),
                        created_at=event["at"],
                    )
                    for event in audit
                ])

    async def load_card(self, slug: str) -> Optional[StateStore]:
        """Read fights ordered by position plus metadata; None if nothing stored"""
        async with self.session_maker() as session:
            fight_rows = (await session.execute(
                select(FightRow).where(FightRow.card == slug).order_by(FightRow.position)
            )).scalars().all()
            meta_rows = (await session.execute(
                select(MetaRow).where(MetaRow.card == slug)
            )).scalars().all()

        if not fight_rows and not meta_rows:
            return None

        meta: Dict[str, Any] = {}
        for row in meta_rows:
            try:
                meta[row.key] = json.loads(row.value)
            except (TypeError, ValueError):
                logger.warning(f"⚠️ Ignoring malformed metadata {slug}.{row.key}={row.value!r}")
        return restore_store([_row_to_fight(r) for r in fight_rows], meta)

    async def save_entry(self, info: CardEntryInfo) -> None:
        async with self.session_maker() as session:
            async with session.begin():
                await session.merge(CardRow(
                    slug=info.slug,
                    owner=info.owner.model_dump_json(by_alias=True),
                    created_at=info.created_at,
                    expires_at=info.expires_at,
                ))

    async def load_entries(self) -> List[CardEntryInfo]:
        async with self.session_maker() as session:
            rows = (await session.execute(select(CardRow))).scalars().all()
        entries = []
        for row in rows:
            try:
                owner = json.loads(row.owner or "{}")
            except ValueError:
                owner = {}
            entries.append(CardEntryInfo(
                slug=row.slug, owner=owner, created_at=row.created_at, expires_at=row.expires_at
            ))
        return entries

    async def audit_log(self, slug: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent audit events for a card, newest first"""
        async with self.session_maker() as session:
            rows = (await session.execute(
                select(AuditRow).where(AuditRow.card == slug).order_by(AuditRow.id.desc()).limit(limit)
            )).scalars().all()
        return [
            {"action": r.action, "actor": r.actor, "details": json.loads(r.details or "{}"), "at": r.created_at}
            for r in rows
        ]

    async def dispose(self) -> None:
        await self.engine.dispose()


class FileMirror:
    """
    Fallback mirror: one JSON file per card, optionally committed to git

    The directory must already be inside a git work tree when git_commit is on.
    """

    backend = "file"

    def __init__(self, directory: str, git_commit: bool = False):
        self.directory = Path(directory)
        self.git_commit = git_commit

    def path_for(self, slug: str) -> Path:
        return self.directory / f"{slug}.json"

    def _write(self, path: Path, payload: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)

    async def save_card(self, slug: str, snapshot: Dict[str, Any], fight_seq: int,
                        audit: List[Dict[str, Any]] = ()) -> None:
        path = self.path_for(slug)
        await asyncio.to_thread(self._write, path, {**snapshot, FIGHT_SEQ_KEY: fight_seq})
        if self.git_commit:
            # the file is already written; a failed commit only loses history
            try:
                await self.commit(path, f"Update fight card {slug}")
            except PersistenceFailure as e:
                logger.warning(f"⚠️ [{slug}] {e.message}")

    async def _git(self, cwd: Path, *args: str) -> Tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise PersistenceFailure(f"git unavailable: {e}")
        _, stderr = await proc.communicate()
        return proc.returncode, stderr.decode(errors="replace").strip()

    async def commit(self, path: Path, message: str) -> bool:
        """
        Stage and commit one card file

        Returns:
            False when the file is unchanged since the last commit

        Raises:
            PersistenceFailure: git is missing or add/commit failed
        """
        code, err = await self._git(path.parent, "add", path.name)
        if code != 0:
            raise PersistenceFailure(f"git add failed: {err}")
        # exit 0 means nothing staged for this file
        code, _ = await self._git(path.parent, "diff", "--cached", "--quiet", "--", path.name)
        if code == 0:
            return False
        code, err = await self._git(path.parent, "commit", "-m", message, "--", path.name)
        if code != 0:
            raise PersistenceFailure(f"git commit failed: {err}")
        return True

    async def load_card(self, slug: str) -> Optional[StateStore]:
        path = self.path_for(slug)
        if not path.exists():
            return None
        raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        data = json.loads(raw)
        fights, meta = split_snapshot(data if isinstance(data, dict) else {})
        return restore_store(fights, meta)


# ==================== BEST-EFFORT FRONT ====================

class DurableMirror:
    """
    Coalescing, retrying, never-raising persistence front

    Args:
        primary: SqlMirror or None
        fallback: FileMirror or None
        retries: Attempts against the primary per write
        backoff_seconds: First retry delay, doubled each attempt
    """

    def __init__(self, primary: Optional[SqlMirror] = None, fallback: Optional[FileMirror] = None,
                 retries: int = 3, backoff_seconds: float = 0.5):
        self.primary = primary
        self.fallback = fallback
        self.retries = max(1, retries)
        self.backoff_seconds = backoff_seconds
        self.primary_ready = False
        self.last_result: Dict[str, PersistResult] = {}
        self._pending: Dict[str, Tuple[Dict[str, Any], int]] = {}
        self._audit: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._writers: Dict[str, asyncio.Task] = {}

    async def start(self) -> bool:
        """Initialize the primary store; an unreachable store is logged, not fatal"""
        if self.primary is None:
            return False
        try:
            await self.primary.init()
            self.primary_ready = True
            logger.info(f"✅ Durable mirror ready ({self.primary.database_url})")
        except Exception as e:
            self.primary_ready = False
            logger.error(f"❌ Durable mirror unavailable: {type(e).__name__}: {e}")
        return self.primary_ready

    # ----- writes -----

    def schedule(self, slug: str, snapshot: Dict[str, Any], fight_seq: int,
                 audit: Optional[Tuple[str, str, Dict[str, Any]]] = None) -> None:
        """Queue the latest snapshot of a card for writing (fire-and-forget)"""
        self._pending[slug] = (snapshot, fight_seq)
        if audit is not None:
            action, actor, details = audit
            self._audit[slug].append({"action": action, "actor": actor, "details": details, "at": time.time()})
        writer = self._writers.get(slug)
        if writer is None or writer.done():
            self._writers[slug] = asyncio.get_running_loop().create_task(self._drain(slug))

    async def _drain(self, slug: str) -> None:
        while slug in self._pending:
            snapshot, fight_seq = self._pending.pop(slug)
            audit = self._audit.pop(slug, [])
            result = await self.persist(slug, snapshot, fight_seq, audit)
            self.last_result[slug] = result
            if audit and result.backend != "sql":
                # only the SQL store keeps the audit trail
                self._requeue_audit(slug, audit)
            if result.ok:
                logger.debug(f"💾 [{slug}] persisted via {result.backend} (attempts={result.attempts})")
            else:
                logger.error(f"❌ [{slug}] persistence failed: {result.error}")

    def _requeue_audit(self, slug: str, events: List[Dict[str, Any]]) -> None:
        """Put unwritten audit events back in front of newer ones, bounded"""
        backlog = list(events) + self._audit.get(slug, [])
        if len(backlog) > AUDIT_BACKLOG:
            dropped = len(backlog) - AUDIT_BACKLOG
            logger.warning(f"⚠️ [{slug}] Audit backlog full, dropped {dropped} oldest events")
            backlog = backlog[dropped:]
        self._audit[slug] = backlog
        logger.info(f"📝 [{slug}] {len(backlog)} audit events held for the next SQL write")

    async def persist(self, slug: str, snapshot: Dict[str, Any], fight_seq: int,
                      audit: List[Dict[str, Any]] = ()) -> PersistResult:
        """Write one snapshot: primary with retry/backoff, then the file fallback"""
        error = None
        attempts = 0
        if self.primary is not None:
            if not self.primary_ready:
                await self.start()
            if self.primary_ready:
                for attempt in range(1, self.retries + 1):
                    attempts = attempt
                    try:
                        await self.primary.save_card(slug, snapshot, fight_seq, audit)
                        return PersistResult(ok=True, backend="sql", attempts=attempt)
                    except Exception as e:
                        error = f"{type(e).__name__}: {e}"
                        logger.warning(f"⚠️ [{slug}] SQL write attempt {attempt}/{self.retries} failed: {error}")
                        if attempt < self.retries:
                            await asyncio.sleep(self.backoff_seconds * 2 ** (attempt - 1))

        if self.fallback is not None:
            try:
                await self.fallback.save_card(slug, snapshot, fight_seq, audit)
                return PersistResult(ok=True, backend="file", attempts=attempts, error=error)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"

        return PersistResult(ok=False, backend="none", attempts=attempts, error=error or "no mirror configured")

    async def save_entry(self, info: CardEntryInfo) -> PersistResult:
        if self.primary is None or not self.primary_ready:
            return PersistResult(ok=False, backend="none", error="primary store unavailable")
        try:
            await self.primary.save_entry(info)
            return PersistResult(ok=True, backend="sql", attempts=1)
        except Exception as e:
            logger.error(f"❌ Failed to persist card entry {info.slug}: {e}")
            return PersistResult(ok=False, backend="sql", attempts=1, error=f"{type(e).__name__}: {e}")

    async def flush(self) -> None:
        """Wait until every scheduled write has been attempted"""
        while True:
            writers = [w for w in self._writers.values() if not w.done()]
            if not writers:
                return
            await asyncio.gather(*writers, return_exceptions=True)

    # ----- reads -----

    async def load_card(self, slug: str) -> Optional[StateStore]:
        """Startup read path: primary first, file fallback when the primary is down or empty"""
        if self.primary is not None and self.primary_ready:
            try:
                store = await self.primary.load_card(slug)
                if store is not None:
                    return store
            except Exception as e:
                logger.error(f"❌ [{slug}] Failed to load from SQL mirror: {e}")
        if self.fallback is not None:
            try:
                return await self.fallback.load_card(slug)
            except Exception as e:
                logger.error(f"❌ [{slug}] Failed to load from file mirror: {e}")
        return None

    async def load_entries(self) -> List[CardEntryInfo]:
        if self.primary is None or not self.primary_ready:
            return []
        try:
            return await self.primary.load_entries()
        except Exception as e:
            logger.error(f"❌ Failed to load card entries: {e}")
            return []

    async def close(self) -> None:
        await self.flush()
        for slug, events in self._audit.items():
            if events:
                logger.warning(f"⚠️ [{slug}] {len(events)} audit events not written before shutdown")
        if self.primary is not None:
            await self.primary.dispose()


def build_mirror(settings) -> Optional[DurableMirror]:
    """Create the mirror described by MirrorSettings, or None when disabled"""
    if not settings.enabled:
        return None
    primary = SqlMirror(settings.database_url) if settings.database_url else None
    fallback = FileMirror(settings.file_dir, git_commit=settings.git_commit) if settings.file_dir else None
    return DurableMirror(primary, fallback, retries=settings.retries, backoff_seconds=settings.backoff_seconds)
