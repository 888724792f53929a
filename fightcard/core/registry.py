"""
Card registry: slug -> independent card (state, processor, broadcast channel)
"""
import logging
import re
import secrets
import string
import time
import unicodedata
from typing import Dict, Optional

from fightcard.core.broadcast import BroadcastChannel
from fightcard.core.commands import CommandProcessor
from fightcard.core.errors import CardGone, CardNotFound
from fightcard.core.idempotency import IdempotencyGuard
from fightcard.core.store import StateStore
from fightcard.models import CardEntryInfo, CardOwner, Settings


logger = logging.getLogger(__name__)

SLUG_ALPHABET = string.ascii_letters + string.digits   # 62 symbols
SLUG_MAX_LEN = 40
RANDOM_SLUG_LEN = 8
SUFFIX_LEN = 4
SUFFIX_ATTEMPTS = 5
TTL_RANGE_HOURS = (24, 72)

RESERVED_SLUGS = frozenset({
    "admin", "register", "start", "state", "health", "whoami", "cards", "c", "ws",
    # static assets and pages
    "static", "favicon", "index", "viewer", "assets", "default",
})


def random_slug(length: int = RANDOM_SLUG_LEN) -> str:
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))


def slugify(name: str) -> str:
    """
    Derive a URL-safe slug from a human-readable name

    Example:
        >>> slugify("Södra Muay Thai Gala!")
        'sodra-muay-thai-gala'
    """
    decomposed = unicodedata.normalize("NFKD", name or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    slug = re.sub(r"[^a-z0-9]+", "-", stripped.lower()).strip("-")
    return slug[:SLUG_MAX_LEN].strip("-")


def clamp_ttl(ttl_hours) -> int:
    low, high = TTL_RANGE_HOURS
    try:
        ttl = int(ttl_hours)
    except (TypeError, ValueError):
        ttl = low
    return max(low, min(high, ttl))


class CardEntry:
    """One registered card with its processing pipeline"""

    def __init__(self, info: CardEntryInfo, processor: CommandProcessor, channel: BroadcastChannel):
        self.info = info
        self.processor = processor
        self.channel = channel

    @property
    def slug(self) -> str:
        return self.info.slug

    @property
    def store(self) -> StateStore:
        return self.processor.store

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.info.expires_at is None:
            return False
        return (now if now is not None else time.time()) > self.info.expires_at


class CardRegistry:
    """
    In-process registry of cards

    Expiry is lazy: expired entries stay registered and are reported as gone
    on access.
    """

    def __init__(self, settings: Settings, mirror=None, clock=time.time):
        self.settings = settings
        self.mirror = mirror
        self.clock = clock
        self.entries: Dict[str, CardEntry] = {}

    def register(self, info: CardEntryInfo, store: Optional[StateStore] = None) -> CardEntry:
        """Wire up store, channel and processor for a card and register it"""
        store = store or StateStore()
        channel = BroadcastChannel(
            info.slug,
            store.snapshot,
            send_timeout=self.settings.send_timeout,
            outbox_size=self.settings.outbox_size,
        )
        processor = CommandProcessor(
            info.slug,
            store,
            channel,
            mirror=self.mirror,
            guard=IdempotencyGuard(self.settings.idempotency_capacity),
        )
        channel.on_admins_gone = processor.enter_standby
        entry = CardEntry(info, processor, channel)
        self.entries[info.slug] = entry
        return entry

    def ensure_default(self, store: Optional[StateStore] = None) -> CardEntry:
        slug = self.settings.default_slug
        if slug in self.entries:
            return self.entries[slug]
        info = CardEntryInfo(slug=slug, created_at=self.clock(), expires_at=None)
        return self.register(info, store)

    def _unique_slug(self, friendly_name: Optional[str]) -> str:
        base = slugify(friendly_name) if friendly_name else ""
        if not base or base in RESERVED_SLUGS:
            base = random_slug()
        if base not in self.entries:
            return base
        for _ in range(SUFFIX_ATTEMPTS):
            candidate = f"{base}-{random_slug(SUFFIX_LEN)}"
            if candidate not in self.entries:
                return candidate
        while True:
            candidate = random_slug()
            if candidate not in self.entries:
                return candidate

    def create_card(self, owner: CardOwner, friendly_name: Optional[str] = None,
                    ttl_hours: int = 48) -> CardEntry:
        """
        Provision a new ephemeral card

        Args:
            owner: Club / organizer metadata
            friendly_name: Optional human-readable source for the slug
            ttl_hours: Lifetime, clamped to [24, 72]

        Returns:
            The registered CardEntry
        """
        slug = self._unique_slug(friendly_name)
        now = self.clock()
        ttl = clamp_ttl(ttl_hours)
        info = CardEntryInfo(slug=slug, owner=owner, created_at=now, expires_at=now + ttl * 3600)
        entry = self.register(info)
        logger.info(f"🆕 Card {slug} created for {owner.club or 'unknown club'} (ttl {ttl}h)")
        return entry

    def get(self, slug: str) -> CardEntry:
        """
        Look up a live card

        Raises:
            CardNotFound: Unknown slug
            CardGone: Slug exists but expired
        """
        entry = self.entries.get(slug)
        if entry is None:
            raise CardNotFound(f"Card {slug!r} not found")
        if entry.is_expired(self.clock()):
            raise CardGone(f"Card {slug!r} has expired")
        return entry

    def is_expired(self, slug: str) -> bool:
        entry = self.entries.get(slug)
        if entry is None:
            raise CardNotFound(f"Card {slug!r} not found")
        return entry.is_expired(self.clock())

    def default(self) -> CardEntry:
        return self.get(self.settings.default_slug)
