"""
FastAPI main application
Fight Card Live Server - admin console to many viewers, with acks and persistence

Routers in fightcard/api/:
- health.py: Health check and broadcast diagnostics
- viewer.py: Pull-based state snapshots
- admin.py: Command transport over HTTP, audit log
- live.py: WebSocket push channel (state, acks, admin commands)
- cards.py: Card provisioning, whoami

All routers access shared state via the fightcard.state module.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fightcard import state
from fightcard.config import load_config
from fightcard.core.mirror import build_mirror
from fightcard.core.registry import CardRegistry
from fightcard.models import Settings

from fightcard.api import admin, cards, health, live, viewer


# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def _restore_cards(registry: CardRegistry, mirror, settings: Settings) -> None:
    """Seed the default card and any unexpired provisioned cards from the mirror"""
    default_store = await mirror.load_card(settings.default_slug) if mirror else None
    default = registry.ensure_default(default_store)
    if default_store is not None:
        logger.info(f"✅ Restored default card with {len(default_store.fights)} fights")

    if mirror is not None:
        now = registry.clock()
        for info in await mirror.load_entries():
            if info.slug == settings.default_slug or info.slug in registry.entries:
                continue
            if info.expires_at is not None and now > info.expires_at:
                continue
            registry.register(info, await mirror.load_card(info.slug))
            logger.info(f"✅ Restored card {info.slug}")

    # One-time reconciliation: fresh start with an empty fight list
    if settings.start_empty and default.store.fights:
        logger.info(f"🧹 start_empty: clearing {len(default.store.fights)} restored fights")
        await default.processor.reset_fights()


def create_app(settings: Settings = None) -> FastAPI:
    """
    Build the application

    Args:
        settings: Explicit settings (tests); loaded from YAML/env at startup when None
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        current = settings or load_config()
        state.SETTINGS = current

        mirror = build_mirror(current.mirror)
        if mirror is not None:
            await mirror.start()
        registry = CardRegistry(current, mirror)
        await _restore_cards(registry, mirror, current)

        state.MIRROR = mirror
        state.REGISTRY = registry
        logger.info(f"✅ Server started with {len(registry.entries)} card(s)")

        yield

        # Shutdown
        for entry in registry.entries.values():
            await entry.channel.close_all()
        if mirror is not None:
            await mirror.close()
        state.REGISTRY = None
        state.MIRROR = None
        logger.info("🛑 Server shutting down")

    app = FastAPI(
        title="Fight Card Live Server",
        description="Live fight card broadcast with acknowledgements and durable state",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS middleware (viewers may be served from another origin)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== INCLUDE ROUTERS ====================

    # Health check (GET /, /health)
    app.include_router(health.router)

    # State snapshots (GET /state)
    app.include_router(viewer.router)

    # Admin commands (POST /admin/action)
    app.include_router(admin.router)

    # Provisioning (POST /cards, GET /whoami)
    app.include_router(cards.router)

    # Push channel (WS /ws)
    app.include_router(live.router)

    return app


app = create_app()


# ==================== RUN SERVER ====================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
