"""
Process-wide application state
Owned by the lifespan in fightcard.main and read by the API routers
"""
from typing import Optional

from fightcard.core.mirror import DurableMirror
from fightcard.core.registry import CardRegistry
from fightcard.models import Settings

# Loaded at startup
SETTINGS: Settings = Settings()

# Card registry (default card + provisioned cards)
REGISTRY: Optional[CardRegistry] = None

# Durable mirror, None when persistence is disabled
MIRROR: Optional[DurableMirror] = None
