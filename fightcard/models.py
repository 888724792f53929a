"""
Data models for the fight card server

Wire names are camelCase (aGym, infoVisible, eventImageSize, ...); Python
attributes stay snake_case through the alias generator.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model exchanged with admins and viewers"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==================== CARD STATE ====================

class Fight(WireModel):
    """One scheduled match"""
    id: int
    a: str
    b: str
    weight: str = ""
    klass: str = ""                 # division / class, free text
    a_gym: str = ""
    b_gym: str = ""
    winner: Optional[str] = None    # "a" | "b" | "draw"
    method: Optional[str] = None    # only meaningful while winner is set

    def content_key(self) -> tuple:
        return (
            self.a.strip(), self.b.strip(), self.weight.strip(),
            self.klass.strip(), self.a_gym.strip(), self.b_gym.strip(),
        )


class SocialChannel(WireModel):
    enabled: bool = False
    value: str = ""


class Social(WireModel):
    website: SocialChannel = Field(default_factory=SocialChannel)
    facebook: SocialChannel = Field(default_factory=SocialChannel)
    instagram: SocialChannel = Field(default_factory=SocialChannel)
    additional: SocialChannel = Field(default_factory=SocialChannel)


class CardState(WireModel):
    """
    Complete broadcastable snapshot of one card

    The same envelope is pushed to viewers, served on /state and written to
    the durable mirror.
    """
    current: int = 0
    fights: List[Fight] = []
    standby: bool = True
    info_visible: bool = True
    fights_visible: bool = True
    event_name: str = ""
    event_font: str = "bebas"
    event_color: str = ""
    event_size: int = 28
    event_image: str = ""
    event_image_size: int = 120
    event_info: str = ""
    event_bg_color: str = ""
    event_footnote_image: str = ""
    social: Social = Field(default_factory=Social)

    def snapshot(self) -> Dict[str, Any]:
        """Serialize to the wire envelope (absent winner/method are omitted)"""
        return self.model_dump(by_alias=True, exclude_none=True)


# ==================== COMMANDS ====================

class CommandBase(WireModel):
    """Fields shared by every admin command"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    rid: Optional[Union[str, int]] = None   # idempotency key

    @property
    def request_id(self) -> Optional[str]:
        if self.rid is None or self.rid == "":
            return None
        return str(self.rid)


class IndexedCommand(CommandBase):
    index: int


class SetCurrent(IndexedCommand):
    type: Literal["setCurrent"] = "setCurrent"


class SetWinner(IndexedCommand):
    type: Literal["setWinner"] = "setWinner"
    side: Optional[str] = None


class ClearWinner(IndexedCommand):
    type: Literal["clearWinner"] = "clearWinner"


class SetWinMethod(IndexedCommand):
    type: Literal["setWinMethod"] = "setWinMethod"
    method: Optional[str] = None


class FightData(WireModel):
    """Fight fields supplied by the admin; the id is assigned server-side"""
    a: Optional[str] = None
    b: Optional[str] = None
    weight: Optional[str] = None
    klass: Optional[str] = None
    a_gym: Optional[str] = None
    b_gym: Optional[str] = None


class CreateFight(CommandBase):
    type: Literal["createFight"] = "createFight"
    data: FightData = Field(default_factory=FightData)


class DeleteFight(IndexedCommand):
    type: Literal["deleteFight"] = "deleteFight"


class ReorderFights(CommandBase):
    type: Literal["reorderFights"] = "reorderFights"
    order: List[int] = []


class SetStandby(CommandBase):
    type: Literal["setStandby"] = "setStandby"
    on: bool


class SetInfoVisible(CommandBase):
    type: Literal["setInfoVisible"] = "setInfoVisible"
    on: bool


class SetFightsVisible(CommandBase):
    type: Literal["setFightsVisible"] = "setFightsVisible"
    on: bool


class ClearAllFights(CommandBase):
    type: Literal["clearAllFights"] = "clearAllFights"


class SetEventMeta(CommandBase):
    """Partial update: only fields present in the payload are applied"""
    type: Literal["setEventMeta"] = "setEventMeta"
    name: Optional[str] = None
    font: Optional[str] = None
    color: Optional[str] = None
    size: Optional[float] = None
    image: Optional[Union[str, Dict[str, Any]]] = None
    image_size: Optional[float] = None
    info: Optional[str] = None
    bg_color: Optional[str] = None
    footnote_image: Optional[Union[str, Dict[str, Any]]] = None


class SetSocial(CommandBase):
    type: Literal["setSocial"] = "setSocial"
    social: Optional[Dict[str, Any]] = None


Command = Annotated[
    Union[
        SetCurrent, SetWinner, ClearWinner, SetWinMethod, CreateFight, DeleteFight,
        ReorderFights, SetStandby, SetInfoVisible, SetFightsVisible, ClearAllFights,
        SetEventMeta, SetSocial,
    ],
    Field(discriminator="type"),
]


class CommandResult(WireModel):
    """What the caller of a command gets back"""
    ok: bool = True
    duplicate: bool = False
    broadcast_id: Optional[int] = None
    fight: Optional[Fight] = None


# ==================== REGISTRY ====================

class CardOwner(WireModel):
    """Club / organizer metadata supplied at provisioning time"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    club: str = ""
    contact: str = ""
    email: str = ""
    event_name: str = ""


class CardRequest(CardOwner):
    """Provisioning request body"""
    friendly_slug: bool = False
    ttl_hours: Optional[int] = None     # None = settings.default_ttl_hours


class CardEntryInfo(WireModel):
    slug: str
    owner: CardOwner = Field(default_factory=CardOwner)
    created_at: float
    expires_at: Optional[float] = None   # None = never expires


# ==================== SETTINGS ====================

class MirrorSettings(BaseModel):
    """Durable mirror configuration"""
    enabled: bool = True
    database_url: str = "sqlite+aiosqlite:///data/fightcard.db"
    retries: int = 3
    backoff_seconds: float = 0.5
    file_dir: Optional[str] = "data/cards"   # fallback mirror, None disables it
    git_commit: bool = False


class Settings(BaseModel):
    """Server configuration (config/settings.yaml + environment overrides)"""
    admin_token: str = "letmein"
    public_base_url: str = "http://localhost:8000"
    default_slug: str = "default"
    start_empty: bool = False
    default_ttl_hours: int = 48
    idempotency_capacity: int = 200
    send_timeout: float = 5.0
    outbox_size: int = 64
    mirror: MirrorSettings = Field(default_factory=MirrorSettings)
