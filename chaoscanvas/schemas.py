# chaoscanvas/schemas.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import (
    CanvasLayer,
    ChaosBubble,
    ContentKind,
    Contribution,
    Investment,
    LayerType,
    Transaction,
    User,
)


# =============================================================================
# Content descriptors (tagged union keyed by content kind)
# =============================================================================


class ImageContent(BaseModel):
    kind: Literal["image"] = "image"
    url: str = Field(..., min_length=1, max_length=2048, description="Image location")
    prompt: Optional[str] = Field(None, max_length=1000, description="Generation prompt, if AI-made")
    style: Optional[str] = Field(None, max_length=64)

    model_config = ConfigDict(extra="ignore")


class TextContent(BaseModel):
    kind: Literal["text"] = "text"
    text: str = Field(..., min_length=1, max_length=2000)
    style: Optional[str] = Field(None, max_length=64)

    model_config = ConfigDict(extra="ignore")


class VideoContent(BaseModel):
    kind: Literal["video"] = "video"
    url: str = Field(..., min_length=1, max_length=2048)
    prompt: Optional[str] = Field(None, max_length=1000)

    model_config = ConfigDict(extra="ignore")


class AudioContent(BaseModel):
    kind: Literal["audio"] = "audio"
    url: str = Field(..., min_length=1, max_length=2048)

    model_config = ConfigDict(extra="ignore")


ContentDescriptor = Annotated[
    Union[ImageContent, TextContent, VideoContent, AudioContent],
    Field(discriminator="kind"),
]

_CONTENT = TypeAdapter(ContentDescriptor)


def parse_content(content_type: Any, content_data: Any):
    """
    Validate ``content_data`` against the variant selected by ``content_type``.

    Raises our ValidationError (not pydantic's) so callers outside the HTTP
    layer see the same taxonomy.
    """
    if not isinstance(content_data, Mapping):
        raise ValidationError("contentData must be an object")
    kind = content_type.value if isinstance(content_type, ContentKind) else content_type
    try:
        return _CONTENT.validate_python({**content_data, "kind": kind})
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid {kind} content: {exc.errors()[0].get('msg', 'invalid')}") from exc


def content_payload(descriptor: Any) -> Dict[str, Any]:
    """Stored form of a descriptor: its fields without the kind tag."""
    return descriptor.model_dump(exclude={"kind"}, exclude_none=True)


# =============================================================================
# Requests
# =============================================================================


class ContributionRequest(BaseModel):
    user_id: str = Field(..., alias="userId", min_length=1, max_length=64)
    layer_id: str = Field(..., alias="layerId", min_length=1, max_length=64)
    content_type: ContentKind = Field(..., alias="contentType")
    content_data: Dict[str, Any] = Field(..., alias="contentData")
    position_x: float = Field(..., alias="positionX", allow_inf_nan=False)
    position_y: float = Field(..., alias="positionY", allow_inf_nan=False)
    width: int = Field(..., gt=0, le=10_000)
    height: int = Field(..., gt=0, le=10_000)
    ip_address: Optional[str] = Field(None, alias="ipAddress", max_length=64)

    @model_validator(mode="after")
    def _normalize_content(self) -> "ContributionRequest":
        try:
            descriptor = parse_content(self.content_type, self.content_data)
        except ValidationError as exc:
            raise ValueError(exc.message) from exc
        self.content_data = content_payload(descriptor)
        return self

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> "ContributionRequest":
        try:
            return cls.model_validate(dict(payload))
        except PydanticValidationError as exc:
            raise ValidationError("invalid contribution payload", errors=_brief(exc)) from exc

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class BoostRequest(BaseModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    amount: int = Field(..., gt=0, le=1_000_000_000)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class InvestmentRequest(BaseModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    contribution_id: str = Field(..., alias="contributionId", min_length=1)
    amount: int = Field(..., gt=0, le=1_000_000_000)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CoinPurchaseRequest(BaseModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    package_id: str = Field(..., alias="packageId", min_length=1, max_length=32)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class AnonymousUserRequest(BaseModel):
    locale: str = Field("en", max_length=16)
    currency: str = Field("USD", max_length=8)
    country_code: Optional[str] = Field(None, alias="countryCode", max_length=8)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class UserCreateRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: Optional[str] = Field(None, max_length=254)
    locale: str = Field("en", max_length=16)
    currency: str = Field("USD", max_length=8)
    country_code: Optional[str] = Field(None, alias="countryCode", max_length=8)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MergeUsersRequest(BaseModel):
    anonymous_user_id: str = Field(..., alias="anonymousUserId", min_length=1)
    registered_user_id: str = Field(..., alias="registeredUserId", min_length=1)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CanvasLayerRequest(BaseModel):
    layer_type: LayerType = Field(..., alias="layerType")
    name: str = Field(..., min_length=1, max_length=100)
    zoom_level: int = Field(0, alias="zoomLevel", ge=0, le=4)
    region_code: Optional[str] = Field(None, alias="regionCode", max_length=16)
    seed_prompt: Optional[str] = Field(None, alias="seedPrompt", max_length=1000)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GenerateRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=500)
    style: str = Field("meme", max_length=32)
    user_id: str = Field(..., alias="userId", min_length=1)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CheckoutRequest(BaseModel):
    price_id: str = Field(..., alias="priceId", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class BubbleCreateRequest(BaseModel):
    owner_id: str = Field(..., alias="ownerId", min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    is_private: bool = Field(True, alias="isPrivate")
    invited_user_ids: List[str] = Field(default_factory=list, alias="invitedUserIds", max_length=100)
    theme_data: Optional[Dict[str, Any]] = Field(None, alias="themeData")
    layer_id: Optional[str] = Field(None, alias="layerId", max_length=64)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Responses
# =============================================================================


class _Out(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserOut(_Out):
    id: str
    username: str
    email: Optional[str] = None
    is_anonymous: bool = Field(..., alias="isAnonymous")
    country_code: Optional[str] = Field(None, alias="countryCode")
    locale: str
    currency: str
    chaos_coins: int = Field(..., alias="chaosCoins")
    daily_contribution_count: int = Field(..., alias="dailyContributionCount")
    last_contribution_reset: Optional[datetime] = Field(None, alias="lastContributionReset")
    merged_from_anonymous: Optional[str] = Field(None, alias="mergedFromAnonymous")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @classmethod
    def from_record(cls, u: User) -> "UserOut":
        return cls(
            id=u.id,
            username=u.username,
            email=u.email,
            is_anonymous=u.is_anonymous,
            country_code=u.country_code,
            locale=u.locale,
            currency=u.currency,
            chaos_coins=u.chaos_coins,
            daily_contribution_count=u.daily_contribution_count,
            last_contribution_reset=u.last_contribution_reset,
            merged_from_anonymous=u.merged_from_anonymous,
            created_at=u.created_at,
        )


class CanvasLayerOut(_Out):
    id: str
    layer_type: LayerType = Field(..., alias="layerType")
    region_code: Optional[str] = Field(None, alias="regionCode")
    name: str
    zoom_level: int = Field(..., alias="zoomLevel")
    seed_prompt: Optional[str] = Field(None, alias="seedPrompt")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @classmethod
    def from_record(cls, la: CanvasLayer) -> "CanvasLayerOut":
        return cls(
            id=la.id,
            layer_type=la.layer_type,
            region_code=la.region_code,
            name=la.name,
            zoom_level=la.zoom_level,
            seed_prompt=la.seed_prompt,
            created_at=la.created_at,
        )


class ContributionOut(_Out):
    id: str
    user_id: str = Field(..., alias="userId")
    layer_id: str = Field(..., alias="layerId")
    content_type: ContentKind = Field(..., alias="contentType")
    content_data: Dict[str, Any] = Field(..., alias="contentData")
    position_x: float = Field(..., alias="positionX")
    position_y: float = Field(..., alias="positionY")
    width: int
    height: int
    boost_count: int = Field(..., alias="boostCount")
    view_count: int = Field(..., alias="viewCount")
    market_price: Decimal = Field(..., alias="marketPrice")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @classmethod
    def from_record(cls, c: Contribution) -> "ContributionOut":
        return cls(
            id=c.id,
            user_id=c.user_id,
            layer_id=c.layer_id,
            content_type=c.content_type,
            content_data=c.content_data,
            position_x=c.position_x,
            position_y=c.position_y,
            width=c.width,
            height=c.height,
            boost_count=c.boost_count,
            view_count=c.view_count,
            market_price=c.market_price,
            created_at=c.created_at,
        )


class TransactionOut(_Out):
    id: str
    user_id: str = Field(..., alias="userId")
    type: str
    amount: int
    contribution_id: Optional[str] = Field(None, alias="contributionId")
    description: str
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @classmethod
    def from_record(cls, t: Transaction) -> "TransactionOut":
        return cls(
            id=t.id,
            user_id=t.user_id,
            type=t.kind.value,
            amount=t.amount,
            contribution_id=t.contribution_id,
            description=t.description,
            created_at=t.created_at,
        )


class InvestmentOut(_Out):
    id: str
    user_id: str = Field(..., alias="userId")
    contribution_id: str = Field(..., alias="contributionId")
    amount: int
    purchase_price: Decimal = Field(..., alias="purchasePrice")
    current_value: Decimal = Field(..., alias="currentValue")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @classmethod
    def from_record(cls, i: Investment) -> "InvestmentOut":
        return cls(
            id=i.id,
            user_id=i.user_id,
            contribution_id=i.contribution_id,
            amount=i.amount,
            purchase_price=i.purchase_price,
            current_value=i.current_value,
            created_at=i.created_at,
        )


class BubbleOut(_Out):
    id: str
    owner_id: str = Field(..., alias="ownerId")
    name: str
    is_private: bool = Field(..., alias="isPrivate")
    invited_user_ids: List[str] = Field(..., alias="invitedUserIds")
    theme_data: Optional[Dict[str, Any]] = Field(None, alias="themeData")
    layer_id: Optional[str] = Field(None, alias="layerId")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @classmethod
    def from_record(cls, b: ChaosBubble) -> "BubbleOut":
        return cls(
            id=b.id,
            owner_id=b.owner_id,
            name=b.name,
            is_private=b.is_private,
            invited_user_ids=list(b.invited_user_ids),
            theme_data=b.theme_data,
            layer_id=b.layer_id,
            created_at=b.created_at,
        )


class CoinPurchaseResponse(_Out):
    success: bool = True
    new_balance: int = Field(..., alias="newBalance")


class ViewResponse(_Out):
    view_count: int = Field(..., alias="viewCount")


class GenerateResponse(_Out):
    url: str
    prompt: str
    style: str
    source: str


class CheckoutResponse(_Out):
    session_id: str = Field(..., alias="sessionId")
    session_url: str = Field(..., alias="sessionUrl")


def contribution_wire(c: Contribution) -> Dict[str, Any]:
    """JSON-ready camelCase dict, as pushed over the real-time channel."""
    return ContributionOut.from_record(c).model_dump(mode="json", by_alias=True)


def _brief(exc: PydanticValidationError) -> List[str]:
    out: List[str] = []
    for err in exc.errors()[:10]:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{loc}: {err.get('msg', 'invalid')}")
    return out
