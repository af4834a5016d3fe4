# chaoscanvas/models.py
"""
Ledger records.

These are plain value objects returned by the ledger store. They are frozen:
mutation goes through the store so that every balance change is paired with
a transaction row. Wire shapes (camelCase, string prices) live in
``chaoscanvas.schemas``.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Tuple

_CENT = Decimal("0.01")


def to_price(value: Any) -> Decimal:
    """Coerce ``value`` to a Decimal price rounded half-up to 2 places."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def reprice(current: Decimal, multiplier: Decimal) -> Decimal:
    return to_price(Decimal(current) * Decimal(multiplier))


def floor_share(amount: int, share: Decimal) -> int:
    """floor(amount * share); the remainder stays with the platform."""
    return int((Decimal(amount) * Decimal(share)).to_integral_value(rounding=ROUND_FLOOR))


class TransactionKind(str, enum.Enum):
    PURCHASE = "purchase"
    BOOST = "boost"
    EARNED = "earned"
    INVESTMENT = "investment"
    PAYOUT = "payout"


class LayerType(str, enum.Enum):
    GLOBAL = "global"
    CONTINENT = "continent"
    COUNTRY = "country"
    CITY = "city"
    PERSONAL = "personal"


class ContentKind(str, enum.Enum):
    IMAGE = "image"
    TEXT = "text"
    VIDEO = "video"
    AUDIO = "audio"


@dataclass(frozen=True)
class User:
    id: str
    username: str
    chaos_coins: int
    daily_contribution_count: int = 0
    last_contribution_reset: Optional[datetime] = None
    is_anonymous: bool = True
    email: Optional[str] = None
    country_code: Optional[str] = None
    locale: str = "en"
    currency: str = "USD"
    # id of the anonymous identity this account absorbed, if any
    merged_from_anonymous: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class CanvasLayer:
    id: str
    layer_type: LayerType
    name: str
    zoom_level: int = 0
    region_code: Optional[str] = None
    seed_prompt: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Contribution:
    """
    A piece of content placed on a canvas layer.

    ``content_data`` is the validated descriptor minus its ``kind`` tag, which
    is kept in ``content_type``.
    """

    id: str
    user_id: str
    layer_id: str
    content_type: ContentKind
    content_data: Dict[str, Any]
    position_x: float
    position_y: float
    width: int
    height: int
    boost_count: int = 0
    view_count: int = 0
    market_price: Decimal = Decimal("10.00")
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Transaction:
    id: str
    user_id: str
    kind: TransactionKind
    amount: int
    description: str = ""
    contribution_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Investment:
    id: str
    user_id: str
    contribution_id: str
    amount: int
    purchase_price: Decimal
    current_value: Decimal
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ChaosBubble:
    """A private or shared pocket of the canvas owned by one user."""

    id: str
    owner_id: str
    name: str
    is_private: bool = True
    invited_user_ids: Tuple[str, ...] = ()
    theme_data: Optional[Dict[str, Any]] = None
    layer_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PurchaseReceipt:
    user_id: str
    package_id: str
    coins: int
    new_balance: int
    transaction: Optional[Transaction] = field(default=None, repr=False)


__all__ = [
    "TransactionKind",
    "LayerType",
    "ContentKind",
    "User",
    "CanvasLayer",
    "Contribution",
    "Transaction",
    "Investment",
    "ChaosBubble",
    "PurchaseReceipt",
    "to_price",
    "reprice",
    "floor_share",
]
