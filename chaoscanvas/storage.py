# chaoscanvas/storage.py
"""
Ledger store backends for the canvas economy:

  - LedgerStore:
      Sole authority for coin balances, contribution boost counters and
      market prices, and sole writer of the append-only transaction log.
      Also owns the plain records the economy hangs off (users, canvas
      layers, contributions, investments).

Design constraints:

  - Authoritative reads:
      No caching in front of balances; every read goes to the backend.

  - Synchronous persistence:
      A mutation is durable (or, for the in-memory backend, visible to every
      thread) before the call returns. There is no write-behind.

  - Atomic units:
      ``transaction()`` opens one unit of work. Store calls made inside it
      join the unit; it commits when the outermost block exits cleanly and
      rolls back every write otherwise. Calls made outside a unit behave as
      single-statement units of their own.

  - Non-negative balances:
      ``set_balance`` refuses negative values and ``debit`` is a conditional
      decrement, so two concurrent debits can never overdraw an account.

  - Append-only log:
      Transaction rows are never updated or deleted (the SQLite backend
      enforces this with triggers).
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .errors import Fatal, InsufficientFunds, InvalidState, NotFound, ValidationError
from .models import (
    CanvasLayer,
    ChaosBubble,
    ContentKind,
    Contribution,
    Investment,
    LayerType,
    Transaction,
    TransactionKind,
    User,
    to_price,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# ------------------------------
# Common helpers
# ------------------------------


def _new_id() -> str:
    return str(uuid.uuid4())


def _require_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


def _require_positive(name: str, value: Any) -> int:
    v = _require_int(name, value)
    if v <= 0:
        raise ValidationError(f"{name} must be > 0")
    return v


def _checked_balance(new_balance: Any) -> int:
    v = _require_int("balance", new_balance)
    if v < 0:
        raise InvalidState("balance cannot be negative", balance=v)
    return v


def _checked_price(new_price: Any) -> Decimal:
    try:
        price = to_price(new_price)
    except (ArithmeticError, TypeError, ValueError) as exc:
        raise ValidationError(f"invalid market price: {new_price!r}") from exc
    if price <= 0:
        raise ValidationError("market price must be > 0")
    return price


def _username_for_anonymous(now: datetime, taken: Callable[[str], bool]) -> str:
    name = f"guest_{int(now.timestamp() * 1000)}"
    while taken(name):
        # same-millisecond signups
        name = f"guest_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"
    return name


# ------------------------------
# Abstract interface
# ------------------------------

class LedgerStore(ABC):
    """
    Abstract ledger store.

    Implementations must make every public method safe to call concurrently
    from request threads, and must honour ``transaction()`` nesting.
    """

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or datetime.now

    # ---- units of work ------------------------------------------------- #

    @abstractmethod
    def transaction(self) -> Any:
        """
        Context manager for one atomic unit of work.

        Nested use joins the outer unit. Any exception escaping the outermost
        block rolls back every write made inside it.
        """

    # ---- users --------------------------------------------------------- #

    @abstractmethod
    def create_user(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        is_anonymous: bool = True,
        country_code: Optional[str] = None,
        locale: str = "en",
        currency: str = "USD",
        starting_coins: int = 100,
    ) -> User:
        """Create a user; anonymous users get a generated ``guest_*`` name."""

    @abstractmethod
    def get_user(self, user_id: str) -> User:
        """Return the user or raise NotFound."""

    @abstractmethod
    def merge_users(self, anonymous_id: str, registered_id: str) -> User:
        """
        Link an anonymous identity into a registered account.

        Contributions authored by the anonymous user are reassigned to the
        registered one. Balances are not moved.
        """

    @abstractmethod
    def update_contribution_counter(
        self,
        user_id: str,
        count: int,
        reset_at: Optional[datetime] = None,
    ) -> User:
        """Persist the daily contribution counter (and reset stamp, if given)."""

    # ---- balances ------------------------------------------------------ #

    @abstractmethod
    def get_balance(self, user_id: str) -> int:
        ...

    @abstractmethod
    def set_balance(self, user_id: str, new_balance: int) -> None:
        """Overwrite a balance; negative values raise InvalidState."""

    @abstractmethod
    def debit(self, user_id: str, amount: int) -> int:
        """
        Atomically decrement a balance if it covers ``amount``.

        Returns the new balance. Raises InsufficientFunds (and writes
        nothing) when the balance is too small.
        """

    @abstractmethod
    def credit(self, user_id: str, amount: int) -> int:
        """Atomically increment a balance; returns the new balance."""

    # ---- transaction log ----------------------------------------------- #

    @abstractmethod
    def record_transaction(
        self,
        user_id: str,
        kind: TransactionKind,
        amount: int,
        *,
        contribution_id: Optional[str] = None,
        description: str = "",
    ) -> Transaction:
        """Append an immutable transaction row."""

    @abstractmethod
    def list_transactions(self, user_id: str, limit: int = 50) -> List[Transaction]:
        """Most recent first."""

    # ---- canvas layers ------------------------------------------------- #

    @abstractmethod
    def create_layer(
        self,
        *,
        layer_type: LayerType,
        name: str,
        zoom_level: int = 0,
        region_code: Optional[str] = None,
        seed_prompt: Optional[str] = None,
    ) -> CanvasLayer:
        ...

    @abstractmethod
    def get_layer(self, layer_id: str) -> CanvasLayer:
        ...

    @abstractmethod
    def list_layers(
        self,
        *,
        layer_type: Optional[LayerType] = None,
        region_code: Optional[str] = None,
    ) -> List[CanvasLayer]:
        ...

    # ---- contributions ------------------------------------------------- #

    @abstractmethod
    def insert_contribution(
        self,
        *,
        user_id: str,
        layer_id: str,
        content_type: ContentKind,
        content_data: Dict[str, Any],
        position_x: float,
        position_y: float,
        width: int,
        height: int,
        market_price: Decimal,
    ) -> Contribution:
        """Insert with boost_count=0 and view_count=0."""

    @abstractmethod
    def get_contribution(self, contribution_id: str) -> Contribution:
        ...

    @abstractmethod
    def list_contributions_by_layer(self, layer_id: str) -> List[Contribution]:
        ...

    @abstractmethod
    def list_contributions_by_user(self, user_id: str) -> List[Contribution]:
        ...

    @abstractmethod
    def increment_boost_count(self, contribution_id: str) -> int:
        """Atomic +1; returns the new count."""

    @abstractmethod
    def set_market_price(self, contribution_id: str, new_price: Decimal) -> None:
        """``new_price`` must be > 0."""

    @abstractmethod
    def increment_view_count(self, contribution_id: str) -> int:
        ...

    # ---- investments --------------------------------------------------- #

    @abstractmethod
    def insert_investment(
        self,
        *,
        user_id: str,
        contribution_id: str,
        amount: int,
        purchase_price: Decimal,
    ) -> Investment:
        """``current_value`` starts at the purchase price."""

    @abstractmethod
    def list_investments_by_user(self, user_id: str) -> List[Investment]:
        ...

    @abstractmethod
    def list_investments_by_contribution(self, contribution_id: str) -> List[Investment]:
        """Newest first; an unknown contribution yields an empty list."""

    # ---- chaos bubbles ------------------------------------------------- #

    @abstractmethod
    def create_bubble(
        self,
        *,
        owner_id: str,
        name: str,
        is_private: bool = True,
        invited_user_ids: Sequence[str] = (),
        theme_data: Optional[Dict[str, Any]] = None,
        layer_id: Optional[str] = None,
    ) -> ChaosBubble:
        """Raises NotFound when the owner or the (optional) layer is unknown."""

    @abstractmethod
    def get_bubble(self, bubble_id: str) -> ChaosBubble:
        ...

    @abstractmethod
    def list_bubbles_by_owner(self, owner_id: str) -> List[ChaosBubble]:
        ...

    def close(self) -> None:
        """Release backend resources (no-op by default)."""


# ------------------------------
# In-memory implementation
# ------------------------------

class InMemoryLedgerStore(LedgerStore):
    """
    Thread-safe in-memory ledger store.

    Records are frozen dataclasses, so a unit of work snapshots the record
    maps with shallow copies and restores them on failure. All access is
    serialised behind one re-entrant lock; a thread holding an open unit
    keeps other writers out until it finishes.

    Intended for tests and local development.
    """

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        super().__init__(clock=clock)
        self._g = threading.RLock()
        self._depth = 0
        self._users: Dict[str, User] = {}
        self._layers: Dict[str, CanvasLayer] = {}
        self._contributions: Dict[str, Contribution] = {}
        self._transactions: List[Transaction] = []
        self._investments: List[Investment] = []
        self._bubbles: Dict[str, ChaosBubble] = {}

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "users": dict(self._users),
            "layers": dict(self._layers),
            "contributions": dict(self._contributions),
            "transactions": list(self._transactions),
            "investments": list(self._investments),
            "bubbles": dict(self._bubbles),
        }

    def _restore(self, snap: Dict[str, Any]) -> None:
        self._users = snap["users"]
        self._layers = snap["layers"]
        self._contributions = snap["contributions"]
        self._transactions = snap["transactions"]
        self._investments = snap["investments"]
        self._bubbles = snap["bubbles"]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._g:
            outer = self._depth == 0
            snap = self._snapshot() if outer else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if snap is not None:
                    self._restore(snap)
                raise
            finally:
                self._depth -= 1

    # ---- lookups (caller holds the lock) ------------------------------- #

    def _user(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFound(f"user {user_id} not found")
        return user

    def _contribution(self, contribution_id: str) -> Contribution:
        c = self._contributions.get(contribution_id)
        if c is None:
            raise NotFound(f"contribution {contribution_id} not found")
        return c

    # ---- users --------------------------------------------------------- #

    def create_user(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        is_anonymous: bool = True,
        country_code: Optional[str] = None,
        locale: str = "en",
        currency: str = "USD",
        starting_coins: int = 100,
    ) -> User:
        coins = _checked_balance(starting_coins)
        with self.transaction():
            now = self._clock()
            name = username or _username_for_anonymous(now, lambda n: self._find_by_name(n) is not None)
            if self._find_by_name(name) is not None:
                raise ValidationError(f"username {name!r} is taken")
            user = User(
                id=_new_id(),
                username=name,
                chaos_coins=coins,
                daily_contribution_count=0,
                last_contribution_reset=now,
                is_anonymous=is_anonymous,
                email=email,
                country_code=country_code,
                locale=locale,
                currency=currency,
                created_at=now,
            )
            self._users[user.id] = user
            return user

    def _find_by_name(self, username: str) -> Optional[User]:
        for user in self._users.values():
            if user.username == username:
                return user
        return None

    def get_user(self, user_id: str) -> User:
        with self._g:
            return self._user(user_id)

    def merge_users(self, anonymous_id: str, registered_id: str) -> User:
        with self.transaction():
            self._user(anonymous_id)
            registered = self._user(registered_id)
            for cid, c in list(self._contributions.items()):
                if c.user_id == anonymous_id:
                    self._contributions[cid] = replace(c, user_id=registered_id)
            merged = replace(registered, merged_from_anonymous=anonymous_id)
            self._users[registered_id] = merged
            return merged

    def update_contribution_counter(
        self,
        user_id: str,
        count: int,
        reset_at: Optional[datetime] = None,
    ) -> User:
        count = _require_int("count", count)
        if count < 0:
            raise InvalidState("contribution counter cannot be negative")
        with self.transaction():
            user = self._user(user_id)
            updated = replace(
                user,
                daily_contribution_count=count,
                last_contribution_reset=reset_at or user.last_contribution_reset,
            )
            self._users[user_id] = updated
            return updated

    # ---- balances ------------------------------------------------------ #

    def get_balance(self, user_id: str) -> int:
        with self._g:
            return self._user(user_id).chaos_coins

    def set_balance(self, user_id: str, new_balance: int) -> None:
        value = _checked_balance(new_balance)
        with self.transaction():
            user = self._user(user_id)
            self._users[user_id] = replace(user, chaos_coins=value)

    def debit(self, user_id: str, amount: int) -> int:
        amount = _require_positive("amount", amount)
        with self.transaction():
            user = self._user(user_id)
            if user.chaos_coins < amount:
                raise InsufficientFunds(
                    "Insufficient ChaosCoins",
                    balance=user.chaos_coins,
                    required=amount,
                )
            new_balance = user.chaos_coins - amount
            self._users[user_id] = replace(user, chaos_coins=new_balance)
            return new_balance

    def credit(self, user_id: str, amount: int) -> int:
        amount = _require_int("amount", amount)
        if amount < 0:
            raise ValidationError("credit amount must be >= 0")
        with self.transaction():
            user = self._user(user_id)
            new_balance = user.chaos_coins + amount
            self._users[user_id] = replace(user, chaos_coins=new_balance)
            return new_balance

    # ---- transaction log ----------------------------------------------- #

    def record_transaction(
        self,
        user_id: str,
        kind: TransactionKind,
        amount: int,
        *,
        contribution_id: Optional[str] = None,
        description: str = "",
    ) -> Transaction:
        amount = _require_int("amount", amount)
        with self.transaction():
            tx = Transaction(
                id=_new_id(),
                user_id=user_id,
                kind=TransactionKind(kind),
                amount=amount,
                description=description,
                contribution_id=contribution_id,
                created_at=self._clock(),
            )
            self._transactions.append(tx)
            return tx

    def list_transactions(self, user_id: str, limit: int = 50) -> List[Transaction]:
        limit = max(1, int(limit))
        out: List[Transaction] = []
        with self._g:
            for tx in reversed(self._transactions):
                if tx.user_id == user_id:
                    out.append(tx)
                    if len(out) >= limit:
                        break
        return out

    # ---- canvas layers ------------------------------------------------- #

    def create_layer(
        self,
        *,
        layer_type: LayerType,
        name: str,
        zoom_level: int = 0,
        region_code: Optional[str] = None,
        seed_prompt: Optional[str] = None,
    ) -> CanvasLayer:
        with self.transaction():
            layer = CanvasLayer(
                id=_new_id(),
                layer_type=LayerType(layer_type),
                name=name,
                zoom_level=int(zoom_level),
                region_code=region_code,
                seed_prompt=seed_prompt,
                created_at=self._clock(),
            )
            self._layers[layer.id] = layer
            return layer

    def get_layer(self, layer_id: str) -> CanvasLayer:
        with self._g:
            layer = self._layers.get(layer_id)
        if layer is None:
            raise NotFound(f"canvas layer {layer_id} not found")
        return layer

    def list_layers(
        self,
        *,
        layer_type: Optional[LayerType] = None,
        region_code: Optional[str] = None,
    ) -> List[CanvasLayer]:
        with self._g:
            layers = list(self._layers.values())
        if layer_type is not None:
            layers = [la for la in layers if la.layer_type == LayerType(layer_type)]
        if region_code is not None:
            layers = [la for la in layers if la.region_code == region_code]
        return layers

    # ---- contributions ------------------------------------------------- #

    def insert_contribution(
        self,
        *,
        user_id: str,
        layer_id: str,
        content_type: ContentKind,
        content_data: Dict[str, Any],
        position_x: float,
        position_y: float,
        width: int,
        height: int,
        market_price: Decimal,
    ) -> Contribution:
        price = _checked_price(market_price)
        with self.transaction():
            self._user(user_id)
            if layer_id not in self._layers:
                raise NotFound(f"canvas layer {layer_id} not found")
            c = Contribution(
                id=_new_id(),
                user_id=user_id,
                layer_id=layer_id,
                content_type=ContentKind(content_type),
                content_data=dict(content_data),
                position_x=float(position_x),
                position_y=float(position_y),
                width=int(width),
                height=int(height),
                boost_count=0,
                view_count=0,
                market_price=price,
                created_at=self._clock(),
            )
            self._contributions[c.id] = c
            return c

    def get_contribution(self, contribution_id: str) -> Contribution:
        with self._g:
            return self._contribution(contribution_id)

    def list_contributions_by_layer(self, layer_id: str) -> List[Contribution]:
        with self._g:
            return [c for c in self._contributions.values() if c.layer_id == layer_id]

    def list_contributions_by_user(self, user_id: str) -> List[Contribution]:
        with self._g:
            return [c for c in self._contributions.values() if c.user_id == user_id]

    def increment_boost_count(self, contribution_id: str) -> int:
        with self.transaction():
            c = self._contribution(contribution_id)
            updated = replace(c, boost_count=c.boost_count + 1)
            self._contributions[contribution_id] = updated
            return updated.boost_count

    def set_market_price(self, contribution_id: str, new_price: Decimal) -> None:
        price = _checked_price(new_price)
        with self.transaction():
            c = self._contribution(contribution_id)
            self._contributions[contribution_id] = replace(c, market_price=price)

    def increment_view_count(self, contribution_id: str) -> int:
        with self.transaction():
            c = self._contribution(contribution_id)
            updated = replace(c, view_count=c.view_count + 1)
            self._contributions[contribution_id] = updated
            return updated.view_count

    # ---- investments --------------------------------------------------- #

    def insert_investment(
        self,
        *,
        user_id: str,
        contribution_id: str,
        amount: int,
        purchase_price: Decimal,
    ) -> Investment:
        amount = _require_positive("amount", amount)
        price = _checked_price(purchase_price)
        with self.transaction():
            self._user(user_id)
            self._contribution(contribution_id)
            inv = Investment(
                id=_new_id(),
                user_id=user_id,
                contribution_id=contribution_id,
                amount=amount,
                purchase_price=price,
                current_value=price,
                created_at=self._clock(),
            )
            self._investments.append(inv)
            return inv

    def list_investments_by_user(self, user_id: str) -> List[Investment]:
        with self._g:
            return [i for i in reversed(self._investments) if i.user_id == user_id]

    def list_investments_by_contribution(self, contribution_id: str) -> List[Investment]:
        with self._g:
            return [i for i in reversed(self._investments) if i.contribution_id == contribution_id]

    # ---- chaos bubbles ------------------------------------------------- #

    def create_bubble(
        self,
        *,
        owner_id: str,
        name: str,
        is_private: bool = True,
        invited_user_ids: Sequence[str] = (),
        theme_data: Optional[Dict[str, Any]] = None,
        layer_id: Optional[str] = None,
    ) -> ChaosBubble:
        with self.transaction():
            self._user(owner_id)
            if layer_id is not None and layer_id not in self._layers:
                raise NotFound(f"canvas layer {layer_id} not found")
            bubble = ChaosBubble(
                id=_new_id(),
                owner_id=owner_id,
                name=name,
                is_private=bool(is_private),
                invited_user_ids=tuple(invited_user_ids),
                theme_data=dict(theme_data) if theme_data is not None else None,
                layer_id=layer_id,
                created_at=self._clock(),
            )
            self._bubbles[bubble.id] = bubble
            return bubble

    def get_bubble(self, bubble_id: str) -> ChaosBubble:
        with self._g:
            bubble = self._bubbles.get(bubble_id)
        if bubble is None:
            raise NotFound(f"chaos bubble {bubble_id} not found")
        return bubble

    def list_bubbles_by_owner(self, owner_id: str) -> List[ChaosBubble]:
        with self._g:
            return [b for b in self._bubbles.values() if b.owner_id == owner_id]


# ------------------------------
# SQLite implementation
# ------------------------------

_SQL_SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS users (
  id TEXT PRIMARY KEY,
  username TEXT NOT NULL UNIQUE,
  email TEXT,
  is_anonymous INTEGER NOT NULL DEFAULT 1,
  country_code TEXT,
  locale TEXT NOT NULL DEFAULT 'en',
  currency TEXT NOT NULL DEFAULT 'USD',
  chaos_coins INTEGER NOT NULL DEFAULT 100 CHECK (chaos_coins >= 0),
  daily_contribution_count INTEGER NOT NULL DEFAULT 0,
  last_contribution_reset TEXT,
  merged_from_anonymous TEXT,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS canvas_layers (
  id TEXT PRIMARY KEY,
  layer_type TEXT NOT NULL,
  region_code TEXT,
  name TEXT NOT NULL,
  zoom_level INTEGER NOT NULL DEFAULT 0,
  seed_prompt TEXT,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contributions (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL REFERENCES users(id),
  layer_id TEXT NOT NULL REFERENCES canvas_layers(id),
  content_type TEXT NOT NULL,
  content_data TEXT NOT NULL,
  position_x REAL NOT NULL,
  position_y REAL NOT NULL,
  width INTEGER NOT NULL,
  height INTEGER NOT NULL,
  boost_count INTEGER NOT NULL DEFAULT 0 CHECK (boost_count >= 0),
  view_count INTEGER NOT NULL DEFAULT 0,
  market_price TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transactions (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  type TEXT NOT NULL,
  amount INTEGER NOT NULL,
  contribution_id TEXT,
  description TEXT NOT NULL DEFAULT '',
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS investments (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL REFERENCES users(id),
  contribution_id TEXT NOT NULL REFERENCES contributions(id),
  amount INTEGER NOT NULL,
  purchase_price TEXT NOT NULL,
  current_value TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chaos_bubbles (
  id TEXT PRIMARY KEY,
  owner_id TEXT NOT NULL REFERENCES users(id),
  name TEXT NOT NULL,
  is_private INTEGER NOT NULL DEFAULT 1,
  invited_user_ids TEXT NOT NULL DEFAULT '[]',
  theme_data TEXT,
  layer_id TEXT REFERENCES canvas_layers(id),
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_contributions_layer ON contributions(layer_id);
CREATE INDEX IF NOT EXISTS idx_contributions_user ON contributions(user_id);
CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_investments_user ON investments(user_id);
CREATE INDEX IF NOT EXISTS idx_investments_contribution ON investments(contribution_id);
CREATE INDEX IF NOT EXISTS idx_bubbles_owner ON chaos_bubbles(owner_id);

CREATE TRIGGER IF NOT EXISTS transactions_no_update
BEFORE UPDATE ON transactions
BEGIN
  SELECT RAISE(ABORT, 'transactions are append-only');
END;

CREATE TRIGGER IF NOT EXISTS transactions_no_delete
BEFORE DELETE ON transactions
BEGIN
  SELECT RAISE(ABORT, 'transactions are append-only');
END;
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class _SQLite:
    """
    Small wrapper around sqlite3 to centralize connection & transactions.

    Characteristics:
      - Single shared connection with check_same_thread=False, guarded by a
        re-entrant lock held for the whole lifetime of a unit of work.
      - IMMEDIATE transactions; nested ``tx()`` blocks join the outer one.
      - Driver errors surface as Fatal after the unit has been rolled back.
    """

    def __init__(self, path: str):
        self._path = path
        self._g = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(
            self._path,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=30000;")
        self._conn.executescript(_SQL_SCHEMA)

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK;")
        except sqlite3.Error:
            # sqlite may already have aborted the transaction itself
            logger.warning("sqlite rollback failed", exc_info=True)

    @contextmanager
    def tx(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for IMMEDIATE transactions.

        Usage:
            with db.tx() as conn:
                conn.execute(...)
        """
        with self._g:
            outer = self._depth == 0
            if outer:
                try:
                    self._conn.execute("BEGIN IMMEDIATE;")
                except sqlite3.Error as exc:
                    raise Fatal(f"storage unavailable: {exc}") from exc
            self._depth += 1
            try:
                yield self._conn
            except sqlite3.Error as exc:
                self._depth -= 1
                if outer:
                    self._rollback()
                raise Fatal(f"storage failure: {exc}") from exc
            except BaseException:
                self._depth -= 1
                if outer:
                    self._rollback()
                raise
            else:
                self._depth -= 1
                if outer:
                    try:
                        self._conn.execute("COMMIT;")
                    except sqlite3.Error as exc:
                        self._rollback()
                        raise Fatal(f"commit failed: {exc}") from exc

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._g:
            self._conn.close()


class SQLiteLedgerStore(LedgerStore):
    """
    SQLite-backed ledger store.

    - Balance decrements are conditional UPDATEs checked by rowcount.
    - ``chaos_coins`` carries a CHECK constraint as a second line of defence.
    - Prices are stored as decimal strings; timestamps as ISO-8601 text.
    """

    def __init__(self, path: str = "chaoscanvas.db", *, clock: Optional[Clock] = None):
        super().__init__(clock=clock)
        self._db = _SQLite(path)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._db.tx():
            yield

    def close(self) -> None:
        self._db.close()

    # ---- row mapping --------------------------------------------------- #

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            chaos_coins=int(row["chaos_coins"]),
            daily_contribution_count=int(row["daily_contribution_count"]),
            last_contribution_reset=_parse_ts(row["last_contribution_reset"]),
            is_anonymous=bool(row["is_anonymous"]),
            email=row["email"],
            country_code=row["country_code"],
            locale=row["locale"],
            currency=row["currency"],
            merged_from_anonymous=row["merged_from_anonymous"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_layer(row: sqlite3.Row) -> CanvasLayer:
        return CanvasLayer(
            id=row["id"],
            layer_type=LayerType(row["layer_type"]),
            name=row["name"],
            zoom_level=int(row["zoom_level"]),
            region_code=row["region_code"],
            seed_prompt=row["seed_prompt"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_contribution(row: sqlite3.Row) -> Contribution:
        return Contribution(
            id=row["id"],
            user_id=row["user_id"],
            layer_id=row["layer_id"],
            content_type=ContentKind(row["content_type"]),
            content_data=json.loads(row["content_data"]),
            position_x=float(row["position_x"]),
            position_y=float(row["position_y"]),
            width=int(row["width"]),
            height=int(row["height"]),
            boost_count=int(row["boost_count"]),
            view_count=int(row["view_count"]),
            market_price=Decimal(row["market_price"]),
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            user_id=row["user_id"],
            kind=TransactionKind(row["type"]),
            amount=int(row["amount"]),
            description=row["description"],
            contribution_id=row["contribution_id"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_investment(row: sqlite3.Row) -> Investment:
        return Investment(
            id=row["id"],
            user_id=row["user_id"],
            contribution_id=row["contribution_id"],
            amount=int(row["amount"]),
            purchase_price=Decimal(row["purchase_price"]),
            current_value=Decimal(row["current_value"]),
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_bubble(row: sqlite3.Row) -> ChaosBubble:
        theme = row["theme_data"]
        return ChaosBubble(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            is_private=bool(row["is_private"]),
            invited_user_ids=tuple(json.loads(row["invited_user_ids"])),
            theme_data=json.loads(theme) if theme is not None else None,
            layer_id=row["layer_id"],
            created_at=_parse_ts(row["created_at"]),
        )

    def _fetch_user(self, conn: sqlite3.Connection, user_id: str) -> User:
        row = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
        if row is None:
            raise NotFound(f"user {user_id} not found")
        return self._row_to_user(row)

    def _fetch_contribution(self, conn: sqlite3.Connection, contribution_id: str) -> Contribution:
        row = conn.execute(
            "SELECT * FROM contributions WHERE id=?", (contribution_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"contribution {contribution_id} not found")
        return self._row_to_contribution(row)

    # ---- users --------------------------------------------------------- #

    def create_user(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        is_anonymous: bool = True,
        country_code: Optional[str] = None,
        locale: str = "en",
        currency: str = "USD",
        starting_coins: int = 100,
    ) -> User:
        coins = _checked_balance(starting_coins)
        with self._db.tx() as conn:
            now = self._clock()
            name = username or _username_for_anonymous(
                now,
                lambda n: conn.execute("SELECT 1 FROM users WHERE username=?", (n,)).fetchone() is not None,
            )
            taken = conn.execute("SELECT 1 FROM users WHERE username=?", (name,)).fetchone()
            if taken is not None:
                raise ValidationError(f"username {name!r} is taken")
            user_id = _new_id()
            conn.execute(
                "INSERT INTO users(id,username,email,is_anonymous,country_code,locale,"
                "currency,chaos_coins,daily_contribution_count,last_contribution_reset,"
                "created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?)",
                (
                    user_id,
                    name,
                    email,
                    1 if is_anonymous else 0,
                    country_code,
                    locale,
                    currency,
                    coins,
                    0,
                    _ts(now),
                    _ts(now),
                ),
            )
            return self._fetch_user(conn, user_id)

    def get_user(self, user_id: str) -> User:
        with self._db.tx() as conn:
            return self._fetch_user(conn, user_id)

    def merge_users(self, anonymous_id: str, registered_id: str) -> User:
        with self._db.tx() as conn:
            self._fetch_user(conn, anonymous_id)
            self._fetch_user(conn, registered_id)
            conn.execute(
                "UPDATE contributions SET user_id=? WHERE user_id=?",
                (registered_id, anonymous_id),
            )
            conn.execute(
                "UPDATE users SET merged_from_anonymous=? WHERE id=?",
                (anonymous_id, registered_id),
            )
            return self._fetch_user(conn, registered_id)

    def update_contribution_counter(
        self,
        user_id: str,
        count: int,
        reset_at: Optional[datetime] = None,
    ) -> User:
        count = _require_int("count", count)
        if count < 0:
            raise InvalidState("contribution counter cannot be negative")
        with self._db.tx() as conn:
            self._fetch_user(conn, user_id)
            if reset_at is not None:
                conn.execute(
                    "UPDATE users SET daily_contribution_count=?, last_contribution_reset=? "
                    "WHERE id=?",
                    (count, _ts(reset_at), user_id),
                )
            else:
                conn.execute(
                    "UPDATE users SET daily_contribution_count=? WHERE id=?",
                    (count, user_id),
                )
            return self._fetch_user(conn, user_id)

    # ---- balances ------------------------------------------------------ #

    def get_balance(self, user_id: str) -> int:
        with self._db.tx() as conn:
            return self._fetch_user(conn, user_id).chaos_coins

    def set_balance(self, user_id: str, new_balance: int) -> None:
        value = _checked_balance(new_balance)
        with self._db.tx() as conn:
            cur = conn.execute("UPDATE users SET chaos_coins=? WHERE id=?", (value, user_id))
            if cur.rowcount == 0:
                raise NotFound(f"user {user_id} not found")

    def debit(self, user_id: str, amount: int) -> int:
        amount = _require_positive("amount", amount)
        with self._db.tx() as conn:
            cur = conn.execute(
                "UPDATE users SET chaos_coins = chaos_coins - ? "
                "WHERE id=? AND chaos_coins >= ?",
                (amount, user_id, amount),
            )
            if cur.rowcount == 0:
                balance = self._fetch_user(conn, user_id).chaos_coins
                raise InsufficientFunds(
                    "Insufficient ChaosCoins",
                    balance=balance,
                    required=amount,
                )
            return self._fetch_user(conn, user_id).chaos_coins

    def credit(self, user_id: str, amount: int) -> int:
        amount = _require_int("amount", amount)
        if amount < 0:
            raise ValidationError("credit amount must be >= 0")
        with self._db.tx() as conn:
            cur = conn.execute(
                "UPDATE users SET chaos_coins = chaos_coins + ? WHERE id=?",
                (amount, user_id),
            )
            if cur.rowcount == 0:
                raise NotFound(f"user {user_id} not found")
            return self._fetch_user(conn, user_id).chaos_coins

    # ---- transaction log ----------------------------------------------- #

    def record_transaction(
        self,
        user_id: str,
        kind: TransactionKind,
        amount: int,
        *,
        contribution_id: Optional[str] = None,
        description: str = "",
    ) -> Transaction:
        amount = _require_int("amount", amount)
        tx = Transaction(
            id=_new_id(),
            user_id=user_id,
            kind=TransactionKind(kind),
            amount=amount,
            description=description,
            contribution_id=contribution_id,
            created_at=self._clock(),
        )
        with self._db.tx() as conn:
            conn.execute(
                "INSERT INTO transactions(id,user_id,type,amount,contribution_id,"
                "description,created_at) VALUES(?,?,?,?,?,?,?)",
                (
                    tx.id,
                    tx.user_id,
                    tx.kind.value,
                    tx.amount,
                    tx.contribution_id,
                    tx.description,
                    _ts(tx.created_at),
                ),
            )
        return tx

    def list_transactions(self, user_id: str, limit: int = 50) -> List[Transaction]:
        limit = max(1, int(limit))
        with self._db.tx() as conn:
            rows = conn.execute(
                "SELECT * FROM transactions WHERE user_id=? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    # ---- canvas layers ------------------------------------------------- #

    def create_layer(
        self,
        *,
        layer_type: LayerType,
        name: str,
        zoom_level: int = 0,
        region_code: Optional[str] = None,
        seed_prompt: Optional[str] = None,
    ) -> CanvasLayer:
        layer = CanvasLayer(
            id=_new_id(),
            layer_type=LayerType(layer_type),
            name=name,
            zoom_level=int(zoom_level),
            region_code=region_code,
            seed_prompt=seed_prompt,
            created_at=self._clock(),
        )
        with self._db.tx() as conn:
            conn.execute(
                "INSERT INTO canvas_layers(id,layer_type,region_code,name,zoom_level,"
                "seed_prompt,created_at) VALUES(?,?,?,?,?,?,?)",
                (
                    layer.id,
                    layer.layer_type.value,
                    layer.region_code,
                    layer.name,
                    layer.zoom_level,
                    layer.seed_prompt,
                    _ts(layer.created_at),
                ),
            )
        return layer

    def get_layer(self, layer_id: str) -> CanvasLayer:
        with self._db.tx() as conn:
            row = conn.execute("SELECT * FROM canvas_layers WHERE id=?", (layer_id,)).fetchone()
        if row is None:
            raise NotFound(f"canvas layer {layer_id} not found")
        return self._row_to_layer(row)

    def list_layers(
        self,
        *,
        layer_type: Optional[LayerType] = None,
        region_code: Optional[str] = None,
    ) -> List[CanvasLayer]:
        sql = "SELECT * FROM canvas_layers"
        clauses: List[str] = []
        params: List[Any] = []
        if layer_type is not None:
            clauses.append("layer_type=?")
            params.append(LayerType(layer_type).value)
        if region_code is not None:
            clauses.append("region_code=?")
            params.append(region_code)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY rowid"
        with self._db.tx() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_layer(r) for r in rows]

    # ---- contributions ------------------------------------------------- #

    def insert_contribution(
        self,
        *,
        user_id: str,
        layer_id: str,
        content_type: ContentKind,
        content_data: Dict[str, Any],
        position_x: float,
        position_y: float,
        width: int,
        height: int,
        market_price: Decimal,
    ) -> Contribution:
        price = _checked_price(market_price)
        contribution_id = _new_id()
        with self._db.tx() as conn:
            self._fetch_user(conn, user_id)
            if conn.execute("SELECT 1 FROM canvas_layers WHERE id=?", (layer_id,)).fetchone() is None:
                raise NotFound(f"canvas layer {layer_id} not found")
            conn.execute(
                "INSERT INTO contributions(id,user_id,layer_id,content_type,content_data,"
                "position_x,position_y,width,height,boost_count,view_count,market_price,"
                "created_at) VALUES(?,?,?,?,?,?,?,?,?,0,0,?,?)",
                (
                    contribution_id,
                    user_id,
                    layer_id,
                    ContentKind(content_type).value,
                    json.dumps(content_data, sort_keys=True, ensure_ascii=False),
                    float(position_x),
                    float(position_y),
                    int(width),
                    int(height),
                    str(price),
                    _ts(self._clock()),
                ),
            )
            return self._fetch_contribution(conn, contribution_id)

    def get_contribution(self, contribution_id: str) -> Contribution:
        with self._db.tx() as conn:
            return self._fetch_contribution(conn, contribution_id)

    def list_contributions_by_layer(self, layer_id: str) -> List[Contribution]:
        with self._db.tx() as conn:
            rows = conn.execute(
                "SELECT * FROM contributions WHERE layer_id=? ORDER BY rowid", (layer_id,)
            ).fetchall()
        return [self._row_to_contribution(r) for r in rows]

    def list_contributions_by_user(self, user_id: str) -> List[Contribution]:
        with self._db.tx() as conn:
            rows = conn.execute(
                "SELECT * FROM contributions WHERE user_id=? ORDER BY rowid", (user_id,)
            ).fetchall()
        return [self._row_to_contribution(r) for r in rows]

    def increment_boost_count(self, contribution_id: str) -> int:
        with self._db.tx() as conn:
            cur = conn.execute(
                "UPDATE contributions SET boost_count = boost_count + 1 WHERE id=?",
                (contribution_id,),
            )
            if cur.rowcount == 0:
                raise NotFound(f"contribution {contribution_id} not found")
            return self._fetch_contribution(conn, contribution_id).boost_count

    def set_market_price(self, contribution_id: str, new_price: Decimal) -> None:
        price = _checked_price(new_price)
        with self._db.tx() as conn:
            cur = conn.execute(
                "UPDATE contributions SET market_price=? WHERE id=?",
                (str(price), contribution_id),
            )
            if cur.rowcount == 0:
                raise NotFound(f"contribution {contribution_id} not found")

    def increment_view_count(self, contribution_id: str) -> int:
        with self._db.tx() as conn:
            cur = conn.execute(
                "UPDATE contributions SET view_count = view_count + 1 WHERE id=?",
                (contribution_id,),
            )
            if cur.rowcount == 0:
                raise NotFound(f"contribution {contribution_id} not found")
            return self._fetch_contribution(conn, contribution_id).view_count

    # ---- investments --------------------------------------------------- #

    def insert_investment(
        self,
        *,
        user_id: str,
        contribution_id: str,
        amount: int,
        purchase_price: Decimal,
    ) -> Investment:
        amount = _require_positive("amount", amount)
        price = _checked_price(purchase_price)
        inv = Investment(
            id=_new_id(),
            user_id=user_id,
            contribution_id=contribution_id,
            amount=amount,
            purchase_price=price,
            current_value=price,
            created_at=self._clock(),
        )
        with self._db.tx() as conn:
            self._fetch_user(conn, user_id)
            self._fetch_contribution(conn, contribution_id)
            conn.execute(
                "INSERT INTO investments(id,user_id,contribution_id,amount,purchase_price,"
                "current_value,created_at) VALUES(?,?,?,?,?,?,?)",
                (
                    inv.id,
                    inv.user_id,
                    inv.contribution_id,
                    inv.amount,
                    str(inv.purchase_price),
                    str(inv.current_value),
                    _ts(inv.created_at),
                ),
            )
        return inv

    def list_investments_by_user(self, user_id: str) -> List[Investment]:
        with self._db.tx() as conn:
            rows = conn.execute(
                "SELECT * FROM investments WHERE user_id=? ORDER BY created_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_investment(r) for r in rows]

    def list_investments_by_contribution(self, contribution_id: str) -> List[Investment]:
        with self._db.tx() as conn:
            rows = conn.execute(
                "SELECT * FROM investments WHERE contribution_id=? ORDER BY created_at DESC, rowid DESC",
                (contribution_id,),
            ).fetchall()
        return [self._row_to_investment(r) for r in rows]

    # ---- chaos bubbles ------------------------------------------------- #

    def create_bubble(
        self,
        *,
        owner_id: str,
        name: str,
        is_private: bool = True,
        invited_user_ids: Sequence[str] = (),
        theme_data: Optional[Dict[str, Any]] = None,
        layer_id: Optional[str] = None,
    ) -> ChaosBubble:
        bubble = ChaosBubble(
            id=_new_id(),
            owner_id=owner_id,
            name=name,
            is_private=bool(is_private),
            invited_user_ids=tuple(invited_user_ids),
            theme_data=dict(theme_data) if theme_data is not None else None,
            layer_id=layer_id,
            created_at=self._clock(),
        )
        with self._db.tx() as conn:
            self._fetch_user(conn, owner_id)
            if layer_id is not None:
                row = conn.execute("SELECT 1 FROM canvas_layers WHERE id=?", (layer_id,)).fetchone()
                if row is None:
                    raise NotFound(f"canvas layer {layer_id} not found")
            conn.execute(
                "INSERT INTO chaos_bubbles(id,owner_id,name,is_private,invited_user_ids,"
                "theme_data,layer_id,created_at) VALUES(?,?,?,?,?,?,?,?)",
                (
                    bubble.id,
                    bubble.owner_id,
                    bubble.name,
                    1 if bubble.is_private else 0,
                    json.dumps(list(bubble.invited_user_ids)),
                    json.dumps(bubble.theme_data, sort_keys=True) if bubble.theme_data is not None else None,
                    bubble.layer_id,
                    _ts(bubble.created_at),
                ),
            )
        return bubble

    def get_bubble(self, bubble_id: str) -> ChaosBubble:
        with self._db.tx() as conn:
            row = conn.execute("SELECT * FROM chaos_bubbles WHERE id=?", (bubble_id,)).fetchone()
        if row is None:
            raise NotFound(f"chaos bubble {bubble_id} not found")
        return self._row_to_bubble(row)

    def list_bubbles_by_owner(self, owner_id: str) -> List[ChaosBubble]:
        with self._db.tx() as conn:
            rows = conn.execute(
                "SELECT * FROM chaos_bubbles WHERE owner_id=? ORDER BY created_at, rowid",
                (owner_id,),
            ).fetchall()
        return [self._row_to_bubble(r) for r in rows]


# ------------------------------
# Factory
# ------------------------------

def make_ledger_store(dsn: Optional[str], *, clock: Optional[Clock] = None) -> LedgerStore:
    """
    Factory for LedgerStore backends.

    Accepted DSNs:
      - None or "mem://"
          -> InMemoryLedgerStore
      - "sqlite:///:memory:"
          -> SQLiteLedgerStore(path=":memory:")
      - "sqlite:///path/to/chaoscanvas.db"
          -> SQLiteLedgerStore(path="path/to/chaoscanvas.db")
    """
    if not dsn or dsn.strip().lower().startswith("mem://"):
        return InMemoryLedgerStore(clock=clock)
    dsn_l = dsn.strip().lower()
    if dsn_l.startswith("sqlite:///"):
        path = dsn.strip()[len("sqlite:///") :]
        if path in (":memory:", ":mem:"):
            path = ":memory:"
        logger.info("opening sqlite ledger store at %s", path)
        return SQLiteLedgerStore(path=path, clock=clock)
    raise ValueError(f"Unsupported ledger dsn: {dsn}")


__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "SQLiteLedgerStore",
    "make_ledger_store",
]


# ------------------------------
# Minimal self-check (optional)
# ------------------------------

if __name__ == "__main__":
    # Quick smoke test for local runs: python -m chaoscanvas.storage
    store = make_ledger_store("sqlite:///:memory:")
    alice = store.create_user(username="alice")
    bob = store.create_user(username="bob")
    layer = store.create_layer(layer_type=LayerType.GLOBAL, name="Global Chaos")
    c = store.insert_contribution(
        user_id=bob.id,
        layer_id=layer.id,
        content_type=ContentKind.TEXT,
        content_data={"text": "hello"},
        position_x=10,
        position_y=20,
        width=100,
        height=50,
        market_price=Decimal("10.00"),
    )
    with store.transaction():
        store.debit(alice.id, 20)
        store.record_transaction(alice.id, TransactionKind.BOOST, -20, contribution_id=c.id)
    print("alice=", store.get_balance(alice.id), "tx=", store.list_transactions(alice.id))
