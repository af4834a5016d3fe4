# chaoscanvas/economy.py
"""
Boost / invest engine.

Each operation runs as one store transaction:

  boost(contribution, booster, amount)
    1. load booster and contribution (NotFound)
    2. conditional debit of the booster (InsufficientFunds, nothing written)
    3. boost_count += 1
    4. author += floor(amount * share), with an ``earned`` row, if the author exists
    5. ``boost`` row of -amount for the booster
    6. price = round2(price * multiplier)

  invest(contribution, investor, amount)
    debit, Investment row at the current market price, ``investment`` row.

  purchase_coins(user, package)
    credit the package size, ``purchase`` row.

Any failure rolls back every write of the unit. Change events are published
only after commit.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional, Union

from .errors import ChaosError, NotFound, ValidationError
from .exporter import BOOSTS, record_coins, record_rejection
from .logging import log_ledger_event
from .models import (
    Contribution,
    Investment,
    PurchaseReceipt,
    TransactionKind,
    User,
    floor_share,
    reprice,
)
from .notifier import ChangeNotifier
from .storage import LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_COIN_PACKAGES: Dict[str, int] = {"100": 100, "500": 500, "1000": 1000, "2000": 2000}


def _checked_amount(amount: object) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("amount must be an integer")
    if amount <= 0:
        raise ValidationError("amount must be > 0")
    return amount


class BoostEngine:
    def __init__(
        self,
        store: LedgerStore,
        notifier: ChangeNotifier,
        *,
        author_share: Union[str, Decimal] = "0.5",
        price_multiplier: Union[str, Decimal] = "1.1",
        coin_packages: Optional[Mapping[str, int]] = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self.author_share = Decimal(author_share)
        self.price_multiplier = Decimal(price_multiplier)
        self.coin_packages = dict(coin_packages or DEFAULT_COIN_PACKAGES)

    def _author(self, user_id: str) -> Optional[User]:
        try:
            return self._store.get_user(user_id)
        except NotFound:
            return None

    # ------------------------------------------------------------------ #
    # boost
    # ------------------------------------------------------------------ #

    def boost(self, contribution_id: str, booster_id: str, amount: int) -> Contribution:
        """Move ``amount`` from the booster, pay the author a share, reprice."""
        try:
            amount = _checked_amount(amount)
            with self._store.transaction():
                booster = self._store.get_user(booster_id)
                contribution = self._store.get_contribution(contribution_id)

                booster_balance = self._store.debit(booster.id, amount)
                self._store.increment_boost_count(contribution.id)

                share = floor_share(amount, self.author_share)
                author = self._author(contribution.user_id)
                author_balance = None
                if author is not None:
                    author_balance = self._store.credit(author.id, share)
                    self._store.record_transaction(
                        author.id,
                        TransactionKind.EARNED,
                        share,
                        contribution_id=contribution.id,
                        description=f"Earned from boost by {booster.username}",
                    )
                self._store.record_transaction(
                    booster.id,
                    TransactionKind.BOOST,
                    -amount,
                    contribution_id=contribution.id,
                    description="Boosted contribution",
                )

                self._store.set_market_price(
                    contribution.id, reprice(contribution.market_price, self.price_multiplier)
                )
                updated = self._store.get_contribution(contribution.id)
        except ChaosError as exc:
            record_rejection("boost", exc.kind)
            raise

        BOOSTS.inc()
        record_coins(TransactionKind.BOOST.value, amount)
        log_ledger_event(
            logger,
            kind=TransactionKind.BOOST.value,
            user_id=booster.id,
            amount=-amount,
            balance=booster_balance,
            contribution_id=updated.id,
        )
        if author is not None:
            record_coins(TransactionKind.EARNED.value, share)
            log_ledger_event(
                logger,
                kind=TransactionKind.EARNED.value,
                user_id=author.id,
                amount=share,
                balance=author_balance,
                contribution_id=updated.id,
            )

        self._notifier.publish(
            updated.layer_id,
            {
                "type": "contribution_updated",
                "contributionId": updated.id,
                "boostCount": updated.boost_count,
                "marketPrice": str(updated.market_price),
            },
        )
        return updated

    # ------------------------------------------------------------------ #
    # invest
    # ------------------------------------------------------------------ #

    def invest(self, contribution_id: str, investor_id: str, amount: int) -> Investment:
        """Commit coins to a contribution at its current market price."""
        try:
            amount = _checked_amount(amount)
            with self._store.transaction():
                investor = self._store.get_user(investor_id)
                contribution = self._store.get_contribution(contribution_id)
                balance = self._store.debit(investor.id, amount)
                investment = self._store.insert_investment(
                    user_id=investor.id,
                    contribution_id=contribution.id,
                    amount=amount,
                    purchase_price=contribution.market_price,
                )
                self._store.record_transaction(
                    investor.id,
                    TransactionKind.INVESTMENT,
                    -amount,
                    contribution_id=contribution.id,
                    description="Invested in contribution",
                )
        except ChaosError as exc:
            record_rejection("invest", exc.kind)
            raise

        record_coins(TransactionKind.INVESTMENT.value, amount)
        log_ledger_event(
            logger,
            kind=TransactionKind.INVESTMENT.value,
            user_id=investor.id,
            amount=-amount,
            balance=balance,
            contribution_id=contribution.id,
        )
        return investment

    # ------------------------------------------------------------------ #
    # coin purchase
    # ------------------------------------------------------------------ #

    def purchase_coins(self, user_id: str, package_id: str) -> PurchaseReceipt:
        coins = self.coin_packages.get(str(package_id))
        if coins is None:
            record_rejection("purchase", ValidationError.kind)
            raise ValidationError(f"unknown coin package {package_id!r}")
        try:
            with self._store.transaction():
                self._store.get_user(user_id)
                new_balance = self._store.credit(user_id, coins)
                tx = self._store.record_transaction(
                    user_id,
                    TransactionKind.PURCHASE,
                    coins,
                    description=f"Purchased {coins} ChaosCoins",
                )
        except ChaosError as exc:
            record_rejection("purchase", exc.kind)
            raise

        record_coins(TransactionKind.PURCHASE.value, coins)
        log_ledger_event(
            logger,
            kind=TransactionKind.PURCHASE.value,
            user_id=user_id,
            amount=coins,
            balance=new_balance,
        )
        return PurchaseReceipt(
            user_id=user_id,
            package_id=str(package_id),
            coins=coins,
            new_balance=new_balance,
            transaction=tx,
        )
