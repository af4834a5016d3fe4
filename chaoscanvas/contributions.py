# chaoscanvas/contributions.py
"""
Contribution lifecycle: validate, gate, persist, announce.

Create path, in order:
  1. The per-actor window limiter is consulted (key ``userId:ip``, read
     from the raw payload).
  2. Payload shape is validated (tagged content union, placement, size).
  3. Inside one store transaction: the user's daily counter is rolled over
     at local-day boundaries, checked against the cap, the contribution row
     is inserted and the counter is bumped. A failed insert leaves the
     counter untouched.
  4. A ``new_contribution`` event goes to the contribution's layer.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, List, Mapping, Optional, Union

from .errors import ChaosError, DailyLimitExceeded, RateLimited
from .exporter import CONTRIBUTIONS_CREATED, record_rejection
from .models import Contribution, User, to_price
from .notifier import ChangeNotifier
from .ratelimit import WindowRateLimiter, actor_key
from .schemas import ContributionRequest, contribution_wire
from .storage import LedgerStore

logger = logging.getLogger(__name__)


def day_rolled_over(last_reset: Optional[datetime], now: datetime) -> bool:
    """True when ``last_reset`` falls on a different local calendar day than ``now``."""
    if last_reset is None:
        return True
    return last_reset.date() != now.date()


def _limiter_key(payload: Union[ContributionRequest, Mapping[str, Any]], ip_address: Optional[str]) -> str:
    # read from the raw payload so malformed bodies are throttled too
    if isinstance(payload, ContributionRequest):
        return actor_key(payload.user_id, ip_address or payload.ip_address)
    user_id = payload.get("userId", payload.get("user_id"))
    declared_ip = payload.get("ipAddress")
    if not isinstance(declared_ip, str):
        declared_ip = None
    return actor_key(str(user_id) if user_id is not None else "", ip_address or declared_ip)


class ContributionManager:
    def __init__(
        self,
        store: LedgerStore,
        rate_limiter: WindowRateLimiter,
        notifier: ChangeNotifier,
        *,
        daily_cap: int = 15,
        baseline_price: Union[str, Decimal] = "10.00",
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._limiter = rate_limiter
        self._notifier = notifier
        self.daily_cap = int(daily_cap)
        self.baseline_price = to_price(baseline_price)
        self._now = now or datetime.now

    def create_contribution(
        self,
        payload: Union[ContributionRequest, Mapping[str, Any]],
        *,
        ip_address: Optional[str] = None,
    ) -> Contribution:
        if not self._limiter.check(_limiter_key(payload, ip_address)):
            record_rejection("create_contribution", RateLimited.kind)
            raise RateLimited("Too many contributions. Please wait a few minutes.")

        try:
            request = payload if isinstance(payload, ContributionRequest) else ContributionRequest.parse(payload)
        except ChaosError as exc:
            record_rejection("create_contribution", exc.kind)
            raise

        try:
            contribution = self._persist(request)
        except ChaosError as exc:
            record_rejection("create_contribution", exc.kind)
            raise

        CONTRIBUTIONS_CREATED.labels(content_type=contribution.content_type.value).inc()
        logger.info(
            "contribution.created",
            extra={
                "contribution_id": contribution.id,
                "user_id": contribution.user_id,
                "layer_id": contribution.layer_id,
            },
        )
        self._notifier.publish(
            contribution.layer_id,
            {"type": "new_contribution", "contribution": contribution_wire(contribution)},
        )
        return contribution

    def _persist(self, request: ContributionRequest) -> Contribution:
        now = self._now()
        with self._store.transaction():
            user = self._store.get_user(request.user_id)
            count, reset_at = self._current_count(user, now)
            if count >= self.daily_cap:
                raise DailyLimitExceeded(
                    f"Daily contribution limit reached ({self.daily_cap} per day)",
                    limit=self.daily_cap,
                )
            contribution = self._store.insert_contribution(
                user_id=user.id,
                layer_id=request.layer_id,
                content_type=request.content_type,
                content_data=request.content_data,
                position_x=request.position_x,
                position_y=request.position_y,
                width=request.width,
                height=request.height,
                market_price=self.baseline_price,
            )
            self._store.update_contribution_counter(user.id, count + 1, reset_at)
        return contribution

    @staticmethod
    def _current_count(user: User, now: datetime):
        if day_rolled_over(user.last_contribution_reset, now):
            return 0, now
        return user.daily_contribution_count, None

    # ---- read side / view tracking ------------------------------------- #

    def get_contribution(self, contribution_id: str) -> Contribution:
        return self._store.get_contribution(contribution_id)

    def list_for_layer(self, layer_id: str) -> List[Contribution]:
        self._store.get_layer(layer_id)
        return self._store.list_contributions_by_layer(layer_id)

    def list_for_user(self, user_id: str) -> List[Contribution]:
        return self._store.list_contributions_by_user(user_id)

    def record_view(self, contribution_id: str) -> int:
        return self._store.increment_view_count(contribution_id)
