"""
services/ledger.py

Gatekeeper for paid actions: free-usage quota + cached account balance.

Every chargeable action goes through Ledger.authorize(), which either
consumes one free unit, debits the balance through the finance service,
or refuses. It never does two of those.

The balance held here is a cache of the finance service's value. The local
`balance < price` check is only a fast path; the server decides on debit.
"""

import json
import logging
import os
import threading
from typing import Any, Dict, Optional

from config import FREE_QUESTIONS_LIMIT, QUOTA_STORE_PATH
from exam_practice.models.session_state import Authorization
from exam_practice.services.backend_client import BackendClient, BackendError

logger = logging.getLogger(__name__)

TOP_UP_URL = "/dashboard/user/subscription"


def parse_balance(value: Any) -> Optional[int]:
    """Number or decimal string ("1000.00") -> whole naira; None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        logger.error(f"Unusable balance from finance service: {value!r}")
        return None


class FreeQuotaStore:
    """
    Durable per-user counter of consumed free actions (JSON file).
    Not synchronized across devices.
    """

    def __init__(self, path: str = QUOTA_STORE_PATH):
        self.path = path
        self._lock = threading.Lock()

    @staticmethod
    def key(user_id: int) -> str:
        return f"freeQuestionsUsed_{user_id}"

    def _read_all(self) -> Dict[str, int]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Free quota store unreadable ({self.path}): {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load(self, user_id: int) -> int:
        with self._lock:
            raw = self._read_all().get(self.key(user_id), 0)
        try:
            return max(0, int(raw))
        except (TypeError, ValueError):
            return 0

    def save(self, user_id: int, count: int) -> None:
        with self._lock:
            data = self._read_all()
            data[self.key(user_id)] = count
            try:
                with open(self.path, "w", encoding="utf-8") as f:
                    json.dump(data, f)
            except OSError as e:
                logger.error(f"Error saving free questions count: {e}")


class Ledger:
    def __init__(
        self,
        client: BackendClient,
        user_id: int,
        store: FreeQuotaStore,
        free_limit: int = FREE_QUESTIONS_LIMIT,
        balance: int = 0,
    ) -> None:
        self.client = client
        self.user_id = user_id
        self.store = store
        self.free_limit = free_limit
        self.balance = balance
        self.free_questions_used = min(store.load(user_id), free_limit)

    # ── Quota ──────────────────────────────────────────────────────────────

    def can_use_free_action(self) -> bool:
        return self.free_questions_used < self.free_limit

    @property
    def free_remaining(self) -> int:
        return self.free_limit - self.free_questions_used

    def price_label(self, price: int) -> str:
        """Label shown on a paid button before it is pressed."""
        return "Free" if self.can_use_free_action() else f"₦{price}"

    def _consume_free_unit(self) -> None:
        # read-increment-persist with no suspension point in between
        self.free_questions_used += 1
        self.store.save(self.user_id, self.free_questions_used)

    # ── Authorization ──────────────────────────────────────────────────────

    async def authorize(self, price: int, description: str = "") -> Authorization:
        if self.can_use_free_action():
            self._consume_free_unit()
            remaining = self.free_remaining
            logger.info(f"user {self.user_id}: free unit used for '{description}' ({remaining} left)")
            return Authorization(
                granted=True,
                via="free",
                reason=f"Free question used! {remaining} free question{'s' if remaining != 1 else ''} remaining.",
                balance=self.balance,
            )

        if self.balance < price:
            return Authorization(
                granted=False,
                reason=(
                    f"Insufficient balance! You need ₦{price} but have ₦{self.balance}. "
                    "Please top up your account."
                ),
                balance=self.balance,
            )

        try:
            data = await self.client.post_json(
                "/api/me/deduct-balance",
                {"amount": price, "description": description},
                content_type="application/json",
            )
        except BackendError as e:
            logger.error(f"deduct balance failed for user {self.user_id}: {e.message}")
            return Authorization(granted=False, reason=e.message or "Failed to process payment", balance=self.balance)

        new_balance = parse_balance(data.get("balance")) if isinstance(data, dict) else None
        self.balance = new_balance if new_balance is not None else self.balance - price
        logger.info(f"user {self.user_id}: ₦{price} debited for '{description}', balance ₦{self.balance}")
        return Authorization(
            granted=True,
            via="balance",
            reason=f"₦{price} deducted. New balance: ₦{self.balance}",
            balance=self.balance,
        )

    async def refresh_balance(self) -> int:
        """Re-read the authoritative balance; keeps the cached value on failure."""
        try:
            data = await self.client.get_json("/api/me/finance")
        except BackendError as e:
            logger.error(f"fetch account balance failed: {e.message}")
            return self.balance
        raw = data.get("balance") if isinstance(data, dict) else None
        if raw is None:
            self.balance = 0
        else:
            balance = parse_balance(raw)
            if balance is not None:
                self.balance = balance
        return self.balance
