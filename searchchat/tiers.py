import logging
from typing import Optional

from .config import AppSettings
from .db import CREDIT_COLUMNS, Database
from .schemas import TierDecision

logger = logging.getLogger("uvicorn.error")


class TierAuthority:
    """Read-only model access check. Never debits; see ``ledger.CreditLedgerGuard`` for that."""

    def __init__(self, settings: AppSettings, db: Database):
        self.settings = settings
        self.db = db

    async def check(
        self,
        model: str,
        using_own_key: bool,
        user_id: Optional[str],
        is_guest: bool,
    ) -> TierDecision:
        spec = self.settings.get_model(model)
        if spec is None or not spec.enabled:
            return TierDecision(allowed=False, reason=f"Model {model!r} is not available.")

        if is_guest:
            if model == self.settings.guest_model:
                return TierDecision(allowed=True, remaining=-1)
            return TierDecision(
                allowed=False,
                reason=f"Guest users can only use {self.settings.guest_model}. Please sign up for access to other models.",
            )

        if using_own_key:
            return TierDecision(allowed=True, remaining=-1)

        if not user_id:
            return TierDecision(allowed=False, reason="User preferences not found. Please sign in again.")
        record = await self.db.get_user_tier(user_id)
        if not record:
            logger.info("No tier record for user %s", user_id)
            return TierDecision(allowed=False, reason="User preferences not found. Please refresh the page.")
        if record["tier"] == "admin":
            return TierDecision(allowed=True, remaining=-1)

        remaining = int(record[CREDIT_COLUMNS[spec.model_class]] or 0)
        if remaining > 0:
            return TierDecision(allowed=True, remaining=remaining)
        return TierDecision(
            allowed=False,
            remaining=0,
            insufficient_credits=True,
            reason="Monthly credits exhausted. Update your current plan.",
        )


class CreditStore:
    """The debit side of the tier record, awaited by the ledger guard."""

    def __init__(self, settings: AppSettings, db: Database):
        self.settings = settings
        self.db = db

    async def consume(self, model: str, using_own_key: bool, user_id: Optional[str], is_guest: bool) -> bool:
        if is_guest or using_own_key:
            return True
        if not user_id:
            return False
        spec = self.settings.get_model(model)
        if spec is None:
            return False
        record = await self.db.get_user_tier(user_id)
        if not record:
            raise LookupError(f"no tier record for user {user_id}")
        if record["tier"] == "admin":
            return True
        return await self.db.consume_credit(user_id, spec.model_class)
