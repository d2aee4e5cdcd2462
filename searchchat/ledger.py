"""Credit debit with a bounded wait.

Policy per outcome:

* committed            -> continue
* denied (not own key) -> abort with INSUFFICIENT_CREDITS before any generation call
* timed out            -> log and continue as if committed (optimistic continuation)
* any other failure    -> abort with a generic processing error

The debit is raced against a timer with ``asyncio.wait`` so the losing debit keeps
running; when it finally resolves its outcome is written to the same transaction
row as ``late_outcome``. A late denial is not billed retroactively.
"""

import asyncio
import logging
from typing import Optional, Set

from .db import Database
from .errors import PROCESSING_FAILED_MESSAGE, ProcessingError, insufficient_credits
from .schemas import CreditTransaction
from .tiers import CreditStore

logger = logging.getLogger("uvicorn.error")


class CreditLedgerGuard:
    def __init__(self, store: CreditStore, db: Database, timeout_s: float = 10.0):
        self.store = store
        self.db = db
        self.timeout_s = timeout_s
        # Abandoned debits are kept referenced until they settle.
        self._late: Set[asyncio.Task] = set()

    async def debit(
        self,
        request_id: str,
        model: str,
        using_own_key: bool,
        user_id: Optional[str],
        is_guest: bool,
    ) -> CreditTransaction:
        task = asyncio.create_task(self.store.consume(model, using_own_key, user_id, is_guest))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout_s)
        except asyncio.CancelledError:
            # The request went away mid-debit; the store call still settles and gets its row.
            pending = CreditTransaction(request_id, user_id, model, using_own_key, "committed")
            self._track(task)
            task.add_done_callback(lambda t: self._on_abandoned(pending, t))
            raise

        if not done:
            logger.warning(
                "Credit debit timed out after %.1fs for user %s model %s; continuing",
                self.timeout_s,
                user_id,
                model,
            )
            tx = CreditTransaction(request_id, user_id, model, using_own_key, "timed_out")
            # Not awaited: a slow store must not stall the request a second time.
            recorded = self._track(asyncio.ensure_future(self._record(tx)))
            self._track(task)
            task.add_done_callback(lambda t: self._on_late_result(request_id, t, recorded))
            return tx

        exc = task.exception()
        if exc is not None:
            logger.error("Credit debit failed for user %s model %s: %s", user_id, model, exc)
            raise ProcessingError(PROCESSING_FAILED_MESSAGE) from exc

        if not task.result() and not using_own_key:
            tx = CreditTransaction(request_id, user_id, model, using_own_key, "denied")
            await self._record(tx)
            raise insufficient_credits()

        tx = CreditTransaction(request_id, user_id, model, using_own_key, "committed")
        await self._record(tx)
        return tx

    async def _record(self, tx: CreditTransaction) -> None:
        try:
            await self.db.record_credit_transaction(
                tx.request_id, tx.user_id, tx.model, tx.using_own_key, tx.outcome
            )
        except Exception as exc:
            logger.warning("Could not record credit transaction %s: %s", tx.request_id, exc)

    def _track(self, task: asyncio.Future) -> asyncio.Future:
        self._late.add(task)
        task.add_done_callback(self._late.discard)
        return task

    def _on_abandoned(self, tx: CreditTransaction, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            logger.warning("Abandoned credit debit for request %s did not complete", tx.request_id)
            return
        if not task.result() and not tx.using_own_key:
            tx = CreditTransaction(tx.request_id, tx.user_id, tx.model, tx.using_own_key, "denied")
        logger.info("Abandoned credit debit for request %s settled: %s", tx.request_id, tx.outcome)
        self._track(asyncio.ensure_future(self._record(tx)))

    def _on_late_result(self, request_id: str, task: asyncio.Task, recorded: asyncio.Future) -> None:
        if task.cancelled():
            outcome = "cancelled"
        elif task.exception() is not None:
            outcome = "failed"
        else:
            outcome = "committed" if task.result() else "denied"
        if outcome == "denied":
            logger.warning("Late credit denial for request %s after optimistic continuation; not billed", request_id)
        else:
            logger.info("Late credit outcome for request %s: %s", request_id, outcome)
        self._track(asyncio.ensure_future(self._record_late(request_id, outcome, recorded)))

    async def _record_late(self, request_id: str, outcome: str, recorded: asyncio.Future) -> None:
        await recorded
        try:
            await self.db.record_late_outcome(request_id, outcome)
        except Exception as exc:
            logger.warning("Could not record late credit outcome for %s: %s", request_id, exc)

    async def drain(self) -> None:
        """Wait for abandoned debits; used on shutdown and in tests."""
        while self._late:
            await asyncio.gather(*list(self._late), return_exceptions=True)
