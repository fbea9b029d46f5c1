# agritrace/ledger.py
"""First-come-first-serve lot ledger.

A batch can be acquired by exactly one buyer. The check-and-create runs under
a per-batch lock inside this process, and the unique constraint on
``lot_transactions.batch_code`` settles races between processes: whoever
commits first owns the lot, everyone else is told it is sold out.
"""
from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agritrace import models
from agritrace.notifications import NotificationDispatcher, Role
from agritrace.schemas import NotificationPayload
from agritrace.utils import epoch_ms, short_token, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

SOLD_OUT = "sold_out"


@dataclass
class LotProposalResult:
    accepted: bool
    batch_code: str
    buyer_id: str
    transaction: Optional[models.LotTransaction] = None
    reason: Optional[str] = None
    winning_buyer: Optional[str] = None
    notifications: Dict[str, str] = field(default_factory=dict)

    @property
    def transaction_code(self) -> Optional[str]:
        return self.transaction.transaction_code if self.transaction is not None else None

    @property
    def message(self) -> str:
        if self.accepted:
            return f"Lot proposal accepted. Transaction Code: {self.transaction_code}"
        return f"Lot with Batch Code {self.batch_code} is now Sold out to {self.winning_buyer}"


def make_transaction_code(batch_code: str, buyer_id: str, ts: datetime) -> str:
    return f"TXN-{epoch_ms(ts)}-{batch_code[-6:]}-{buyer_id[-4:]}-{short_token()}"


class LotLedger:
    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        *,
        clock: Clock | None = None,
        interested_buyers: List[str] | None = None,
    ):
        self._dispatcher = dispatcher
        self._clock = clock or utcnow
        self._interested_buyers = list(interested_buyers or [])
        # an entry lives only while some proposal holds its lock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, batch_code: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(batch_code)
            if lock is None:
                lock = threading.Lock()
                self._locks[batch_code] = lock
            return lock

    @property
    def tracked_locks(self) -> int:
        return len(self._locks)

    @staticmethod
    def get_transaction(db: Session, batch_code: str) -> Optional[models.LotTransaction]:
        return (
            db.query(models.LotTransaction)
            .filter(models.LotTransaction.batch_code == batch_code)
            .first()
        )

    def propose_lot(
        self,
        db: Session,
        batch_code: str,
        buyer_id: str,
        *,
        on_accept: Optional[Callable[[models.LotTransaction], None]] = None,
    ) -> LotProposalResult:
        """Sell the lot to the first proposer.

        ``on_accept`` runs inside the insert's transaction, before the commit,
        so whatever it writes is committed together with the sale. Buyers are
        notified only after that commit.
        """
        with self._lock_for(batch_code):
            winner = self.get_transaction(db, batch_code)
            if winner is None:
                accepted_at = self._clock()
                txn = models.LotTransaction(
                    transaction_code=make_transaction_code(batch_code, buyer_id, accepted_at),
                    batch_code=batch_code,
                    buyer_id=buyer_id,
                    status="accepted",
                    accepted_at=accepted_at,
                )
                db.add(txn)
                if on_accept is not None:
                    try:
                        on_accept(txn)
                    except Exception:
                        db.rollback()
                        raise
                try:
                    db.commit()
                except IntegrityError:
                    # another process committed first
                    db.rollback()
                    winner = self.get_transaction(db, batch_code)
                    if winner is None:
                        raise
                else:
                    db.refresh(txn)
                    logger.info("Lot %s accepted for buyer %s (%s)", batch_code, buyer_id, txn.transaction_code)
                    return LotProposalResult(
                        accepted=True,
                        batch_code=batch_code,
                        buyer_id=buyer_id,
                        transaction=txn,
                        notifications=self._announce_sale(txn),
                    )

        logger.info("Lot %s already sold to %s; proposal from %s refused", batch_code, winner.buyer_id, buyer_id)
        return LotProposalResult(
            accepted=False,
            batch_code=batch_code,
            buyer_id=buyer_id,
            reason=SOLD_OUT,
            winning_buyer=winner.buyer_id,
            notifications=self._announce_sold_out(winner, buyer_id),
        )

    def _announce_sale(self, txn: models.LotTransaction) -> Dict[str, str]:
        outcome = self._dispatcher.notify_roles(
            [Role.BUYER],
            NotificationPayload(
                event="lot_accepted",
                entity_id=txn.batch_code,
                message=f"Lot proposal accepted. Transaction Code: {txn.transaction_code}",
                recipients=[txn.buyer_id],
                data={"transactionCode": txn.transaction_code},
            ),
        )
        others = [b for b in self._interested_buyers if b != txn.buyer_id]
        if others:
            self._dispatcher.notify(Role.BUYER, self._sold_out_payload(txn, others))
        return outcome

    def _announce_sold_out(self, winner: models.LotTransaction, losing_buyer: str) -> Dict[str, str]:
        recipients = [losing_buyer] + [
            b for b in self._interested_buyers if b not in (losing_buyer, winner.buyer_id)
        ]
        return self._dispatcher.notify_roles([Role.BUYER], self._sold_out_payload(winner, recipients))

    @staticmethod
    def _sold_out_payload(winner: models.LotTransaction, recipients: List[str]) -> NotificationPayload:
        return NotificationPayload(
            event="lot_sold_out",
            entity_id=winner.batch_code,
            message=(
                f"Lot with Batch Code {winner.batch_code} is now Sold out to buyer "
                f"{winner.buyer_id} (Transaction: {winner.transaction_code})"
            ),
            recipients=recipients,
            data={"winningBuyer": winner.buyer_id},
        )
