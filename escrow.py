import logging
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from errors import Conflict, NotFound
from ledger import Ledger
from models import Escrow, Payment
from reputation import ReputationBook
from schemas import EscrowOut, FarmerPayment
from utils import compute_hash, now_ts

logger = logging.getLogger("tracechain.escrow")

GENESIS = "GENESIS"


def escrow_out(e: Escrow) -> EscrowOut:
    return EscrowOut(
        batchId=str(e.batch_id),
        status=e.status,
        amount=e.amount,
        farmerAddr=e.farmer_addr,
        buyerAddr=e.buyer_addr,
    )


class EscrowDesk:
    """Buyer escrow per batch. funded -> released, and released is final."""

    def __init__(self, ledger: Ledger, reputation: ReputationBook, asset_name: str = "ALGO"):
        self.ledger = ledger
        self.reputation = reputation
        self.asset_name = asset_name

    def get(self, db: Session, batch_id) -> Optional[Escrow]:
        batch = self.ledger.find_batch(db, batch_id)
        if batch is None:
            return None
        return db.get(Escrow, batch.id)

    def fund(self, db: Session, batch_id, buyer_addr: str, amount: int) -> Escrow:
        with self.ledger.locks.hold(self.ledger.lock_key(batch_id)):
            batch = self.ledger.get_batch(db, batch_id, fresh=True)
            existing = db.get(Escrow, batch.id, populate_existing=True)
            if existing is not None:
                raise Conflict(f"Escrow already {existing.status} for batch {batch.id}")
            escrow = Escrow(
                batch_id=batch.id,
                buyer_addr=buyer_addr,
                farmer_addr=batch.farmer_addr,
                amount=amount,
                status="funded",
                created_at=now_ts(),
                released_at=None,
            )
            db.add(escrow); db.commit(); db.refresh(escrow)
        logger.info("escrow funded for batch %s: %d %s from %s", batch.id, amount, self.asset_name, buyer_addr)
        return escrow

    def release(self, db: Session, batch_id) -> Payment:
        """Pay the escrowed amount out to the farmer and record the transfer."""
        with self.ledger.locks.hold(self.ledger.lock_key(batch_id)):
            batch = self.ledger.get_batch(db, batch_id, fresh=True)
            escrow = db.get(Escrow, batch.id, populate_existing=True)
            if escrow is None:
                raise NotFound(f"No escrow found for batch {batch.id}")
            if escrow.status == "released":
                raise Conflict(f"Escrow already released for batch {batch.id}")

            ts = now_ts()
            # ledger reference for an off-chain transfer, not a blockchain transaction id
            tx_id = compute_hash(GENESIS, {
                "batchId": escrow.batch_id,
                "from": escrow.buyer_addr,
                "to": escrow.farmer_addr,
                "amount": escrow.amount,
            }, ts)
            escrow.status = "released"
            escrow.released_at = ts
            payment = Payment(
                batch_id=escrow.batch_id,
                from_addr=escrow.buyer_addr,
                to_addr=escrow.farmer_addr,
                amount=escrow.amount,
                currency=self.asset_name,
                tx_id=tx_id,
                timestamp=ts,
            )
            db.add(payment); db.commit(); db.refresh(payment)

        self.reputation.apply_delta(db, payment.to_addr, payments=payment.amount)
        logger.info("released %d %s to farmer %s (tx %s)", payment.amount, payment.currency,
                    payment.to_addr, payment.tx_id[:12])
        return payment

    def farmer_payments(self, db: Session, farmer_addr: str) -> List[FarmerPayment]:
        rows = db.scalars(
            select(Payment).where(Payment.to_addr == farmer_addr)
            .order_by(Payment.timestamp.desc(), Payment.id.desc())
        ).all()
        return [
            FarmerPayment(batchId=str(p.batch_id), amount=p.amount, currency=p.currency,
                          txId=p.tx_id, timestamp=p.timestamp)
            for p in rows
        ]

    def total_payments(self, db: Session) -> int:
        return db.scalar(select(func.count()).select_from(Payment)) or 0
