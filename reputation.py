import logging
from typing import Optional

from sqlalchemy.orm import Session

from locks import KeyedLocks
from models import FarmerReputation
from utils import now_ts

logger = logging.getLogger("tracechain.reputation")

TIER_EMOJI = {"gold": "gold-medal", "silver": "silver-medal", "bronze": "bronze-medal"}


def tier_for(verified_count: int) -> str:
    if verified_count >= 51:
        return "gold"
    if verified_count >= 11:
        return "silver"
    return "bronze"


class ReputationBook:
    """Farmer aggregates. ``apply_delta`` is the only write path."""

    def __init__(self, farmer_locks: Optional[KeyedLocks] = None):
        self.locks = farmer_locks or KeyedLocks("farmer")

    def get(self, db: Session, farmer_addr: str) -> Optional[FarmerReputation]:
        return db.get(FarmerReputation, farmer_addr)

    def apply_delta(
        self,
        db: Session,
        farmer_addr: str,
        *,
        batches: int = 0,
        verified: int = 0,
        flagged: int = 0,
        carbon_credits: float = 0.0,
        payments: int = 0,
    ) -> FarmerReputation:
        with self.locks.hold(farmer_addr):
            rep = db.get(FarmerReputation, farmer_addr, populate_existing=True)
            if rep is None:
                rep = FarmerReputation(
                    farmer_addr=farmer_addr,
                    total_batches=0,
                    verified_count=0,
                    flagged_count=0,
                    tier="bronze",
                    carbon_credits_total=0.0,
                    total_payments_received=0,
                    last_updated=now_ts(),
                )
                db.add(rep)
            rep.total_batches += batches
            rep.verified_count += verified
            rep.flagged_count += flagged
            rep.carbon_credits_total = round(rep.carbon_credits_total + carbon_credits, 2)
            rep.total_payments_received += payments
            rep.tier = tier_for(rep.verified_count)
            rep.last_updated = now_ts()
            db.commit()
            db.refresh(rep)
        logger.debug("reputation %s -> %s verified=%d flagged=%d", farmer_addr, rep.tier,
                     rep.verified_count, rep.flagged_count)
        return rep
