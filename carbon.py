import logging
import math
import random
from typing import List, Optional

from sqlalchemy.orm import Session

from ledger import Ledger
from models import Batch, CarbonCredit, Checkpoint
from reputation import ReputationBook
from schemas import CarbonScore
from utils import gps_distance_km, now_ts

logger = logging.getLogger("tracechain.carbon")

FALLBACK_DISTANCE_KM = (50.0, 250.0)
TRANSPORT_PENALTY = {"truck": 0, "ship": 10, "air": 30}
ORGANIC_BONUS = 20
CREDITS_PER_POINT = 0.05


def route_distance_km(checkpoints: List[Checkpoint]) -> float:
    total = 0.0
    for prev, curr in zip(checkpoints, checkpoints[1:]):
        d = gps_distance_km(prev.gps, curr.gps)
        if d is not None:
            total += d
    return total


def fallback_distance_km(batch_id: int) -> float:
    # seeded per batch so repeated scoring of a GPS-less batch is reproducible
    rng = random.Random(f"carbon-fallback:{batch_id}")
    return rng.uniform(*FALLBACK_DISTANCE_KM)


def transport_for(distance_km: float) -> str:
    if distance_km > 5000:
        return "air"
    if distance_km > 1000:
        return "ship"
    return "truck"


def carbon_score(distance_km: float, transport: str, farming_practices: str) -> int:
    distance_penalty = min(distance_km / 50, 60)
    bonus = ORGANIC_BONUS if "organic" in (farming_practices or "").lower() else 0
    raw = math.floor(100 - distance_penalty - TRANSPORT_PENALTY[transport] + bonus + 0.5)
    return max(0, min(100, raw))


def carbon_out(credit: CarbonCredit) -> CarbonScore:
    return CarbonScore(
        batchId=str(credit.batch_id),
        score=credit.score,
        creditsEarned=credit.credits_earned,
        distance=credit.distance,
        transportMethod=credit.transport_method,
    )


class CarbonScorer:
    def __init__(self, ledger: Ledger, reputation: ReputationBook):
        self.ledger = ledger
        self.reputation = reputation

    def get(self, db: Session, batch_id) -> Optional[CarbonCredit]:
        batch = self.ledger.find_batch(db, batch_id)
        if batch is None:
            return None
        return db.get(CarbonCredit, batch.id)

    def calculate(self, db: Session, batch_id) -> CarbonCredit:
        """Recompute and overwrite the carbon score of a batch."""
        with self.ledger.locks.hold(self.ledger.lock_key(batch_id)):
            batch: Batch = self.ledger.get_batch(db, batch_id, fresh=True)
            distance = route_distance_km(self.ledger.get_checkpoints(db, batch.id))
            if distance == 0:
                distance = fallback_distance_km(batch.id)
            transport = transport_for(distance)
            score = carbon_score(distance, transport, batch.farming_practices)
            credits = round(score * CREDITS_PER_POINT, 2)

            credit = db.get(CarbonCredit, batch.id, populate_existing=True)
            previous = credit.credits_earned if credit is not None else 0.0
            if credit is None:
                credit = CarbonCredit(batch_id=batch.id)
                db.add(credit)
            credit.farmer_addr = batch.farmer_addr
            credit.score = score
            credit.credits_earned = credits
            credit.distance = round(distance)
            credit.transport_method = transport
            credit.calculated_at = now_ts()
            db.commit(); db.refresh(credit)
            farmer_addr = batch.farmer_addr

        delta = round(credits - previous, 2)
        if delta:
            self.reputation.apply_delta(db, farmer_addr, carbon_credits=delta)
        logger.info("carbon score for batch %s: %d (%s, %d km)", batch_id, score, transport, credit.distance)
        return credit

    def get_or_calculate(self, db: Session, batch_id) -> CarbonCredit:
        existing = self.get(db, batch_id)
        return existing if existing is not None else self.calculate(db, batch_id)
