"""
Rule-based anomaly detection for produce batches.

``VerificationEngine.verify`` reads a batch's checkpoints and handoffs from
the ledger, runs a fixed sequence of checks, and turns the resulting flags
into a confidence score, a VERIFIED/FLAGGED result and a reason string.
Checks run in this order:

1. batch_existence     unknown batch                         critical -50
2. speed_anomaly       consecutive checkpoints > 120 km/h    critical -30 each
3. temperature_breach  checkpoint above 8 C                  warning  -20 each
4. time_gap            consecutive checkpoints > 48 h apart  warning  -15 each
5. route_consistency   segment > 2000 km                     warning  -12 each
                       whole route > 5000 km                 warning  -10 once
6. handoff_unconfirmed any pending handoff                   warning  -10 once
7. photo_integrity     evidence.missingPhotos supplied       warning  -10
   certification_mismatch  evidence.certificationMismatch    critical -40
8. no_checkpoints      batch exists but has no checkpoints   warning  -15

Confidence starts at 100, loses every deduction and never drops below 10.
Any critical flag, or a confidence under 50, makes the result FLAGGED. The
reason joins ``[SEVERITY] check: message`` entries with ``"; "`` in check
order. Clients parse the severity tags, so the format must not change.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from carbon import CarbonScorer
from errors import InternalError
from ledger import Ledger, verification_out
from models import Checkpoint, Handoff, Verification
from reputation import ReputationBook
from schemas import Evidence, VerificationOut
from utils import gps_distance_km, now_ts

logger = logging.getLogger("tracechain.verification")

MAX_SPEED_KMH = 120
MAX_COLD_CHAIN_TEMP_C = 8
MAX_TIME_GAP_HOURS = 48
MIN_ELAPSED_HOURS = 0.001
MAX_SEGMENT_KM = 2000
MAX_ROUTE_KM = 5000
CONFIDENCE_START = 100
CONFIDENCE_FLOOR = 10
FLAG_BELOW = 50
DEFAULT_VERIFIER = "SYSTEM"
ALL_PASSED = "All checks passed - no anomalies detected"

CRITICAL = "critical"
WARNING = "warning"


@dataclass(frozen=True)
class Flag:
    check: str
    message: str
    severity: str
    deduction: int

    def render(self) -> str:
        return f"[{self.severity.upper()}] {self.check}: {self.message}"


@dataclass(frozen=True)
class Assessment:
    result: str
    confidence: int
    reason: str
    flags: List[Flag]


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def _elapsed_hours(prev: Checkpoint, curr: Checkpoint) -> Optional[float]:
    if not prev.timestamp or not curr.timestamp:
        return None
    return abs(curr.timestamp - prev.timestamp) / 3600


def check_speed(checkpoints: List[Checkpoint], flags: List[Flag]) -> None:
    for prev, curr in zip(checkpoints, checkpoints[1:]):
        hours = _elapsed_hours(prev, curr)
        if hours is None or hours < MIN_ELAPSED_HOURS:
            continue
        dist = gps_distance_km(prev.gps, curr.gps)
        if dist is None:
            continue
        speed = dist / hours
        if speed > MAX_SPEED_KMH:
            flags.append(Flag(
                "speed_anomaly",
                f"Checkpoint {prev.index}->{curr.index}: {speed:.1f} km/h exceeds {MAX_SPEED_KMH} km/h limit",
                CRITICAL, 30,
            ))


def check_temperature(checkpoints: List[Checkpoint], flags: List[Flag]) -> None:
    for cp in checkpoints:
        if cp.temperature is None:
            continue
        if cp.temperature > MAX_COLD_CHAIN_TEMP_C:
            flags.append(Flag(
                "temperature_breach",
                f"Checkpoint {cp.index}: {_number(cp.temperature)}°C exceeds cold chain limit of {MAX_COLD_CHAIN_TEMP_C}°C",
                WARNING, 20,
            ))


def check_time_gaps(checkpoints: List[Checkpoint], flags: List[Flag]) -> None:
    for prev, curr in zip(checkpoints, checkpoints[1:]):
        hours = _elapsed_hours(prev, curr)
        if hours is not None and hours > MAX_TIME_GAP_HOURS:
            flags.append(Flag(
                "time_gap",
                f"Checkpoint {prev.index}->{curr.index}: {hours:.1f} hour gap exceeds {MAX_TIME_GAP_HOURS}h limit",
                WARNING, 15,
            ))


def check_route(checkpoints: List[Checkpoint], flags: List[Flag]) -> None:
    total = 0.0
    for prev, curr in zip(checkpoints, checkpoints[1:]):
        dist = gps_distance_km(prev.gps, curr.gps)
        if dist is None:
            continue
        if dist > MAX_SEGMENT_KM:
            flags.append(Flag(
                "route_consistency",
                f"Checkpoint {prev.index}->{curr.index}: segment distance {dist:.0f}km exceeds realistic limit",
                WARNING, 12,
            ))
        total += dist
    if total > MAX_ROUTE_KM:
        flags.append(Flag(
            "route_consistency",
            f"Total route distance {total:.0f}km is unrealistic for farm supply chain (max {MAX_ROUTE_KM}km)",
            WARNING, 10,
        ))


def check_handoffs(handoffs: List[Handoff], flags: List[Flag]) -> None:
    pending = [h for h in handoffs if h.status == "pending"]
    if pending:
        flags.append(Flag(
            "handoff_unconfirmed",
            f"{len(pending)} handoff(s) still pending confirmation",
            WARNING, 10,
        ))


def check_evidence(evidence: Optional[Evidence], flags: List[Flag]) -> None:
    if evidence is None:
        return
    if evidence.missingPhotos is not None:
        flags.append(Flag(
            "photo_integrity",
            f"{len(evidence.missingPhotos)} checkpoint(s) missing photo hashes",
            WARNING, 10,
        ))
    if evidence.certificationMismatch:
        flags.append(Flag(
            "certification_mismatch",
            f"Organic certification mismatch: {evidence.certificationMismatch}",
            CRITICAL, 40,
        ))


def assess(
    batch_id: str,
    exists: bool,
    checkpoints: List[Checkpoint],
    handoffs: List[Handoff],
    evidence: Optional[Evidence] = None,
) -> Assessment:
    """Run every check against already-loaded ledger data. Pure function."""
    flags: List[Flag] = []
    if not exists:
        flags.append(Flag("batch_existence", f"Batch {batch_id} not found in ledger", CRITICAL, 50))
    if checkpoints:
        check_speed(checkpoints, flags)
        check_temperature(checkpoints, flags)
        check_time_gaps(checkpoints, flags)
        check_route(checkpoints, flags)
    check_handoffs(handoffs, flags)
    check_evidence(evidence, flags)
    if exists and not checkpoints:
        flags.append(Flag("no_checkpoints", "no checkpoints recorded for this batch", WARNING, 15))

    confidence = max(CONFIDENCE_START - sum(f.deduction for f in flags), CONFIDENCE_FLOOR)
    critical = any(f.severity == CRITICAL for f in flags)
    result = "FLAGGED" if critical or confidence < FLAG_BELOW else "VERIFIED"
    reason = "; ".join(f.render() for f in flags) if flags else ALL_PASSED
    return Assessment(result=result, confidence=confidence, reason=reason, flags=flags)


class VerificationEngine:
    def __init__(self, ledger: Ledger, reputation: ReputationBook, carbon: CarbonScorer):
        self.ledger = ledger
        self.reputation = reputation
        self.carbon = carbon

    def verify(
        self,
        db: Session,
        batch_id: str,
        evidence: Optional[Evidence] = None,
        verifier_addr: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> VerificationOut:
        """Score a batch and persist the record before returning it.

        Ledger and storage errors propagate. A failed carbon recompute is
        logged and ignored.
        """
        batch_id = str(batch_id).strip()
        verifier_addr = verifier_addr or DEFAULT_VERIFIER
        timestamp = timestamp if timestamp is not None else now_ts()

        key = self.ledger.lock_key(batch_id)
        with self.ledger.locks.hold(key):
            try:
                batch = self.ledger.find_batch(db, batch_id, fresh=True)
                checkpoints = self.ledger.get_checkpoints(db, batch_id) if batch else []
                handoffs = self.ledger.get_handoffs(db, batch_id) if batch else []
                outcome = assess(batch_id, batch is not None, checkpoints, handoffs, evidence)

                record = db.get(Verification, key, populate_existing=True)
                first_write = record is None
                if first_write:
                    record = Verification(batch_id=key)
                    db.add(record)
                record.result = outcome.result
                record.confidence = outcome.confidence
                record.reason = outcome.reason
                record.verifier_addr = verifier_addr
                record.timestamp = timestamp
                db.commit(); db.refresh(record)
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("could not verify batch %s", key)
                raise InternalError(f"Verification of batch {key} could not be stored") from exc
            farmer_addr = batch.farmer_addr if batch is not None else None

        logger.info("batch %s %s (confidence %d, %d flag(s), %s)", key, outcome.result,
                    outcome.confidence, len(outcome.flags), "new" if first_write else "overwritten")

        if farmer_addr is not None:
            if outcome.result == "VERIFIED":
                self.reputation.apply_delta(db, farmer_addr, verified=1)
            else:
                self.reputation.apply_delta(db, farmer_addr, flagged=1)
            try:
                self.carbon.calculate(db, key)
            except Exception:
                db.rollback()
                logger.warning("carbon score recompute failed for batch %s", key, exc_info=True)

        return verification_out(record)

    def get_record(self, db: Session, batch_id: str) -> Optional[VerificationOut]:
        key = self.ledger.lock_key(batch_id)
        record = db.get(Verification, key)
        return verification_out(record) if record is not None else None

    def total_verifications(self, db: Session) -> int:
        # records are overwritten, never deleted, so the row count is the first-write count
        return db.query(Verification).count()
