"""
Batch ledger: batches, their checkpoints and their custody handoffs.

Checkpoints and handoffs are append-only. Each gets the next 1-based index
for its batch, assigned under the batch lock so concurrent appends cannot
collide.
"""
import logging
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from errors import NotFound
from locks import KeyedLocks
from models import Batch, Checkpoint, Handoff, Verification
from reputation import ReputationBook
from schemas import (
    CreateBatch, LogCheckpoint, InitiateHandoff,
    BatchDetails, CheckpointOut, HandoffOut, FarmerBatch, VerificationOut,
)
from utils import now_ts

logger = logging.getLogger("tracechain.ledger")


def parse_batch_id(batch_id) -> Optional[int]:
    """Batch ids are positive integers. Anything else names no batch."""
    if isinstance(batch_id, int):
        return batch_id if batch_id > 0 else None
    s = str(batch_id).strip()
    if not s.isdigit():
        return None
    value = int(s)
    return value if value > 0 else None


def checkpoint_out(cp: Checkpoint) -> CheckpointOut:
    return CheckpointOut(
        index=cp.index,
        gps=cp.gps,
        temperature=cp.temperature,
        humidity=cp.humidity,
        handlerType=cp.handler_type,
        notes=cp.notes,
        photoHash=cp.photo_hash,
        timestamp=cp.timestamp,
    )


def handoff_out(h: Handoff) -> HandoffOut:
    return HandoffOut(
        index=h.index,
        status=h.status,
        fromAddr=h.from_addr,
        toAddr=h.to_addr,
        handoffType=h.handoff_type,
        photoHashes=h.photo_hashes,
        confirmedAt=h.confirmed_at,
    )


def verification_out(v: Verification) -> VerificationOut:
    return VerificationOut(
        batchAsaId=v.batch_id,
        result=v.result,
        confidence=v.confidence,
        reason=v.reason,
        verifierAddr=v.verifier_addr,
        timestamp=v.timestamp,
    )


class Ledger:
    def __init__(self, reputation: ReputationBook, batch_locks: Optional[KeyedLocks] = None):
        self.reputation = reputation
        self.locks = batch_locks or KeyedLocks("batch")

    @staticmethod
    def lock_key(batch_id) -> str:
        key = parse_batch_id(batch_id)
        return str(key) if key is not None else str(batch_id).strip()

    # ---------- Reads ----------
    def find_batch(self, db: Session, batch_id, fresh: bool = False) -> Optional[Batch]:
        key = parse_batch_id(batch_id)
        if key is None:
            return None
        return db.get(Batch, key, populate_existing=fresh)

    def get_batch(self, db: Session, batch_id, fresh: bool = False) -> Batch:
        batch = self.find_batch(db, batch_id, fresh=fresh)
        if batch is None:
            raise NotFound(f"Batch {batch_id} not found")
        return batch

    def has_batch(self, db: Session, batch_id) -> bool:
        return self.find_batch(db, batch_id) is not None

    def get_checkpoints(self, db: Session, batch_id) -> List[Checkpoint]:
        key = parse_batch_id(batch_id)
        if key is None:
            return []
        return list(db.scalars(
            select(Checkpoint).where(Checkpoint.batch_id == key).order_by(Checkpoint.index.asc())
        ).all())

    def get_handoffs(self, db: Session, batch_id) -> List[Handoff]:
        key = parse_batch_id(batch_id)
        if key is None:
            return []
        return list(db.scalars(
            select(Handoff).where(Handoff.batch_id == key).order_by(Handoff.index.asc())
        ).all())

    def batch_details(self, db: Session, batch_id) -> BatchDetails:
        batch = self.get_batch(db, batch_id)
        verification = db.get(Verification, str(batch.id))
        return BatchDetails(
            batchId=str(batch.id),
            cropType=batch.crop_type,
            weight=batch.weight,
            farmGps=batch.farm_gps,
            farmingPractices=batch.farming_practices,
            organicCertId=batch.organic_cert_id,
            farmerAddr=batch.farmer_addr,
            createdAt=batch.created_at,
            checkpointCount=batch.checkpoint_count,
            handoffCount=batch.handoff_count,
            verification=verification_out(verification) if verification else None,
            checkpoints=[checkpoint_out(cp) for cp in self.get_checkpoints(db, batch.id)],
            handoffs=[handoff_out(h) for h in self.get_handoffs(db, batch.id)],
        )

    def farmer_batches(self, db: Session, farmer_addr: str) -> List[FarmerBatch]:
        rows = db.scalars(
            select(Batch).where(Batch.farmer_addr == farmer_addr).order_by(Batch.created_at.desc(), Batch.id.desc())
        ).all()
        return [
            FarmerBatch(batchId=str(b.id), cropType=b.crop_type, weight=b.weight, createdAt=b.created_at)
            for b in rows
        ]

    def total_batches(self, db: Session) -> int:
        return db.scalar(select(func.count()).select_from(Batch)) or 0

    # ---------- Writes ----------
    def create_batch(self, db: Session, body: CreateBatch) -> Batch:
        batch = Batch(
            crop_type=body.cropType,
            weight=body.weight,
            farm_gps=body.farmGps,
            farming_practices=body.farmingPractices,
            organic_cert_id=body.organicCertId,
            farmer_addr=body.farmerAddr,
            created_at=now_ts(),
            checkpoint_count=0,
            handoff_count=0,
        )
        db.add(batch); db.commit(); db.refresh(batch)
        self.reputation.apply_delta(db, batch.farmer_addr, batches=1)
        logger.info("batch %s created for farmer %s", batch.id, batch.farmer_addr)
        return batch

    def append_checkpoint(self, db: Session, batch_id, body: LogCheckpoint) -> int:
        with self.locks.hold(self.lock_key(batch_id)):
            batch = self.get_batch(db, batch_id, fresh=True)
            index = batch.checkpoint_count + 1
            cp = Checkpoint(
                batch_id=batch.id,
                index=index,
                gps=f"{body.gpsLat}|{body.gpsLng}",
                temperature=body.temperature,
                humidity=body.humidity,
                handler_type=body.handlerType,
                notes=body.notes,
                photo_hash=body.photoHash,
                timestamp=body.timestamp if body.timestamp is not None else now_ts(),
            )
            batch.checkpoint_count = index
            db.add(cp); db.commit()
        logger.info("checkpoint %d logged for batch %s", index, batch_id)
        return index

    def initiate_handoff(self, db: Session, batch_id, body: InitiateHandoff) -> int:
        with self.locks.hold(self.lock_key(batch_id)):
            batch = self.get_batch(db, batch_id, fresh=True)
            index = batch.handoff_count + 1
            h = Handoff(
                batch_id=batch.id,
                index=index,
                status="pending",
                from_addr=body.fromAddr,
                to_addr=body.toAddr,
                handoff_type=body.handoffType,
                photo_hashes=body.handoffPhotoHashes,
                created_at=now_ts(),
                confirmed_at=None,
            )
            batch.handoff_count = index
            db.add(h); db.commit()
        logger.info("handoff %d initiated for batch %s (%s -> %s)", index, batch_id, body.fromAddr, body.toAddr)
        return index

    def confirm_handoff(self, db: Session, batch_id, index: int, confirmed_at: Optional[int] = None) -> Handoff:
        """Confirm a pending handoff. Confirming twice is a no-op."""
        with self.locks.hold(self.lock_key(batch_id)):
            batch = self.get_batch(db, batch_id, fresh=True)
            h = db.scalar(
                select(Handoff)
                .where(Handoff.batch_id == batch.id, Handoff.index == index)
                .execution_options(populate_existing=True)
            )
            if h is None:
                raise NotFound(f"Handoff {index} not found for batch {batch_id}")
            if h.status == "confirmed":
                logger.info("handoff %d of batch %s already confirmed", index, batch_id)
                return h
            h.status = "confirmed"
            h.confirmed_at = confirmed_at if confirmed_at is not None else now_ts()
            db.commit(); db.refresh(h)
        logger.info("handoff %d confirmed for batch %s", index, batch_id)
        return h
