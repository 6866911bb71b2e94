from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, Float, String, Text, ForeignKey, UniqueConstraint
from database import Base


class Batch(Base):
    __tablename__ = "batches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    crop_type: Mapped[str] = mapped_column(String(100))
    weight: Mapped[float] = mapped_column(Float)
    farm_gps: Mapped[str] = mapped_column(String(64))
    farming_practices: Mapped[str] = mapped_column(Text, default="")
    organic_cert_id: Mapped[str] = mapped_column(String(128), default="")
    farmer_addr: Mapped[str] = mapped_column(String(128), index=True)
    created_at: Mapped[int] = mapped_column(Integer)
    checkpoint_count: Mapped[int] = mapped_column(Integer, default=0)
    handoff_count: Mapped[int] = mapped_column(Integer, default=0)
    checkpoints: Mapped[list["Checkpoint"]] = relationship(
        "Checkpoint", back_populates="batch", order_by="Checkpoint.index", cascade="all, delete-orphan")
    handoffs: Mapped[list["Handoff"]] = relationship(
        "Handoff", back_populates="batch", order_by="Handoff.index", cascade="all, delete-orphan")


class Checkpoint(Base):
    __tablename__ = "checkpoints"
    __table_args__ = (UniqueConstraint("batch_id", "index", name="uq_checkpoint_index"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(Integer, ForeignKey("batches.id"), index=True)
    index: Mapped[int] = mapped_column(Integer)
    gps: Mapped[str] = mapped_column(String(64))
    temperature: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    humidity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    handler_type: Mapped[str] = mapped_column(String(100))
    notes: Mapped[str] = mapped_column(Text, default="")
    photo_hash: Mapped[str] = mapped_column(String(128), default="")
    timestamp: Mapped[int] = mapped_column(Integer)
    batch: Mapped[Batch] = relationship("Batch", back_populates="checkpoints")


class Handoff(Base):
    __tablename__ = "handoffs"
    __table_args__ = (UniqueConstraint("batch_id", "index", name="uq_handoff_index"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(Integer, ForeignKey("batches.id"), index=True)
    index: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    from_addr: Mapped[str] = mapped_column(String(128))
    to_addr: Mapped[str] = mapped_column(String(128))
    handoff_type: Mapped[str] = mapped_column(String(50))
    photo_hashes: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[int] = mapped_column(Integer)
    confirmed_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    batch: Mapped[Batch] = relationship("Batch", back_populates="handoffs")


class Verification(Base):
    # keyed by the requested id, which may name a batch that does not exist
    __tablename__ = "verifications"
    batch_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    result: Mapped[str] = mapped_column(String(16))
    confidence: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(Text)
    verifier_addr: Mapped[str] = mapped_column(String(128))
    timestamp: Mapped[int] = mapped_column(Integer)


class CarbonCredit(Base):
    __tablename__ = "carbon_credits"
    batch_id: Mapped[int] = mapped_column(Integer, ForeignKey("batches.id"), primary_key=True)
    farmer_addr: Mapped[str] = mapped_column(String(128), index=True)
    score: Mapped[int] = mapped_column(Integer)
    credits_earned: Mapped[float] = mapped_column(Float)
    distance: Mapped[int] = mapped_column(Integer)
    transport_method: Mapped[str] = mapped_column(String(16), default="truck")
    calculated_at: Mapped[int] = mapped_column(Integer)


class FarmerReputation(Base):
    __tablename__ = "farmer_reputation"
    farmer_addr: Mapped[str] = mapped_column(String(128), primary_key=True)
    total_batches: Mapped[int] = mapped_column(Integer, default=0)
    verified_count: Mapped[int] = mapped_column(Integer, default=0)
    flagged_count: Mapped[int] = mapped_column(Integer, default=0)
    tier: Mapped[str] = mapped_column(String(16), default="bronze")
    carbon_credits_total: Mapped[float] = mapped_column(Float, default=0.0)
    total_payments_received: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[int] = mapped_column(Integer)


class Escrow(Base):
    __tablename__ = "escrows"
    batch_id: Mapped[int] = mapped_column(Integer, ForeignKey("batches.id"), primary_key=True)
    buyer_addr: Mapped[str] = mapped_column(String(128))
    farmer_addr: Mapped[str] = mapped_column(String(128))
    amount: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default="funded")
    created_at: Mapped[int] = mapped_column(Integer)
    released_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(Integer, ForeignKey("batches.id"), index=True)
    from_addr: Mapped[str] = mapped_column(String(128))
    to_addr: Mapped[str] = mapped_column(String(128), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(32))
    tx_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    timestamp: Mapped[int] = mapped_column(Integer)


class PaymentProof(Base):
    __tablename__ = "payment_proofs"
    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    payer: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    resource: Mapped[str] = mapped_column(String(255))
    tx_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)
    settled_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
