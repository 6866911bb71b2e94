from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Literal, Union

from utils import parse_gps


class StrictBody(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# ---------- Ledger bodies ----------
class CreateBatch(StrictBody):
    cropType: str = Field(..., min_length=1, max_length=100)
    weight: float = Field(..., gt=0)
    farmGps: str = Field(..., min_length=1, max_length=64)
    farmingPractices: str = ""
    organicCertId: str = ""
    farmerAddr: str = Field(..., min_length=1, max_length=128)

    @field_validator("farmGps")
    @classmethod
    def gps_pair(cls, v: str) -> str:
        if v != "0|0" and parse_gps(v) is None:
            raise ValueError("farmGps must be a 'lat|lng' pair")
        return v


class LogCheckpoint(StrictBody):
    batchAsaId: str = Field(..., min_length=1)
    gpsLat: str = "0"
    gpsLng: str = "0"
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    handlerType: str = "unknown"
    notes: str = ""
    photoHash: str = ""
    timestamp: Optional[int] = Field(None, ge=0)


class InitiateHandoff(StrictBody):
    batchAsaId: str = Field(..., min_length=1)
    fromAddr: str = Field(..., min_length=1)
    toAddr: str = Field(..., min_length=1)
    handoffType: str = "transfer"
    handoffPhotoHashes: str = ""


class ConfirmHandoff(StrictBody):
    batchAsaId: str = Field(..., min_length=1)
    handoffIndex: int = Field(..., ge=1)
    confirmedAt: Optional[int] = Field(None, ge=0)


class FundEscrow(StrictBody):
    buyerAddr: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, description="amount in asset base units")
    batchId: Optional[str] = None


# ---------- Verification bodies ----------
class Evidence(StrictBody):
    """Caller-supplied evidence. Only these two kinds are recognised."""
    missingPhotos: Optional[List[Union[int, str]]] = None
    certificationMismatch: Optional[str] = None


class VerifyRequest(StrictBody):
    batchAsaId: str = Field(..., min_length=1)
    evidence: Optional[Evidence] = None
    verifierAddr: Optional[str] = None
    timestamp: Optional[int] = Field(None, ge=0)


# ---------- Responses ----------
class VerificationOut(BaseModel):
    batchAsaId: str
    result: Literal["VERIFIED", "FLAGGED"]
    confidence: int
    reason: str
    verifierAddr: str
    timestamp: int


class PaymentReceipt(BaseModel):
    amount: int
    assetId: Optional[int] = None
    txId: Optional[str] = None
    timestamp: int


class CheckpointOut(BaseModel):
    index: int
    gps: Optional[str] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    handlerType: Optional[str] = None
    notes: Optional[str] = None
    photoHash: Optional[str] = None
    timestamp: Optional[int] = None


class HandoffOut(BaseModel):
    index: int
    status: str
    fromAddr: Optional[str] = None
    toAddr: Optional[str] = None
    handoffType: Optional[str] = None
    photoHashes: Optional[str] = None
    confirmedAt: Optional[int] = None


class BatchDetails(BaseModel):
    batchId: str
    cropType: str
    weight: float
    farmGps: str
    farmingPractices: str
    organicCertId: str
    farmerAddr: str
    createdAt: int
    checkpointCount: int
    handoffCount: int
    verification: Optional[VerificationOut] = None
    checkpoints: List[CheckpointOut]
    handoffs: List[HandoffOut]


class CarbonScore(BaseModel):
    batchId: str
    score: int
    creditsEarned: float
    distance: int
    transportMethod: Literal["truck", "ship", "air"]


class EscrowOut(BaseModel):
    batchId: str
    status: Literal["funded", "released"]
    amount: int
    farmerAddr: str
    buyerAddr: Optional[str] = None


class FarmerBatch(BaseModel):
    batchId: str
    cropType: str
    weight: float
    createdAt: int


class FarmerPayment(BaseModel):
    batchId: str
    amount: int
    currency: str
    txId: Optional[str] = None
    timestamp: int


class FarmerReputationOut(BaseModel):
    farmerAddr: str
    totalBatches: int
    verifiedCount: int
    flaggedCount: int
    tier: Literal["bronze", "silver", "gold"]
    tierEmoji: str
    carbonCreditsTotal: float
    totalPaymentsReceived: int
    lastUpdated: int
    batches: List[FarmerBatch]
    payments: List[FarmerPayment]
