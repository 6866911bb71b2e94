import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Depends, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from carbon import carbon_out
from config import BASE_URL, CORS_ORIGINS, FRONTEND_URL, LOG_LEVEL, payment_settings_from_env
from database import Base, engine, SessionLocal
from errors import AppError, NotFound, ValidationError
from escrow import escrow_out
from reputation import TIER_EMOJI
from schemas import (
    CreateBatch, LogCheckpoint, InitiateHandoff, ConfirmHandoff, FundEscrow, VerifyRequest,
    FarmerReputationOut,
)
from services import Services, build_services
from utils import qr_data_url, qr_png

logger = logging.getLogger("tracechain.app")

VERIFY_RESOURCE = f"{BASE_URL}/verify"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    Base.metadata.create_all(bind=engine)
    app.state.services = build_services(payment_settings_from_env())
    logger.info("tracechain started (facilitator %s)", app.state.services.settings.facilitator_url)
    try:
        yield
    finally:
        app.state.services.close()


app = FastAPI(title="Smart Farm TraceChain", version="0.2.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["PAYMENT-REQUIRED", "PAYMENT-RESPONSE"],
)


# ---------- Dependencies ----------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_services(request: Request) -> Services:
    return request.app.state.services


# ---------- Errors ----------
@app.exception_handler(AppError)
def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code,
                            content={"error": "internal server error", "code": exc.code})
    return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=exc.headers())


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"invalid request: {where}: {first.get('msg')}" if where else f"invalid request: {first.get('msg')}"
    else:
        message = "invalid request"
    return JSONResponse(status_code=400, content={"error": message, "code": ValidationError.code})


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = NotFound.code if exc.status_code == 404 else "http_error"
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail), "code": code},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(SQLAlchemyError)
def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("storage error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "internal server error", "code": "internal_error"})


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "internal server error", "code": "internal_error"})


# ---------- Verification (paid) ----------
@app.get("/verify")
def verify_probe(request: Request, services: Services = Depends(get_services)):
    services.payments.inspect(request.headers, VERIFY_RESOURCE)
    return {"message": "payment already verified; use POST /verify"}


@app.post("/verify")
def verify_batch(body: VerifyRequest, request: Request, response: Response,
                 db: Session = Depends(get_db), services: Services = Depends(get_services)):
    def run():
        return services.engine.verify(db, body.batchAsaId, evidence=body.evidence,
                                      verifier_addr=body.verifierAddr, timestamp=body.timestamp)

    verification, receipt, headers = services.payments.execute(db, request.headers, VERIFY_RESOURCE, run)
    for name, value in headers.items():
        response.headers[name] = value
    return {"verification": verification, "payment": receipt}


@app.get("/status/{batch_asa_id}")
def verification_status(batch_asa_id: str, db: Session = Depends(get_db),
                        services: Services = Depends(get_services)):
    record = services.engine.get_record(db, batch_asa_id)
    if record is None:
        raise NotFound(f"No verification found for batch {batch_asa_id}")
    return {"verification": record}


# ---------- Ledger ----------
@app.post("/batch", status_code=201)
def create_batch(body: CreateBatch, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    batch = services.ledger.create_batch(db, body)
    return {
        "batchId": str(batch.id),
        "message": f"Batch {batch.id} created successfully",
        "qrCode": qr_data_url(f"{FRONTEND_URL}/product/{batch.id}"),
    }


@app.get("/batch/{batch_id}")
def get_batch(batch_id: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return services.ledger.batch_details(db, batch_id)


@app.get("/batch/{batch_id}/journey")
def batch_journey(batch_id: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return services.ledger.batch_details(db, batch_id)


@app.get("/batch/{batch_id}/qrcode")
def batch_qrcode(batch_id: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    batch = services.ledger.get_batch(db, batch_id)
    return Response(content=qr_png(f"{FRONTEND_URL}/product/{batch.id}"), media_type="image/png")


@app.post("/checkpoint", status_code=201)
def log_checkpoint(body: LogCheckpoint, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    index = services.ledger.append_checkpoint(db, body.batchAsaId, body)
    return {
        "batchAsaId": body.batchAsaId,
        "checkpointIndex": index,
        "message": f"Checkpoint {index} logged for batch {body.batchAsaId}",
    }


@app.post("/handoff/initiate", status_code=201)
def initiate_handoff(body: InitiateHandoff, db: Session = Depends(get_db),
                     services: Services = Depends(get_services)):
    index = services.ledger.initiate_handoff(db, body.batchAsaId, body)
    return {
        "batchAsaId": body.batchAsaId,
        "handoffIndex": index,
        "message": f"Handoff {index} initiated from {body.fromAddr} to {body.toAddr}",
    }


@app.post("/handoff/confirm")
def confirm_handoff(body: ConfirmHandoff, db: Session = Depends(get_db),
                    services: Services = Depends(get_services)):
    services.ledger.confirm_handoff(db, body.batchAsaId, body.handoffIndex, body.confirmedAt)
    return {
        "batchAsaId": body.batchAsaId,
        "handoffIndex": body.handoffIndex,
        "message": f"Handoff {body.handoffIndex} confirmed for batch {body.batchAsaId}",
    }


# ---------- Escrow ----------
@app.post("/batch/{batch_id}/escrow/fund", status_code=201)
def fund_escrow(batch_id: str, body: FundEscrow, db: Session = Depends(get_db),
                services: Services = Depends(get_services)):
    if body.batchId is not None and body.batchId != batch_id:
        raise ValidationError("batchId must match URL param")
    escrow = services.escrow.fund(db, batch_id, body.buyerAddr, body.amount)
    return {
        "batchId": str(escrow.batch_id),
        "status": escrow.status,
        "amount": escrow.amount,
        "farmerAddr": escrow.farmer_addr,
    }


@app.get("/batch/{batch_id}/escrow")
def get_escrow(batch_id: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    escrow = services.escrow.get(db, batch_id)
    if escrow is None:
        raise NotFound(f"No escrow found for batch {batch_id}")
    return escrow_out(escrow)


@app.post("/batch/{batch_id}/escrow/release")
def release_escrow(batch_id: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    payment = services.escrow.release(db, batch_id)
    return {
        "batchId": str(payment.batch_id),
        "amount": payment.amount,
        "farmerAddr": payment.to_addr,
        "txId": payment.tx_id,
        "onChain": False,
        "message": f"Payment released to farmer for batch {payment.batch_id} (ledger transfer, no on-chain transaction)",
    }


# ---------- Carbon / reputation ----------
@app.get("/batch/{batch_id}/carbon")
def batch_carbon(batch_id: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return carbon_out(services.carbon.get_or_calculate(db, batch_id))


@app.get("/farmer/{farmer_addr}/reputation", response_model=FarmerReputationOut)
def farmer_reputation(farmer_addr: str, db: Session = Depends(get_db),
                      services: Services = Depends(get_services)):
    rep = services.reputation.get(db, farmer_addr)
    if rep is None:
        raise NotFound(f"No reputation found for {farmer_addr}")
    return FarmerReputationOut(
        farmerAddr=rep.farmer_addr,
        totalBatches=rep.total_batches,
        verifiedCount=rep.verified_count,
        flaggedCount=rep.flagged_count,
        tier=rep.tier,
        tierEmoji=TIER_EMOJI[rep.tier],
        carbonCreditsTotal=rep.carbon_credits_total,
        totalPaymentsReceived=rep.total_payments_received,
        lastUpdated=rep.last_updated,
        batches=services.ledger.farmer_batches(db, farmer_addr),
        payments=services.escrow.farmer_payments(db, farmer_addr),
    )


@app.get("/farmer/{farmer_addr}/payments")
def farmer_payments(farmer_addr: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return {"farmerAddr": farmer_addr, "payments": services.escrow.farmer_payments(db, farmer_addr)}


@app.get("/farmer/{farmer_addr}/batches")
def farmer_batches(farmer_addr: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return {"farmerAddr": farmer_addr, "batches": services.ledger.farmer_batches(db, farmer_addr)}


# ---------- Ops ----------
@app.get("/health")
def health(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "uptime": services.uptime(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {"facilitator": services.settings.facilitator_url},
    }


@app.get("/stats")
def stats(db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return {
        "totalBatches": services.ledger.total_batches(db),
        "totalVerifications": services.engine.total_verifications(db),
        "totalPayments": services.escrow.total_payments(db),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=8000)
