import itertools

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers tables on Base.metadata
from app import app, get_db
from config import PaymentSettings
from database import Base, make_engine
from payments import FacilitatorError
from schemas import CreateBatch, LogCheckpoint
from services import build_services
from utils import b64_json

PAY_TO = "PAYEEADDRESSTESTNET"
PAYER = "BUYERADDRESSTESTNET"
FARMER = "FARMERADDRESSTESTNET"
T0 = 1_700_000_000


class FakeFacilitator:
    def __init__(self):
        self.valid = True
        self.settles = True
        self.error_on = None
        self.calls = []
        self.closed = False
        self._tx = itertools.count(1)

    def verify(self, payload, requirements):
        self.calls.append("verify")
        if self.error_on == "verify":
            raise FacilitatorError("connection refused")
        if not self.valid:
            return {"isValid": False, "invalidReason": "insufficient_funds"}
        return {"isValid": True, "payer": PAYER}

    def settle(self, payload, requirements):
        self.calls.append("settle")
        if self.error_on == "settle":
            raise FacilitatorError("connection refused")
        if not self.settles:
            return {"success": False, "errorReason": "transaction_expired"}
        return {"success": True, "transaction": f"TX{next(self._tx)}", "payer": PAYER}

    def close(self):
        self.closed = True


@pytest.fixture
def settings():
    return PaymentSettings(pay_to=PAY_TO, facilitator_url="http://facilitator.test")


@pytest.fixture
def facilitator():
    return FakeFacilitator()


@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def services(settings, facilitator):
    return build_services(settings, facilitator=facilitator)


@pytest.fixture
def client(session_factory, services):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_proof(settings):
    """Build a PAYMENT-SIGNATURE value. Distinct nonces give distinct proofs."""
    def _make(nonce="1", **overrides):
        accepted = {
            "scheme": "exact",
            "network": settings.network,
            "amount": settings.amount,
            "asset": settings.asset_id,
            "payTo": settings.pay_to,
        }
        accepted.update(overrides)
        return b64_json({
            "x402Version": 2,
            "accepted": accepted,
            "payload": {"transaction": f"signed-txn-{nonce}"},
        })
    return _make


@pytest.fixture
def new_batch(db, services):
    def _create(farmer=FARMER, practices="", crop="Tomato"):
        return services.ledger.create_batch(db, CreateBatch(
            cropType=crop, weight=120.5, farmGps="13.7563|100.5018",
            farmingPractices=practices, farmerAddr=farmer,
        ))
    return _create


@pytest.fixture
def add_checkpoint(db, services):
    def _add(batch_id, lat, lng, ts, temperature=None):
        return services.ledger.append_checkpoint(db, batch_id, LogCheckpoint(
            batchAsaId=str(batch_id), gpsLat=str(lat), gpsLng=str(lng),
            temperature=temperature, handlerType="carrier", timestamp=ts,
        ))
    return _add
