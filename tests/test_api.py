from config import PaymentSettings
from conftest import FARMER, PAYER, T0
from services import build_services
from utils import decode_b64_json

BATCH = {
    "cropType": "Mango",
    "weight": 250,
    "farmGps": "13.7563|100.5018",
    "farmingPractices": "organic",
    "farmerAddr": FARMER,
}


def create_batch(client, **overrides):
    resp = client.post("/batch", json={**BATCH, **overrides})
    assert resp.status_code == 201, resp.text
    return resp.json()["batchId"]


def test_create_batch(client):
    resp = client.post("/batch", json=BATCH)
    assert resp.status_code == 201
    data = resp.json()
    assert data["message"] == f"Batch {data['batchId']} created successfully"
    assert data["qrCode"].startswith("data:image/png;base64,")

    details = client.get(f"/batch/{data['batchId']}").json()
    assert details["cropType"] == "Mango"
    assert details["checkpointCount"] == 0
    assert client.get(f"/batch/{data['batchId']}/journey").json() == details


def test_bad_bodies_are_400(client):
    resp = client.post("/batch", json={**BATCH, "weight": -1})
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"
    assert client.post("/batch", json={**BATCH, "colour": "red"}).status_code == 400
    assert client.post("/batch", json={**BATCH, "farmGps": "north"}).status_code == 400


def test_unknown_batch_is_404(client):
    resp = client.get("/batch/999")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Batch 999 not found", "code": "not_found"}
    assert client.get("/batch/999/qrcode").status_code == 404


def test_qrcode_png(client):
    batch_id = create_batch(client)
    resp = client.get(f"/batch/{batch_id}/qrcode")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert resp.content[:8] == b"\x89PNG\r\n\x1a\n"


def test_checkpoints_and_handoffs(client):
    batch_id = create_batch(client)
    resp = client.post("/checkpoint", json={
        "batchAsaId": batch_id, "gpsLat": "13.75", "gpsLng": "100.50",
        "temperature": 4.0, "handlerType": "farmer", "timestamp": T0,
    })
    assert resp.status_code == 201
    assert resp.json()["checkpointIndex"] == 1

    resp = client.post("/handoff/initiate", json={"batchAsaId": batch_id, "fromAddr": FARMER, "toAddr": "TRUCK"})
    assert resp.status_code == 201
    assert resp.json()["handoffIndex"] == 1

    resp = client.post("/handoff/confirm", json={"batchAsaId": batch_id, "handoffIndex": 1})
    assert resp.status_code == 200
    assert resp.json()["message"] == f"Handoff 1 confirmed for batch {batch_id}"

    assert client.post("/handoff/confirm", json={"batchAsaId": batch_id, "handoffIndex": 5}).status_code == 404
    assert client.post("/handoff/confirm", json={"batchAsaId": batch_id, "handoffIndex": 0}).status_code == 400
    assert client.post("/checkpoint", json={"batchAsaId": "404"}).status_code == 404

    details = client.get(f"/batch/{batch_id}").json()
    assert details["checkpointCount"] == 1
    assert details["handoffs"][0]["status"] == "confirmed"


def test_verify_requires_payment(client):
    batch_id = create_batch(client)
    resp = client.post("/verify", json={"batchAsaId": batch_id})
    assert resp.status_code == 402
    body = resp.json()
    assert body["code"] == "payment_required"
    assert body["accepts"][0]["payTo"]
    assert decode_b64_json(resp.headers["PAYMENT-REQUIRED"])["x402Version"] == 2
    assert client.get(f"/status/{batch_id}").status_code == 404


def test_get_verify_probe(client, make_proof):
    assert client.get("/verify").status_code == 402
    resp = client.get("/verify", headers={"PAYMENT-SIGNATURE": make_proof()})
    assert resp.status_code == 200
    assert "POST /verify" in resp.json()["message"]


def test_paid_verification(client, make_proof):
    batch_id = create_batch(client)
    resp = client.post("/verify", json={"batchAsaId": batch_id},
                       headers={"PAYMENT-SIGNATURE": make_proof()})
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["verification"]["result"] == "VERIFIED"
    assert data["verification"]["confidence"] == 85
    assert data["verification"]["verifierAddr"] == "SYSTEM"
    assert data["payment"]["amount"] == 1000
    assert data["payment"]["txId"] == "TX1"
    assert decode_b64_json(resp.headers["PAYMENT-RESPONSE"])["transaction"] == "TX1"

    status = client.get(f"/status/{batch_id}").json()
    assert status["verification"]["confidence"] == 85


def test_replayed_payment(client, make_proof, facilitator):
    batch_id = create_batch(client)
    proof = {"PAYMENT-SIGNATURE": make_proof()}
    assert client.post("/verify", json={"batchAsaId": batch_id}, headers=proof).status_code == 200
    resp = client.post("/verify", json={"batchAsaId": batch_id}, headers=proof)
    assert resp.status_code == 402
    assert resp.json()["code"] == "payment_replayed"
    assert facilitator.calls.count("settle") == 1
    assert client.get("/stats").json()["totalVerifications"] == 1


def test_settlement_failure_keeps_result(client, make_proof, facilitator):
    facilitator.settles = False
    batch_id = create_batch(client)
    resp = client.post("/verify", json={"batchAsaId": batch_id},
                       headers={"PAYMENT-SIGNATURE": make_proof()})
    assert resp.status_code == 402
    assert resp.json()["code"] == "settlement_failed"
    assert client.get(f"/status/{batch_id}").status_code == 200


def test_unknown_evidence_key_is_400(client, make_proof):
    resp = client.post("/verify", json={"batchAsaId": "1", "evidence": {"tampered": True}},
                       headers={"PAYMENT-SIGNATURE": make_proof()})
    assert resp.status_code == 400


def test_escrow_routes(client):
    batch_id = create_batch(client)
    assert client.get(f"/batch/{batch_id}/escrow").status_code == 404

    resp = client.post(f"/batch/{batch_id}/escrow/fund", json={"buyerAddr": PAYER, "amount": 3000})
    assert resp.status_code == 201
    assert resp.json() == {"batchId": batch_id, "status": "funded", "amount": 3000, "farmerAddr": FARMER}

    again = client.post(f"/batch/{batch_id}/escrow/fund", json={"buyerAddr": PAYER, "amount": 3000})
    assert again.status_code == 409
    mismatch = client.post(f"/batch/{batch_id}/escrow/fund",
                           json={"buyerAddr": PAYER, "amount": 1, "batchId": "42"})
    assert mismatch.status_code == 400

    resp = client.post(f"/batch/{batch_id}/escrow/release")
    assert resp.status_code == 200
    assert resp.json()["amount"] == 3000
    assert client.post(f"/batch/{batch_id}/escrow/release").status_code == 409
    assert client.get(f"/batch/{batch_id}/escrow").json()["status"] == "released"

    payments = client.get(f"/farmer/{FARMER}/payments").json()["payments"]
    assert payments[0]["amount"] == 3000


def test_farmer_views(client):
    assert client.get(f"/farmer/{FARMER}/reputation").status_code == 404
    batch_id = create_batch(client)
    rep = client.get(f"/farmer/{FARMER}/reputation").json()
    assert rep["totalBatches"] == 1
    assert rep["tier"] == "bronze"
    assert rep["tierEmoji"] == "bronze-medal"
    assert rep["batches"][0]["batchId"] == batch_id
    assert rep["payments"] == []
    batches = client.get(f"/farmer/{FARMER}/batches").json()
    assert batches["farmerAddr"] == FARMER
    assert len(batches["batches"]) == 1


def test_carbon_route(client):
    batch_id = create_batch(client)
    first = client.get(f"/batch/{batch_id}/carbon").json()
    assert first["transportMethod"] == "truck"
    assert first["score"] == 100
    assert client.get(f"/batch/{batch_id}/carbon").json() == first
    assert client.get("/batch/999/carbon").status_code == 404


def test_health_and_stats(client):
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["services"]["facilitator"] == "http://facilitator.test"
    create_batch(client)
    assert client.get("/stats").json() == {"totalBatches": 1, "totalVerifications": 0, "totalPayments": 0}


def test_unknown_route_shape(client):
    resp = client.get("/nowhere")
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


def test_missing_photo_indices_are_accepted(client, make_proof):
    batch_id = create_batch(client)
    resp = client.post("/verify", json={"batchAsaId": batch_id, "evidence": {"missingPhotos": [1, "2"]}},
                       headers={"PAYMENT-SIGNATURE": make_proof()})
    assert resp.status_code == 200, resp.text
    reason = resp.json()["verification"]["reason"]
    assert "[WARNING] photo_integrity: 2 checkpoint(s) missing photo hashes" in reason


def test_release_is_marked_off_chain(client):
    batch_id = create_batch(client)
    client.post(f"/batch/{batch_id}/escrow/fund", json={"buyerAddr": PAYER, "amount": 10})
    data = client.post(f"/batch/{batch_id}/escrow/release").json()
    assert data["onChain"] is False
    assert "no on-chain transaction" in data["message"]


def test_internal_errors_are_generic(client, facilitator, make_proof):
    client.app.state.services = build_services(
        PaymentSettings(pay_to="", facilitator_url="http://facilitator.test"), facilitator=facilitator)
    resp = client.post("/verify", json={"batchAsaId": "1"}, headers={"PAYMENT-SIGNATURE": make_proof()})
    assert resp.status_code == 500
    assert resp.json() == {"error": "internal server error", "code": "internal_error"}
