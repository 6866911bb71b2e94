"""
x402 pay-per-request gateway.

A paid request carries a base64 JSON proof in ``PAYMENT-SIGNATURE`` (or the
older ``X-PAYMENT``). ``PaymentGateway.execute`` walks it through

    accept (local checks, replay check, claim, facilitator /verify)
    -> run the operation
    -> settle (facilitator /settle) -> receipt + PAYMENT-RESPONSE header

A proof is claimed in ``payment_proofs`` before the operation runs, so two
requests carrying the same proof cannot both run. The claim is dropped if
the operation or the settlement fails and kept forever once settled.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import requests
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import PaymentSettings
from errors import InternalError, PaymentReplayed, PaymentRequired, PaymentSettlementFailed
from models import PaymentProof
from schemas import PaymentReceipt
from utils import b64_json, decode_b64_json, fingerprint, now_ts

logger = logging.getLogger("tracechain.payments")

X402_VERSION = 2
PROOF_HEADERS = ("payment-signature", "x-payment")
MIME_TYPE = "application/json"


class FacilitatorError(Exception):
    pass


class FacilitatorClient:
    """Minimal HTTP client for an x402 facilitator's /verify and /settle."""

    def __init__(self, url: str, timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, path: str, payment_payload: dict, requirements: dict) -> Dict[str, Any]:
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": payment_payload,
            "paymentRequirements": requirements,
        }
        try:
            resp = self.session.post(f"{self.url}{path}", json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FacilitatorError(f"{path} request failed: {exc}") from exc
        if resp.status_code >= 500:
            raise FacilitatorError(f"{path} returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise FacilitatorError(f"{path} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise FacilitatorError(f"{path} returned an unexpected body")
        return data

    def verify(self, payment_payload: dict, requirements: dict) -> Dict[str, Any]:
        return self._post("/verify", payment_payload, requirements)

    def settle(self, payment_payload: dict, requirements: dict) -> Dict[str, Any]:
        return self._post("/settle", payment_payload, requirements)

    def close(self) -> None:
        self.session.close()


@dataclass
class AcceptedPayment:
    fingerprint: str
    proof: Dict[str, Any]
    requirements: Dict[str, Any]
    payer: Optional[str] = None


def _short(fp: str) -> str:
    return fp[:12]


class PaymentGateway:
    def __init__(self, settings: PaymentSettings, facilitator: FacilitatorClient):
        self.settings = settings
        self.facilitator = facilitator

    # ---------- Requirements ----------
    def requirements(self, resource: str) -> Dict[str, Any]:
        s = self.settings
        return {
            "scheme": "exact",
            "network": s.network,
            "amount": s.amount,
            "asset": s.asset_id,
            "payTo": s.pay_to,
            "maxTimeoutSeconds": s.max_timeout_seconds,
            "resource": resource,
            "description": s.description,
            "mimeType": MIME_TYPE,
            "extra": {"name": s.asset_name, "decimals": s.asset_decimals},
        }

    def payment_required(self, message: str, resource: str, replayed: bool = False) -> PaymentRequired:
        doc = {
            "x402Version": X402_VERSION,
            "resource": resource,
            "accepts": [self.requirements(resource)],
        }
        cls = PaymentReplayed if replayed else PaymentRequired
        return cls(message, document=doc, encoded=b64_json(doc))

    def _ensure_configured(self) -> None:
        if not self.settings.pay_to:
            raise InternalError("payment receiver address is not configured")

    # ---------- Proof ----------
    @staticmethod
    def read_proof_header(headers: Mapping[str, str]) -> Optional[str]:
        lowered = {k.lower(): v for k, v in headers.items()}
        for name in PROOF_HEADERS:
            value = lowered.get(name)
            if value and value.strip():
                return value
        return None

    def _matches(self, accepted: Dict[str, Any], resource: str) -> bool:
        want = self.requirements(resource)
        for key in ("scheme", "network", "payTo", "amount", "asset"):
            if str(accepted.get(key, "")) != str(want[key]):
                return False
        return True

    def inspect(self, headers: Mapping[str, str], resource: str) -> Dict[str, Any]:
        """Decode and check a proof without touching storage or the facilitator."""
        self._ensure_configured()
        raw = self.read_proof_header(headers)
        if raw is None:
            raise self.payment_required("payment required", resource)
        try:
            proof = decode_b64_json(raw)
        except ValueError:
            raise self.payment_required("malformed payment header", resource)
        if not isinstance(proof, dict):
            raise self.payment_required("malformed payment header", resource)
        payload = proof.get("payload")
        if not isinstance(payload, dict) or not payload:
            raise self.payment_required("payment payload missing", resource)
        accepted = proof.get("accepted")
        if not isinstance(accepted, dict) or not self._matches(accepted, resource):
            raise self.payment_required("payment does not match requirements", resource)
        return proof

    # ---------- Claim lifecycle ----------
    def accept(self, db: Session, headers: Mapping[str, str], resource: str) -> AcceptedPayment:
        proof = self.inspect(headers, resource)
        # keyed on the signed payload only
        fp = fingerprint(proof["payload"])
        if db.get(PaymentProof, fp) is not None:
            logger.info("rejected replayed payment proof %s", _short(fp))
            raise self.payment_required("payment proof already used", resource, replayed=True)

        db.add(PaymentProof(fingerprint=fp, status="pending", resource=resource, created_at=now_ts()))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("payment proof %s claimed concurrently", _short(fp))
            raise self.payment_required("payment proof already used", resource, replayed=True)

        requirements = self.requirements(resource)
        try:
            result = self.facilitator.verify(proof, requirements)
        except FacilitatorError as exc:
            self.release(db, fp)
            logger.error("facilitator verify failed: %s", exc)
            raise InternalError("payment facilitator unavailable") from exc
        if not result.get("isValid"):
            self.release(db, fp)
            reason = result.get("invalidReason") or "rejected by facilitator"
            raise self.payment_required(f"payment invalid: {reason}", resource)

        payer = result.get("payer")
        if payer:
            claim = db.get(PaymentProof, fp)
            claim.payer = payer
            db.commit()
        return AcceptedPayment(fingerprint=fp, proof=proof, requirements=requirements, payer=payer)

    def release(self, db: Session, fp: str) -> None:
        """Drop a pending claim so the proof can be presented again."""
        db.rollback()
        claim = db.get(PaymentProof, fp, populate_existing=True)
        if claim is not None and claim.status == "pending":
            db.delete(claim)
            db.commit()
            logger.info("released payment proof %s", _short(fp))

    def settle(self, db: Session, accepted: AcceptedPayment) -> Tuple[PaymentReceipt, Dict[str, str]]:
        try:
            result = self.facilitator.settle(accepted.proof, accepted.requirements)
        except FacilitatorError as exc:
            self.release(db, accepted.fingerprint)
            logger.warning("settlement of %s failed: %s", _short(accepted.fingerprint), exc)
            raise PaymentSettlementFailed("payment settlement failed") from exc
        if not result.get("success"):
            self.release(db, accepted.fingerprint)
            reason = result.get("errorReason") or "rejected by facilitator"
            logger.warning("settlement of %s rejected: %s", _short(accepted.fingerprint), reason)
            raise PaymentSettlementFailed(f"payment settlement failed: {reason}")

        tx_id = result.get("transaction")
        claim = db.get(PaymentProof, accepted.fingerprint, populate_existing=True)
        claim.status = "settled"
        claim.tx_id = tx_id
        claim.settled_at = now_ts()
        if result.get("payer"):
            claim.payer = result["payer"]
        db.commit()

        asset = str(accepted.requirements["asset"])
        receipt = PaymentReceipt(
            amount=int(accepted.requirements["amount"]),
            assetId=int(asset) if asset.isdigit() else None,
            txId=tx_id,
            timestamp=now_ts(),
        )
        response = {
            "success": True,
            "transaction": tx_id,
            "network": accepted.requirements["network"],
            "payer": claim.payer,
        }
        logger.info("settled payment %s tx=%s", _short(accepted.fingerprint), tx_id)
        return receipt, {"PAYMENT-RESPONSE": b64_json(response)}

    def execute(
        self,
        db: Session,
        headers: Mapping[str, str],
        resource: str,
        operation: Callable[[], Any],
    ) -> Tuple[Any, PaymentReceipt, Dict[str, str]]:
        """Run ``operation`` once for an accepted proof, then settle."""
        accepted = self.accept(db, headers, resource)
        try:
            result = operation()
        except Exception:
            self.release(db, accepted.fingerprint)
            raise
        receipt, response_headers = self.settle(db, accepted)
        return result, receipt, response_headers
