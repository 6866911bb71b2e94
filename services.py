import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from carbon import CarbonScorer
from config import PaymentSettings
from escrow import EscrowDesk
from ledger import Ledger
from locks import KeyedLocks
from payments import FacilitatorClient, PaymentGateway
from reputation import ReputationBook
from verification import VerificationEngine

logger = logging.getLogger("tracechain.services")


@dataclass
class Services:
    """Long-lived collaborators shared by every request."""

    settings: PaymentSettings
    reputation: ReputationBook
    ledger: Ledger
    carbon: CarbonScorer
    engine: VerificationEngine
    escrow: EscrowDesk
    payments: PaymentGateway
    started_at: float = field(default_factory=time.time)

    def uptime(self) -> float:
        return round(time.time() - self.started_at, 3)

    def close(self) -> None:
        close = getattr(self.payments.facilitator, "close", None)
        if close is not None:
            close()


def build_services(settings: PaymentSettings, facilitator: Optional[FacilitatorClient] = None) -> Services:
    reputation = ReputationBook(KeyedLocks("farmer"))
    ledger = Ledger(reputation, KeyedLocks("batch"))
    carbon = CarbonScorer(ledger, reputation)
    if facilitator is None:
        facilitator = FacilitatorClient(settings.facilitator_url, timeout=settings.facilitator_timeout_seconds)
    if not settings.pay_to:
        logger.warning("no payment receiver configured; paid endpoints will fail")
    return Services(
        settings=settings,
        reputation=reputation,
        ledger=ledger,
        carbon=carbon,
        engine=VerificationEngine(ledger, reputation, carbon),
        escrow=EscrowDesk(ledger, reputation, settings.asset_name),
        payments=PaymentGateway(settings, facilitator),
    )
