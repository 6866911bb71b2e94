import os
from dataclasses import dataclass

# Algorand TestNet genesis hash in CAIP-2 form
ALGORAND_TESTNET_CAIP2 = "algorand:SGO1GKSzyE7IEPItTxCByw9x8FmnrCDexi9/cOUJOiI="

# ---------- Storage ----------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:////tmp/tracechain.db")
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "15"))

# ---------- HTTP ----------
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000").split(",")
    if o.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class PaymentSettings:
    pay_to: str
    facilitator_url: str
    network: str = ALGORAND_TESTNET_CAIP2
    amount: str = "1000"
    asset_id: str = "0"
    asset_decimals: int = 6
    asset_name: str = "ALGO"
    max_timeout_seconds: int = 60
    facilitator_timeout_seconds: float = 15.0
    description: str = "TraceChain batch verification"


def payment_settings_from_env() -> PaymentSettings:
    return PaymentSettings(
        pay_to=os.getenv("AVM_ADDRESS") or os.getenv("RESOURCE_PAY_TO", ""),
        facilitator_url=os.getenv("FACILITATOR_URL", "https://facilitator.goplausible.xyz"),
        network=os.getenv("X402_NETWORK", ALGORAND_TESTNET_CAIP2),
        amount=os.getenv("X402_AMOUNT", "1000"),
        asset_id=os.getenv("X402_ASSET_ID", "0"),
        asset_decimals=int(os.getenv("X402_ASSET_DECIMALS", "6")),
        asset_name=os.getenv("X402_ASSET_NAME", "ALGO"),
        max_timeout_seconds=int(os.getenv("X402_TIMEOUT_SECONDS", "60")),
        facilitator_timeout_seconds=float(os.getenv("FACILITATOR_TIMEOUT_SECONDS", "15")),
    )
