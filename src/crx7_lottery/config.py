from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

import base58
from dotenv import load_dotenv
from solders.keypair import Keypair

from .distribution import DistributionPercentages
from .errors import ValidationError
from .project_constants import (
    CHARITY_PERCENTAGE,
    CHARITY_WALLET,
    HOLDING_PERCENTAGE,
    HOLDING_WALLET,
    TOKEN_MINT,
    WINNERS_PERCENTAGE,
)

HELIUS_URL = "https://mainnet.helius-rpc.com/?api-key={key}"


@dataclass(frozen=True)
class PayoutWallets:
    holding: str
    charity: str


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    # Priority-fee estimation needs a Helius endpoint
    fee_estimator_url: Optional[str] = None
    admin_private_key: Optional[str] = field(default=None, repr=False)
    token_mint: str = TOKEN_MINT
    wallets: PayoutWallets = PayoutWallets(HOLDING_WALLET, CHARITY_WALLET)
    percentages: DistributionPercentages = DistributionPercentages()
    data_file: str = "lottery-data.json"

    @staticmethod
    def from_env(rpc_url_override: str | None = None) -> "Settings":
        load_dotenv()

        helius_key = os.getenv("HELIUS_API_KEY", "").strip()
        fee_url = HELIUS_URL.format(key=helius_key) if helius_key else None

        # If user provides --rpc-url, trust it.
        rpc_url = (rpc_url_override or "").strip() or os.getenv("RPC_URL", "").strip()
        if not rpc_url:
            if not helius_key:
                raise RuntimeError(
                    "Missing HELIUS_API_KEY (or RPC_URL). Put it in .env or export it."
                )
            rpc_url = fee_url

        percentages = DistributionPercentages(
            winners=_env("WINNERS_PERCENTAGE", str(WINNERS_PERCENTAGE)),
            holding=_env("HOLDING_PERCENTAGE", str(HOLDING_PERCENTAGE)),
            charity=_env("CHARITY_PERCENTAGE", str(CHARITY_PERCENTAGE)),
        )

        return Settings(
            rpc_url=rpc_url,
            fee_estimator_url=fee_url,
            admin_private_key=os.getenv("ADMIN_WALLET_PRIVATE_KEY", "").strip() or None,
            token_mint=_env("TOKEN_MINT_ADDRESS", TOKEN_MINT),
            wallets=PayoutWallets(
                holding=_env("HOLDING_WALLET", HOLDING_WALLET),
                charity=_env("CHARITY_WALLET", CHARITY_WALLET),
            ),
            percentages=percentages,
            data_file=_env("LOTTERY_DATA_FILE", "lottery-data.json"),
        )

    def admin_keypair(self) -> Keypair:
        if not self.admin_private_key:
            raise RuntimeError("ADMIN_WALLET_PRIVATE_KEY is not configured.")
        return load_keypair(self.admin_private_key)


def _env(name: str, default: str) -> str:
    return os.getenv(name, "").strip() or default


def load_keypair(secret: str) -> Keypair:
    """
    Accepts either a base58 secret key or a comma-separated byte array
    (the format `solana-keygen` writes, without brackets).
    """
    secret = secret.strip().strip("[]")
    try:
        if "," in secret:
            raw = bytes(int(x.strip()) for x in secret.split(","))
        else:
            raw = base58.b58decode(secret)
        return Keypair.from_bytes(raw)
    except ValueError as e:
        raise ValidationError(f"Failed to load admin keypair: {e}") from None
