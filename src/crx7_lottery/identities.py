from __future__ import annotations

import hashlib
from typing import Tuple

from .models import Identity

# Crypto meme community animals shown on the wheel
IDENTITY_CATALOG: Tuple[Identity, ...] = (
    Identity("DOGE", "🐶"),
    Identity("PEPE", "🐸"),
    Identity("CAT", "🐱"),
    Identity("FOX", "🦊"),
    Identity("BEAR", "🐻"),
    Identity("BULL", "🐂"),
    Identity("APE", "🦍"),
    Identity("WOLF", "🐺"),
    Identity("LION", "🦁"),
    Identity("FROG", "🐸"),
    Identity("UNICORN", "🦄"),
    Identity("OCTOPUS", "🐙"),
)


def identity_for_address(wallet_address: str) -> Identity:
    """
    Deterministic identity for a wallet address.

    This is the only assignment scheme: candidate sets, participant rows and
    winner rows all go through it, so an address shows the same animal everywhere.
    Two candidates in one set may share an animal; the address is the key.
    """
    digest = hashlib.sha256(wallet_address.encode("utf-8")).hexdigest()
    return IDENTITY_CATALOG[int(digest, 16) % len(IDENTITY_CATALOG)]


def format_wallet_address(address: str, start: int = 4, end: int = 4) -> str:
    if not address:
        return ""
    if len(address) <= start + end:
        return address
    return f"{address[:start]}...{address[-end:]}"
