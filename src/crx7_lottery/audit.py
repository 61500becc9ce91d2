from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List

from .models import Round, Winner
from .round_controller import DrawRecord


def build_round_audit(
    rnd: Round,
    draws: List[DrawRecord],
    winners: List[Winner],
    token_mint: str,
    eligible_holders: int,
) -> Dict[str, Any]:
    # Candidates are stored in wheel order so anyone can replay each spin.
    return {
        "metadata": {
            "tool": "crx7-lottery",
            "version": "1.0.0",
            "generated_at_utc": datetime.now(timezone.utc).isoformat(),
            "token_mint": token_mint,
            "round_id": rnd.id,
            "round_number": rnd.sequence_number,
            "total_prize_pool": str(rnd.total_prize_pool),
            "eligible_holders": eligible_holders,
        },
        "draws": [
            {
                "draw_number": d.draw_number,
                "available": d.available,
                "rotation": d.rotation,
                "winner_index": d.winner_index,
                "winner": d.winner.address if d.winner else None,
                "candidates": [
                    {
                        "address": c.address,
                        "balance": c.balance,
                        "identity": c.identity.display(),
                    }
                    for c in d.candidates
                ],
            }
            for d in draws
        ],
        "winners": [
            {
                "sequence_number": w.sequence_number,
                "draw_number": w.draw_sequence,
                "address": w.wallet_address,
                "identity": w.identity.display(),
                "won_at": w.won_at.isoformat(),
            }
            for w in winners
        ],
    }


def write_audit(audit: Dict[str, Any], path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(audit, f, indent=2, ensure_ascii=False)
