"""
SCRATCHWORKS - Scratch Card Game Engine

Outcome draw under capped prize supply, symbol-grid layout, reveal state
machine and exactly-once settlement, backed by config.database.

Usage:
    from scratch import ScratchCardService

    svc = ScratchCardService()
    card = svc.purchase_card(holder_id, card_type_id)
    for area in range(len(card.symbols)):
        result = svc.scratch_area(card.instance_id, area, holder_id)
    if card.is_winner:
        svc.claim_prize(card.instance_id, holder_id)
"""

from scratch.catalog import Catalog
from scratch.errors import ScratchCardError
from scratch.layout import SymbolLayoutEngine, qualifying_symbols
from scratch.ledger import Ledger
from scratch.models import CardInstance, CardStatus, CardType, Outcome, PrizeTier
from scratch.outcome import OutcomeGenerator
from scratch.rng import SeededRNG, verification_hash
from scratch.service import ScratchCardService

__all__ = [
    "Catalog",
    "ScratchCardError",
    "SymbolLayoutEngine",
    "qualifying_symbols",
    "Ledger",
    "CardInstance",
    "CardStatus",
    "CardType",
    "Outcome",
    "PrizeTier",
    "OutcomeGenerator",
    "SeededRNG",
    "verification_hash",
    "ScratchCardService",
]
