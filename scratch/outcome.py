"""
SCRATCHWORKS - Outcome Generator

Decides, at purchase time, whether a card wins and which prize tier it is
bound to.

    r = rng.random()                         # seeded "outcome" stream
    walk active tiers in stable order, accumulating win_probability
    first tier whose cumulative mass exceeds r is drawn
    reserve one unit of that tier's supply (guarded UPDATE)
    exhausted -> "lose": the card becomes a loser
                 "redraw": pick again among tiers with supply left

The reservation runs on the caller's connection inside the purchase
transaction, so a purchase that later fails gives the supply back.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from config.settings import ScratchConfig
from scratch.errors import SupplyExhausted
from scratch.models import CardType, Outcome, PrizeTier

logger = logging.getLogger("scratchworks.outcome")


def select_tier(tiers: list[PrizeTier], r: float) -> Optional[PrizeTier]:
    """First tier whose cumulative probability exceeds r; None = no win."""
    cumulative = 0.0
    for tier in tiers:
        cumulative += tier.win_probability
        if r < cumulative:
            return tier
    return None


def winning_outcome(tier: PrizeTier, draw: float) -> Outcome:
    return Outcome(
        is_winner=True,
        prize_id=tier.id,
        winnings_gc=tier.prize_gc,
        winnings_sc=tier.prize_sc,
        winning_symbol=tier.winning_symbol,
        match_count=tier.match_count,
        winning_combination=[tier.winning_symbol] * tier.match_count,
        bonus_items=tier.bonus_items,
        draw=draw,
    )


class OutcomeGenerator:
    """Weighted, supply-capped prize draw."""

    def __init__(self, catalog, policy: Optional[str] = None):
        self.catalog = catalog
        self.policy = policy or ScratchConfig.exhausted_tier_policy()

    def generate(self, card_type: CardType, rng, now: datetime) -> Outcome:
        tiers = self.catalog.active_tiers(card_type.id)
        r = rng.random()
        tier = select_tier(tiers, r)
        if tier is None:
            return Outcome.loss(r)

        try:
            self._reserve(tier, now)
        except SupplyExhausted as exc:
            logger.info(f"Tier {exc.prize_id} exhausted for card type {card_type.id} "
                        f"(policy={self.policy})")
            if self.policy == "redraw":
                return self._redraw(tiers, exhausted={tier.id}, draw=r, rng=rng, now=now)
            return Outcome.loss(r, downgraded_from=tier.id)
        return winning_outcome(tier, r)

    def _reserve(self, tier: PrizeTier, now: datetime) -> None:
        if not self.catalog.reserve_supply(tier.id, now):
            raise SupplyExhausted(tier.id)

    def _redraw(self, tiers: list[PrizeTier], exhausted: set, draw: float,
                rng, now: datetime) -> Outcome:
        """Spread the win over tiers that still have supply, in proportion
        to their configured probabilities."""
        first_exhausted = next(iter(exhausted))
        while True:
            live = [t for t in tiers if t.id not in exhausted]
            mass = sum(t.win_probability for t in live)
            if not live or mass <= 0:
                return Outcome.loss(draw, downgraded_from=first_exhausted)
            tier = select_tier(live, rng.random() * mass) or live[-1]
            try:
                self._reserve(tier, now)
            except SupplyExhausted:
                exhausted.add(tier.id)
                continue
            outcome = winning_outcome(tier, draw)
            outcome.downgraded_from = first_exhausted
            return outcome
