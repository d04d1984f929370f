"""
SCRATCHWORKS - Symbol Layout Engine

Turns an Outcome into the full grid of symbols, one per scratch area.

Contract (checked before the grid is returned):
  - winner: the bound winning symbol appears exactly match_count times and
    no other symbol reaches the card's match threshold
  - loser:  no symbol reaches the match threshold
The blank filler never counts towards a match, which is what makes the
fallback paths below always terminate.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Optional

from config.settings import ScratchConfig
from scratch.models import CardType, Outcome

logger = logging.getLogger("scratchworks.layout")


def symbol_counts(symbols: list[str], blank: Optional[str] = None) -> Counter:
    blank = blank or ScratchConfig.BLANK_SYMBOL
    return Counter(s for s in symbols if s != blank)


def qualifying_symbols(symbols: list[str], threshold: int, blank: Optional[str] = None) -> list[str]:
    """Symbols whose count reaches the match threshold, most frequent first."""
    return [s for s, n in symbol_counts(symbols, blank).most_common() if n >= threshold]


class LayoutError(RuntimeError):
    """Generated grid broke the win/no-win contract."""


class SymbolLayoutEngine:

    def __init__(self, max_filler_attempts: Optional[int] = None, blank_symbol: Optional[str] = None):
        self.max_filler_attempts = max_filler_attempts or ScratchConfig.MAX_FILLER_ATTEMPTS
        self.blank = blank_symbol or ScratchConfig.BLANK_SYMBOL

    def build(self, card_type: CardType, outcome: Outcome, rng) -> list[str]:
        """Grid for `outcome`, drawn entirely from `rng`."""
        threshold = card_type.min_symbols_to_match
        pool = [s for s in card_type.symbols if s != self.blank]

        if outcome.is_winner:
            grid = self._winning_grid(card_type, outcome, pool, rng)
        else:
            grid = self._losing_grid(card_type.total_scratch_areas, threshold, pool, rng)

        # Winning positions must not be predictable across cards
        rng.shuffle(grid)
        self.check(grid, card_type, outcome)
        return grid

    def _winning_grid(self, card_type: CardType, outcome: Outcome, pool: list[str], rng) -> list[str]:
        size = card_type.total_scratch_areas
        threshold = card_type.min_symbols_to_match
        winner = outcome.winning_symbol
        match_count = outcome.match_count or threshold
        if match_count > size:
            raise LayoutError(f"match_count {match_count} does not fit a {size}-area grid")

        grid: list[Optional[str]] = [None] * size
        for pos in rng.sample(range(size), match_count):
            grid[pos] = winner

        fillers = [s for s in pool if s != winner]
        counts: Counter = Counter()
        fallbacks = 0
        for pos in range(size):
            if grid[pos] is not None:
                continue
            symbol = self.blank
            if fillers:
                for _ in range(self.max_filler_attempts):
                    candidate = rng.choice(fillers)
                    if counts[candidate] + 1 < threshold:
                        symbol = candidate
                        break
            if symbol == self.blank:
                fallbacks += 1
            else:
                counts[symbol] += 1
            grid[pos] = symbol

        if fallbacks:
            logger.debug(f"Winning layout used {fallbacks} blank filler(s) "
                         f"(grid={size}, match={threshold})")
        return grid

    def _losing_grid(self, size: int, threshold: int, pool: list[str], rng) -> list[str]:
        grid = [rng.choice(pool) for _ in range(size)] if pool else [self.blank] * size

        # Break every accidental match with the fewest replacements; blanks
        # never qualify, so each pass strictly shrinks the set of offenders.
        while True:
            offenders = qualifying_symbols(grid, threshold, self.blank)
            if not offenders:
                return grid
            for symbol in offenders:
                excess = grid.count(symbol) - (threshold - 1)
                for pos, current in enumerate(grid):
                    if excess <= 0:
                        break
                    if current == symbol:
                        grid[pos] = self.blank
                        excess -= 1

    def check(self, grid: list[str], card_type: CardType, outcome: Outcome) -> None:
        """Raise LayoutError unless `grid` honours the win/no-win contract."""
        threshold = card_type.min_symbols_to_match
        if len(grid) != card_type.total_scratch_areas:
            raise LayoutError(f"Grid has {len(grid)} areas, expected {card_type.total_scratch_areas}")
        qualifying = qualifying_symbols(grid, threshold, self.blank)
        if outcome.is_winner:
            expected = outcome.match_count or threshold
            if qualifying != [outcome.winning_symbol] or grid.count(outcome.winning_symbol) != expected:
                raise LayoutError(f"Winning grid shows {qualifying}, expected exactly "
                                  f"{expected}x {outcome.winning_symbol}")
        elif qualifying:
            raise LayoutError(f"Losing grid shows a qualifying combination: {qualifying}")
