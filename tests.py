#!/usr/bin/env python3
"""
SCRATCHWORKS - Engine Unit Test Suite

Run: python tests.py
     python tests.py -v          # verbose
     python tests.py TestLayout  # run specific class

Test categories:
  TestSeededRNG       - determinism, stream independence, commitment hash
  TestOutcomeSelect   - cumulative walk, exhausted tiers (lose / redraw)
  TestLayout          - win/no-win grid contract, blank fallback, termination
  TestCardStatus      - transition table, terminal states
  TestScratchMath     - prize table RTP / house edge / capped simulation
"""

import sys
import unittest
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

# ── Ensure project root is on sys.path ──
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from scratch.layout import LayoutError, SymbolLayoutEngine, qualifying_symbols, symbol_counts
from scratch.models import CardInstance, CardStatus, CardType, Outcome, PrizeTier
from scratch.outcome import OutcomeGenerator, select_tier
from scratch.rng import (
    SeededRNG, commitment_payload, new_seed, verification_hash, verify_commitment,
)
from sim_engine.rmg import get_game_engine

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
POOL = ["cherry", "bell", "star", "diamond", "seven", "clover"]


def _card(areas=9, match=3, symbols=None, **kw):
    return CardType(id="ct1", theme_id="th1", name="test", display_name="Test",
                    total_scratch_areas=areas, min_symbols_to_match=match,
                    symbols=list(symbols or POOL), cost_gc=100, cost_sc=1, **kw)


def _tier(tier_id, p, symbol="bell", match=3, gc=100, sc=1, **kw):
    return PrizeTier(id=tier_id, card_type_id="ct1", prize_tier=tier_id, prize_name=tier_id,
                     win_probability=p, winning_symbol=symbol, match_count=match,
                     prize_gc=gc, prize_sc=sc, **kw)


class FixedRNG:
    """Replays a fixed list of floats."""

    def __init__(self, values):
        self.values = list(values)

    def random(self):
        return self.values.pop(0)


class StubCatalog:
    """In-memory stand-in for Catalog's draw-side methods."""

    def __init__(self, tiers, supply=None):
        self.tiers = tiers
        self.supply = dict(supply or {})
        self.reserved = []

    def active_tiers(self, card_type_id):
        return self.tiers

    def reserve_supply(self, tier_id, now):
        left = self.supply.get(tier_id)
        if left is not None:
            if left <= 0:
                return False
            self.supply[tier_id] = left - 1
        self.reserved.append(tier_id)
        return True


# ============================================================
# Seeded RNG + commitment
# ============================================================

class TestSeededRNG(unittest.TestCase):

    def test_same_seed_same_sequence(self):
        a = SeededRNG("abc", "layout")
        b = SeededRNG("abc", "layout")
        self.assertEqual([a.random() for _ in range(20)], [b.random() for _ in range(20)])

    def test_streams_are_independent(self):
        outcome = SeededRNG("abc", "outcome")
        layout = SeededRNG("abc", "layout")
        self.assertNotEqual(outcome.random(), layout.random())

    def test_random_in_unit_interval(self):
        rng = SeededRNG(new_seed())
        for _ in range(500):
            r = rng.random()
            self.assertGreaterEqual(r, 0.0)
            self.assertLess(r, 1.0)

    def test_new_seed_is_256_bit_hex(self):
        seed = new_seed()
        self.assertEqual(len(seed), 64)
        int(seed, 16)
        self.assertNotEqual(seed, new_seed())

    def test_shuffle_is_permutation(self):
        items = list(range(9))
        SeededRNG("s").shuffle(items)
        self.assertEqual(sorted(items), list(range(9)))

    def test_sample_distinct(self):
        picks = SeededRNG("s").sample(range(9), 4)
        self.assertEqual(len(set(picks)), 4)
        with self.assertRaises(ValueError):
            SeededRNG("s").sample(range(3), 4)

    def test_empty_seed_rejected(self):
        with self.assertRaises(ValueError):
            SeededRNG("")

    def test_commitment_is_canonical(self):
        outcome = {"is_winner": True, "prize_id": "p1"}
        reordered = {"prize_id": "p1", "is_winner": True}
        self.assertEqual(commitment_payload("SC_1", outcome, "seed"),
                         commitment_payload("SC_1", reordered, "seed"))
        digest = verification_hash("SC_1", outcome, "seed")
        self.assertEqual(len(digest), 64)
        self.assertTrue(verify_commitment("SC_1", reordered, "seed", digest))

    def test_commitment_detects_tampering(self):
        digest = verification_hash("SC_1", {"winnings_gc": 100}, "seed")
        self.assertFalse(verify_commitment("SC_1", {"winnings_gc": 1000}, "seed", digest))
        self.assertFalse(verify_commitment("SC_2", {"winnings_gc": 100}, "seed", digest))
        self.assertFalse(verify_commitment("SC_1", {"winnings_gc": 100}, "other", digest))


# ============================================================
# Outcome selection
# ============================================================

class TestOutcomeSelect(unittest.TestCase):

    def setUp(self):
        self.tiers = [_tier("t1", 0.1, "bell"), _tier("t2", 0.2, "star", gc=500)]

    def test_cumulative_walk(self):
        self.assertEqual(select_tier(self.tiers, 0.0).id, "t1")
        self.assertEqual(select_tier(self.tiers, 0.05).id, "t1")
        self.assertEqual(select_tier(self.tiers, 0.1).id, "t2")
        self.assertEqual(select_tier(self.tiers, 0.25).id, "t2")
        self.assertIsNone(select_tier(self.tiers, 0.5))
        self.assertIsNone(select_tier([], 0.0))

    def test_winning_draw_reserves_supply(self):
        catalog = StubCatalog(self.tiers)
        outcome = OutcomeGenerator(catalog, "lose").generate(_card(), FixedRNG([0.15]), NOW)
        self.assertTrue(outcome.is_winner)
        self.assertEqual(outcome.prize_id, "t2")
        self.assertEqual(outcome.winning_symbol, "star")
        self.assertEqual(outcome.winnings_gc, 500)
        self.assertEqual(outcome.winning_combination, ["star"] * 3)
        self.assertEqual(catalog.reserved, ["t2"])

    def test_losing_draw_reserves_nothing(self):
        catalog = StubCatalog(self.tiers)
        outcome = OutcomeGenerator(catalog, "lose").generate(_card(), FixedRNG([0.9]), NOW)
        self.assertFalse(outcome.is_winner)
        self.assertIsNone(outcome.prize_id)
        self.assertEqual(outcome.draw, 0.9)
        self.assertEqual(catalog.reserved, [])

    def test_exhausted_tier_degrades_to_loss(self):
        catalog = StubCatalog(self.tiers, supply={"t1": 0})
        outcome = OutcomeGenerator(catalog, "lose").generate(_card(), FixedRNG([0.05]), NOW)
        self.assertFalse(outcome.is_winner)
        self.assertEqual(outcome.downgraded_from, "t1")
        self.assertEqual(catalog.reserved, [])

    def test_exhausted_tier_redraws_among_live_tiers(self):
        catalog = StubCatalog(self.tiers, supply={"t1": 0})
        # second draw 0.9 * live mass 0.2 = 0.18 -> t2
        outcome = OutcomeGenerator(catalog, "redraw").generate(_card(), FixedRNG([0.05, 0.9]), NOW)
        self.assertTrue(outcome.is_winner)
        self.assertEqual(outcome.prize_id, "t2")
        self.assertEqual(outcome.downgraded_from, "t1")
        self.assertEqual(outcome.draw, 0.05)

    def test_redraw_with_nothing_left_loses(self):
        catalog = StubCatalog(self.tiers, supply={"t1": 0, "t2": 0})
        outcome = OutcomeGenerator(catalog, "redraw").generate(
            _card(), FixedRNG([0.05, 0.5, 0.5]), NOW)
        self.assertFalse(outcome.is_winner)
        self.assertEqual(outcome.downgraded_from, "t1")

    def test_outcome_round_trips_through_dict(self):
        outcome = Outcome(is_winner=True, prize_id="t1", winnings_gc=5, winning_symbol="bell",
                          match_count=3, winning_combination=["bell"] * 3, draw=0.01)
        self.assertEqual(Outcome.from_dict(outcome.to_dict()), outcome)


# ============================================================
# Symbol layout
# ============================================================

class TestLayout(unittest.TestCase):

    def setUp(self):
        self.engine = SymbolLayoutEngine()

    def _win(self, symbol="bell", match=3):
        return Outcome(is_winner=True, prize_id="t1", winning_symbol=symbol, match_count=match)

    def test_winning_grid_shows_exactly_the_bound_combination(self):
        card = _card()
        for i in range(200):
            grid = self.engine.build(card, self._win(), SeededRNG(f"win-{i}", "layout"))
            self.assertEqual(len(grid), 9)
            self.assertEqual(qualifying_symbols(grid, 3), ["bell"])
            self.assertEqual(grid.count("bell"), 3)

    def test_losing_grid_has_no_qualifying_symbol(self):
        card = _card()
        for i in range(200):
            grid = self.engine.build(card, Outcome.loss(0.9), SeededRNG(f"lose-{i}", "layout"))
            self.assertEqual(qualifying_symbols(grid, 3), [])

    def test_match_count_above_threshold(self):
        card = _card()
        grid = self.engine.build(card, self._win("seven", 5), SeededRNG("big", "layout"))
        self.assertEqual(grid.count("seven"), 5)
        self.assertEqual(qualifying_symbols(grid, 3), ["seven"])

    def test_same_seed_same_grid(self):
        card = _card()
        a = self.engine.build(card, self._win(), SeededRNG("replay", "layout"))
        b = self.engine.build(card, self._win(), SeededRNG("replay", "layout"))
        self.assertEqual(a, b)

    def test_winning_positions_vary_across_seeds(self):
        card = _card()
        positions = set()
        for i in range(50):
            grid = self.engine.build(card, self._win(), SeededRNG(f"pos-{i}", "layout"))
            positions.add(tuple(p for p, s in enumerate(grid) if s == "bell"))
        self.assertGreater(len(positions), 10)

    def test_tight_grid_falls_back_to_blank(self):
        # 6 areas, match 3, two symbols: the third filler must be a blank
        card = _card(areas=6, match=3, symbols=["cherry", "bell"])
        for i in range(50):
            grid = self.engine.build(card, self._win("cherry"), SeededRNG(f"tight-{i}", "layout"))
            self.assertEqual(qualifying_symbols(grid, 3), ["cherry"])
            self.assertEqual(grid.count("bell"), 2)
            self.assertEqual(grid.count("blank"), 1)

    def test_terminates_near_twice_match(self):
        for areas, match in ((5, 3), (6, 3), (4, 2), (2, 2), (8, 4), (7, 4)):
            card = _card(areas=areas, match=match, symbols=["cherry", "bell"])
            for i in range(30):
                rng = SeededRNG(f"edge-{areas}-{match}-{i}", "layout")
                grid = self.engine.build(card, Outcome.loss(0.9), rng)
                self.assertEqual(len(grid), areas)
                self.assertEqual(qualifying_symbols(grid, match), [])
                win = self.engine.build(card, self._win("bell", match), rng)
                self.assertEqual(qualifying_symbols(win, match), ["bell"])

    def test_blank_never_qualifies(self):
        grid = ["blank"] * 9
        self.assertEqual(qualifying_symbols(grid, 3), [])
        self.assertEqual(symbol_counts(grid), Counter())

    def test_check_rejects_side_win(self):
        card = _card()
        grid = ["bell"] * 3 + ["star"] * 3 + ["cherry", "seven", "clover"]
        with self.assertRaises(LayoutError):
            self.engine.check(grid, card, self._win())
        with self.assertRaises(LayoutError):
            self.engine.check(grid, card, Outcome.loss(0.5))

    def test_check_rejects_wrong_size(self):
        with self.assertRaises(LayoutError):
            self.engine.check(["bell"] * 3, _card(), self._win())


# ============================================================
# Status machine + public view
# ============================================================

class TestCardStatus(unittest.TestCase):

    def test_forward_transitions(self):
        self.assertTrue(CardStatus.UNSCRATCHED.can_become(CardStatus.PARTIALLY_SCRATCHED))
        self.assertTrue(CardStatus.UNSCRATCHED.can_become(CardStatus.COMPLETED))
        self.assertTrue(CardStatus.PARTIALLY_SCRATCHED.can_become(CardStatus.COMPLETED))
        self.assertTrue(CardStatus.PARTIALLY_SCRATCHED.can_become(CardStatus.EXPIRED))

    def test_never_regresses(self):
        self.assertFalse(CardStatus.PARTIALLY_SCRATCHED.can_become(CardStatus.UNSCRATCHED))
        for terminal in (CardStatus.COMPLETED, CardStatus.EXPIRED):
            self.assertTrue(terminal.is_terminal)
            for target in CardStatus:
                self.assertFalse(terminal.can_become(target))

    def test_public_view_hides_unrevealed(self):
        from scratch.models import AreaProgress
        instance = CardInstance(
            instance_id="SC_x", card_type_id="ct1", holder_id="u1",
            purchase_cost_gc=100, purchase_cost_sc=0, purchase_currency="GC",
            purchased_at="2026-03-01T12:00:00.000000+00:00",
            outcome=Outcome(is_winner=True, winnings_gc=500, winning_symbol="bell", match_count=3),
            symbols=["bell", "star", "bell"], status=CardStatus.PARTIALLY_SCRATCHED,
            progress=[AreaProgress(0, True, "bell", "t"), AreaProgress(1), AreaProgress(2)],
            reveal_log=[], game_seed="secret", verification_hash="h" * 64,
            expires_at="2026-03-31T12:00:00.000000+00:00",
        )
        view = instance.to_public_dict()
        self.assertEqual([a["symbol"] for a in view["areas"]], ["bell", None, None])
        self.assertIsNone(view["game_seed"])
        self.assertIsNone(view["is_winner"])
        self.assertEqual(view["verification_hash"], "h" * 64)


# ============================================================
# Prize table math
# ============================================================

class TestScratchMath(unittest.TestCase):

    def setUp(self):
        self.engine = get_game_engine("scratch")
        self.card = _card()
        self.tiers = [_tier("t1", 0.2, gc=200), _tier("t2", 0.05, "star", gc=1000)]

    def test_theoretical_rtp(self):
        config = self.engine.config_from_catalog(self.card, self.tiers, "GC")
        # 0.2 * 200 + 0.05 * 1000 = 90 per 100 wagered
        self.assertAlmostEqual(self.engine.hit_rate(config), 0.25)
        self.assertAlmostEqual(self.engine.compute_house_edge(config), 0.10)

    def test_rtp_is_per_currency(self):
        config = self.engine.config_from_catalog(self.card, self.tiers, "SC")
        self.assertEqual(config["cost"], 1)
        # 0.25 * 1 SC payout on a 1 SC card
        self.assertAlmostEqual(self.engine.compute_house_edge(config), 0.75)

    def test_simulation_tracks_theory(self):
        config = self.engine.config_from_catalog(self.card, self.tiers, "GC")
        result = self.engine.simulate(config, rounds=50_000, seed=7)
        self.assertAlmostEqual(result.hit_rate, 0.25, delta=0.01)
        self.assertAlmostEqual(result.rtp, 0.90, delta=0.05)

    def test_capped_supply_lowers_realised_rtp(self):
        capped = [_tier("t1", 0.2, gc=200), _tier("t2", 0.05, "star", gc=1000, max_total_wins=10)]
        config = self.engine.config_from_catalog(self.card, capped, "GC")
        result = self.engine.simulate(config, rounds=20_000, seed=7)
        self.assertLess(result.rtp, 0.5)
        # simulate() works on a copy; the caller's config keeps its supply
        self.assertEqual(config["prizes"][1]["remaining"], 10)

    def test_unknown_engine(self):
        with self.assertRaises(ValueError):
            get_game_engine("bingo")


if __name__ == "__main__":
    unittest.main()
