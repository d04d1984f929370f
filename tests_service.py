#!/usr/bin/env python3
"""
Tests for the card service against a real SQLite file.

Validates:
1.  Purchase debits the holder and persists an unscratched card
2.  Win rate of a 25% table over 1000 purchases
3.  Every persisted grid honours the win/no-win contract
4.  Availability, limit, eligibility and funds preconditions
5.  Reveal state machine: 8-of-9, re-reveal, foreign holder, expiry
6.  Exactly-once settlement, including a failing ledger
7.  Supply caps under concurrent purchases
8.  Commitment audit and tamper detection
"""

import json
import os
import sys
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.database import SCHEMA_SQL, get_standalone_db, init_db
from scratch.catalog import Catalog
from scratch.errors import (
    AlreadyClaimed, CatalogError, Forbidden, InsufficientFunds, InvalidState,
    LimitExceeded, NotAvailable, NotAWinner, NotCompleted, NotFound,
)
from scratch.layout import LayoutError, SymbolLayoutEngine, qualifying_symbols
from scratch.ledger import Ledger
from scratch.models import CardStatus
from scratch.service import ScratchCardService


class FailingCreditLedger(Ledger):
    def credit(self, holder_id, currency, amount, reference=None):
        raise RuntimeError("ledger unavailable")


class FailingDebitLedger(Ledger):
    def debit(self, holder_id, currency, amount, reference=None):
        super().debit(holder_id, currency, amount, reference)
        raise RuntimeError("ledger unavailable")


class BrokenLayout(SymbolLayoutEngine):
    def build(self, card_type, outcome, rng):
        raise LayoutError("layout engine fault")


class ServiceTestCase(unittest.TestCase):
    """Temp database with one theme and helpers to build card types."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "scratch.db")
        init_db(self.db_path)
        self.db = get_standalone_db(self.db_path)
        self.catalog = Catalog(self.db)
        self.theme = self.catalog.create_theme("classic", "Classic")
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        self.svc = self.make_service()

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def make_service(self, **kw):
        return ScratchCardService(db_path=self.db_path, clock=lambda: self.now, **kw)

    def make_card(self, name="lucky", tiers=(), **kw):
        params = dict(cost_gc=100, cost_sc=1, max_prize_gc=10_000, max_prize_sc=100,
                      daily_purchase_limit=0, max_instances_per_user=0)
        params.update(kw)
        card = self.catalog.create_card_type(self.theme.id, name, **params)
        for i, tier in enumerate(tiers):
            tier = dict(tier)
            self.catalog.create_prize_tier(card.id, tier.pop("prize_tier", f"T{i + 1}"),
                                           tier.pop("prize_name", f"Tier {i + 1}"), **tier)
        return card

    def sure_win(self, name="sure", **tier):
        params = dict(win_probability=1.0, winning_symbol="bell", prize_gc=500, prize_sc=5)
        params.update(tier)
        return self.make_card(name, tiers=[params])

    def fund(self, holder="u1", gc=1_000_000, sc=1_000):
        self.svc.deposit(holder, "GC", gc)
        self.svc.deposit(holder, "SC", sc)

    def scratch_all(self, card, holder="u1", svc=None):
        svc = svc or self.svc
        result = None
        for area in range(len(card.symbols)):
            result = svc.scratch_area(card.instance_id, area, holder)
        return result

    def balance(self, holder="u1", currency="GC"):
        return Ledger(self.db).balance(holder, currency)


# ============================================================
# Purchase
# ============================================================

class TestPurchase(ServiceTestCase):

    def test_purchase_persists_unscratched_card(self):
        ct = self.sure_win()
        self.fund()
        card = self.svc.purchase_card("u1", ct.id, context={"ip_address": "10.0.0.1"})

        self.assertTrue(card.instance_id.startswith("SC_"))
        self.assertEqual(card.status, CardStatus.UNSCRATCHED)
        self.assertEqual(card.purchase_currency, "GC")
        self.assertEqual(card.purchase_cost_gc, 100)
        self.assertEqual(len(card.symbols), 9)
        self.assertEqual(len(card.verification_hash), 64)
        self.assertEqual(card.expires_at, "2026-03-31T12:00:00.000000+00:00")
        self.assertEqual(card.client_info, {"ip_address": "10.0.0.1"})
        self.assertEqual(self.balance(), 1_000_000 - 100)

        stored = self.svc.get_card(card.instance_id, "u1")
        self.assertEqual(stored.symbols, card.symbols)
        self.assertEqual(stored.outcome, card.outcome)
        self.assertEqual(self.catalog.get_card_type(ct.id).total_sold, 1)

    def test_purchase_in_sc(self):
        ct = self.sure_win()
        self.fund()
        card = self.svc.purchase_card("u1", ct.id, currency="SC")
        self.assertEqual(card.purchase_cost_sc, 1)
        self.assertEqual(card.purchase_cost_gc, 0)
        self.assertEqual(self.balance(currency="SC"), 999)
        self.assertEqual(self.balance(currency="GC"), 1_000_000)

    def test_thousand_cards_win_about_a_quarter(self):
        ct = self.make_card(tiers=[
            dict(win_probability=0.15, winning_symbol="cherry", prize_gc=100),
            dict(win_probability=0.10, winning_symbol="bell", prize_gc=300),
        ])
        self.fund()
        winners = 0
        for _ in range(1000):
            card = self.svc.purchase_card("u1", ct.id)
            shown = qualifying_symbols(card.symbols, ct.min_symbols_to_match)
            if card.is_winner:
                winners += 1
                self.assertEqual(shown, [card.outcome.winning_symbol])
            else:
                self.assertEqual(shown, [])
        # 4 sigma either side of 250
        self.assertGreaterEqual(winners, 195)
        self.assertLessEqual(winners, 305)
        self.assertEqual(self.catalog.get_card_type(ct.id).total_sold, 1000)

    def test_unknown_card_type(self):
        with self.assertRaises(NotFound):
            self.svc.purchase_card("u1", "nope")

    def test_inactive_card_type(self):
        ct = self.sure_win()
        self.fund()
        self.catalog.update_card_type(ct.id, is_active=False)
        with self.assertRaises(NotAvailable):
            self.svc.purchase_card("u1", ct.id)

    def test_inactive_theme(self):
        ct = self.sure_win()
        self.fund()
        self.catalog.set_theme_active(self.theme.id, False)
        with self.assertRaises(NotAvailable):
            self.svc.purchase_card("u1", ct.id)

    def test_outside_sales_window(self):
        ct = self.make_card(launch_date=self.now + timedelta(days=1),
                            end_date=self.now + timedelta(days=10))
        self.fund()
        with self.assertRaises(NotAvailable):
            self.svc.purchase_card("u1", ct.id)
        self.now += timedelta(days=2)
        self.svc.purchase_card("u1", ct.id)
        self.now += timedelta(days=30)
        with self.assertRaises(NotAvailable):
            self.svc.purchase_card("u1", ct.id)

    def test_currency_not_sold(self):
        ct = self.make_card(cost_sc=0)
        self.fund()
        with self.assertRaises(NotAvailable):
            self.svc.purchase_card("u1", ct.id, currency="SC")

    def test_daily_limit_resets_next_day(self):
        ct = self.make_card(daily_purchase_limit=2)
        self.fund()
        self.svc.purchase_card("u1", ct.id)
        self.svc.purchase_card("u1", ct.id)
        with self.assertRaises(LimitExceeded) as ctx:
            self.svc.purchase_card("u1", ct.id)
        self.assertEqual(ctx.exception.limit, "daily")
        # another holder is unaffected
        self.fund("u2")
        self.svc.purchase_card("u2", ct.id)
        self.now += timedelta(days=1)
        self.svc.purchase_card("u1", ct.id)

    def test_lifetime_limit(self):
        ct = self.make_card(max_instances_per_user=3)
        self.fund()
        for day in range(3):
            self.now += timedelta(days=day)
            self.svc.purchase_card("u1", ct.id)
        self.now += timedelta(days=5)
        with self.assertRaises(LimitExceeded) as ctx:
            self.svc.purchase_card("u1", ct.id)
        self.assertEqual(ctx.exception.limit, "lifetime")

    def test_eligibility(self):
        ct = self.make_card(purchase_requires_kyc=True, min_age_requirement=21)
        self.fund()
        with self.assertRaises(Forbidden):
            self.svc.purchase_card("u1", ct.id, context={"kyc_verified": False})
        with self.assertRaises(Forbidden):
            self.svc.purchase_card("u1", ct.id, context={"kyc_verified": True, "age": 19})
        self.svc.purchase_card("u1", ct.id, context={"kyc_verified": True, "age": 30})

    def test_custom_eligibility_collaborator(self):
        def blocked(holder_id, card_type, context):
            raise Forbidden("self-excluded")

        ct = self.sure_win()
        self.fund()
        with self.assertRaises(Forbidden):
            self.make_service(eligibility=blocked).purchase_card("u1", ct.id)
        self.assertEqual(self.balance(), 1_000_000)

    def test_insufficient_funds_has_no_side_effects(self):
        ct = self.sure_win(max_total_wins=5)
        with self.assertRaises(InsufficientFunds):
            self.svc.purchase_card("broke", ct.id)
        self.assertEqual(self.svc.get_holder_cards("broke"), [])
        tier = self.catalog.active_tiers(ct.id)[0]
        self.assertEqual(tier.total_wins, 0)

    def test_holder_locked_before_limit_recheck_and_debit(self):
        calls = []

        class RecordingLedger(Ledger):
            def lock_holder(self, holder_id):
                calls.append("lock")
                super().lock_holder(holder_id)

            def debit(self, holder_id, currency, amount, reference=None):
                calls.append("debit")
                super().debit(holder_id, currency, amount, reference)

        ct = self.sure_win()
        self.fund()
        self.make_service(ledger_factory=RecordingLedger).purchase_card("u1", ct.id)
        self.assertEqual(calls, ["lock", "debit"])

    def test_holder_lock_is_row_level_on_postgres(self):
        pg = MagicMock(is_pg=True)
        Ledger(pg).lock_holder("u1")
        sql, params = pg.execute.call_args[0]
        self.assertIn("FOR UPDATE", sql)
        self.assertEqual(params, ("u1",))

        sqlite = MagicMock(is_pg=False)
        Ledger(sqlite).lock_holder("u1")
        sqlite.execute.assert_not_called()

    def test_ledger_failure_rolls_back_purchase(self):
        ct = self.sure_win(max_total_wins=5)
        self.fund()
        failing = self.make_service(ledger_factory=FailingDebitLedger)
        with self.assertRaises(RuntimeError):
            failing.purchase_card("u1", ct.id)
        self.assertEqual(self.balance(), 1_000_000)
        self.assertEqual(self.svc.get_holder_cards("u1"), [])
        self.assertEqual(self.catalog.active_tiers(ct.id)[0].total_wins, 0)

    def test_failure_after_draw_releases_supply(self):
        ct = self.sure_win(max_total_wins=1)
        self.fund()
        broken = self.make_service(layout_engine=BrokenLayout())
        with self.assertRaises(LayoutError):
            broken.purchase_card("u1", ct.id)
        self.assertEqual(self.catalog.active_tiers(ct.id)[0].total_wins, 0)
        self.assertEqual(self.balance(), 1_000_000)
        # the single capped win is still available
        self.assertTrue(self.svc.purchase_card("u1", ct.id).is_winner)


# ============================================================
# Supply caps
# ============================================================

class TestSupplyCaps(ServiceTestCase):

    def test_lifetime_cap_turns_later_draws_into_losses(self):
        ct = self.sure_win(max_total_wins=3)
        self.fund()
        cards = [self.svc.purchase_card("u1", ct.id) for _ in range(6)]
        self.assertEqual(sum(c.is_winner for c in cards), 3)
        for card in cards[3:]:
            self.assertEqual(qualifying_symbols(card.symbols, 3), [])
            self.assertIsNotNone(card.outcome.downgraded_from)
        self.assertEqual(self.catalog.active_tiers(ct.id)[0].total_wins, 3)

    def test_daily_cap_rolls_over(self):
        ct = self.sure_win(max_wins_per_day=2)
        self.fund()
        today = [self.svc.purchase_card("u1", ct.id) for _ in range(3)]
        self.assertEqual([c.is_winner for c in today], [True, True, False])
        self.now += timedelta(days=1)
        self.assertTrue(self.svc.purchase_card("u1", ct.id).is_winner)
        tier = self.catalog.active_tiers(ct.id)[0]
        self.assertEqual(tier.current_wins_today, 1)
        self.assertEqual(tier.total_wins, 3)

    def test_zero_daily_cap_never_wins(self):
        ct = self.sure_win(max_wins_per_day=0)
        self.fund()
        self.assertFalse(self.svc.purchase_card("u1", ct.id).is_winner)

    def test_redraw_policy_moves_win_to_live_tier(self):
        ct = self.make_card(tiers=[
            dict(win_probability=0.6, winning_symbol="seven", prize_gc=5000, max_total_wins=1),
            dict(win_probability=0.4, winning_symbol="cherry", prize_gc=100),
        ])
        self.fund()
        svc = self.make_service(policy="redraw")
        cards = [svc.purchase_card("u1", ct.id) for _ in range(20)]
        self.assertTrue(all(c.is_winner for c in cards))
        self.assertEqual(sum(c.outcome.winning_symbol == "seven" for c in cards), 1)

    def test_inactive_tier_is_never_drawn(self):
        ct = self.make_card()
        parked = self.catalog.create_prize_tier(ct.id, "T0", "Parked", 0.9, "seven",
                                                prize_gc=5000, is_active=False, sort_order=0)
        live = self.catalog.create_prize_tier(ct.id, "T1", "Bells", 0.1, "bell",
                                              prize_gc=100, max_total_wins=5, sort_order=1)
        self.fund()
        for policy in ("lose", "redraw"):
            svc = self.make_service(policy=policy)
            cards = [svc.purchase_card("u1", ct.id) for _ in range(150)]
            self.assertTrue(all(c.outcome.prize_id in (None, live.id) for c in cards))
            self.assertNotIn("seven", {c.outcome.winning_symbol for c in cards})
        self.assertEqual(self.catalog.get_prize_tier(parked.id).total_wins, 0)
        self.assertLessEqual(self.catalog.get_prize_tier(live.id).total_wins, 5)

    def test_cap_holds_under_concurrent_purchases(self):
        ct = self.sure_win(max_total_wins=5)
        holders = [f"h{i}" for i in range(8)]
        for h in holders:
            self.fund(h)

        results, errors = [], []
        lock = threading.Lock()

        def buy(holder):
            svc = self.make_service()
            for _ in range(4):
                try:
                    card = svc.purchase_card(holder, ct.id)
                    with lock:
                        results.append(card)
                except Exception as e:
                    with lock:
                        errors.append(e)

        threads = [threading.Thread(target=buy, args=(h,)) for h in holders]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(results), 32)
        self.assertEqual(sum(c.is_winner for c in results), 5)
        self.assertEqual(self.catalog.active_tiers(ct.id)[0].total_wins, 5)


# ============================================================
# Reveal state machine
# ============================================================

class TestScratch(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.ct = self.sure_win()
        self.fund()
        self.card = self.svc.purchase_card("u1", self.ct.id)

    def test_eight_of_nine_is_not_claimable(self):
        for area in range(8):
            result = self.svc.scratch_area(self.card.instance_id, area, "u1")
            self.assertFalse(result.card_complete)
        self.assertEqual(result.instance.status, CardStatus.PARTIALLY_SCRATCHED)
        with self.assertRaises(NotCompleted):
            self.svc.claim_prize(self.card.instance_id, "u1")

        result = self.svc.scratch_area(self.card.instance_id, 8, "u1")
        self.assertTrue(result.card_complete)
        self.assertEqual(result.instance.status, CardStatus.COMPLETED)
        self.assertTrue(self.svc.claim_prize(self.card.instance_id, "u1").success)

    def test_reveal_records_symbol_and_log(self):
        result = self.svc.scratch_area(self.card.instance_id, 4, "u1")
        self.assertEqual(result.symbol, self.card.symbols[4])
        stored = self.svc.get_card(self.card.instance_id, "u1")
        self.assertTrue(stored.progress[4].revealed)
        self.assertEqual(stored.progress[4].symbol, self.card.symbols[4])
        self.assertEqual(len(stored.reveal_log), 1)
        self.assertEqual(stored.reveal_log[0].area_index, 4)
        self.assertEqual(stored.first_scratch_at, "2026-03-01T12:00:00.000000+00:00")

    def test_re_reveal_is_an_error(self):
        self.svc.scratch_area(self.card.instance_id, 0, "u1")
        with self.assertRaises(InvalidState):
            self.svc.scratch_area(self.card.instance_id, 0, "u1")
        stored = self.svc.get_card(self.card.instance_id, "u1")
        self.assertEqual(len(stored.reveal_log), 1)

    def test_area_out_of_range(self):
        for area in (-1, 9):
            with self.assertRaises(InvalidState):
                self.svc.scratch_area(self.card.instance_id, area, "u1")

    def test_foreign_and_missing_cards(self):
        with self.assertRaises(Forbidden):
            self.svc.scratch_area(self.card.instance_id, 0, "intruder")
        with self.assertRaises(NotFound):
            self.svc.scratch_area("SC_missing", 0, "u1")

    def test_completed_card_rejects_reveals(self):
        self.scratch_all(self.card)
        with self.assertRaises(InvalidState):
            self.svc.scratch_area(self.card.instance_id, 0, "u1")

    def test_completion_time(self):
        self.svc.scratch_area(self.card.instance_id, 0, "u1")
        self.now += timedelta(seconds=42)
        for area in range(1, 9):
            result = self.svc.scratch_area(self.card.instance_id, area, "u1")
        self.assertEqual(result.instance.total_scratch_time, 42)
        self.assertEqual(result.instance.completed_at, "2026-03-01T12:00:42.000000+00:00")

    def test_winnings_revealed_once_combination_visible(self):
        seen = 0
        for area in range(9):
            result = self.svc.scratch_area(self.card.instance_id, area, "u1")
            if self.card.symbols[area] == "bell":
                seen += 1
            self.assertEqual(result.winnings_revealed, seen >= 3)
        self.assertTrue(result.winnings_revealed)

    def test_expired_card_transitions_on_access(self):
        self.svc.scratch_area(self.card.instance_id, 0, "u1")
        self.now += timedelta(days=31)
        with self.assertRaises(InvalidState):
            self.svc.scratch_area(self.card.instance_id, 1, "u1")
        stored = self.svc.get_card(self.card.instance_id, "u1")
        self.assertEqual(stored.status, CardStatus.EXPIRED)
        with self.assertRaises(InvalidState):
            self.svc.scratch_area(self.card.instance_id, 1, "u1")

    def test_expire_sweep(self):
        other = self.svc.purchase_card("u1", self.ct.id)
        self.scratch_all(other)
        self.now += timedelta(days=31)
        self.assertEqual(self.svc.expire_cards(), 1)
        self.assertEqual(self.svc.get_card(self.card.instance_id).status, CardStatus.EXPIRED)
        self.assertEqual(self.svc.get_card(other.instance_id).status, CardStatus.COMPLETED)
        self.assertEqual(self.svc.expire_cards(), 0)

    def test_concurrent_duplicate_reveal(self):
        outcomes, lock = [], threading.Lock()

        def reveal():
            try:
                self.make_service().scratch_area(self.card.instance_id, 3, "u1")
                result = "ok"
            except InvalidState:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=reveal) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(len(self.svc.get_card(self.card.instance_id).reveal_log), 1)


# ============================================================
# Settlement
# ============================================================

class TestClaim(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.ct = self.sure_win(prize_gc=500, prize_sc=5)
        self.fund()
        self.card = self.svc.purchase_card("u1", self.ct.id)

    def test_claim_credits_both_currencies_once(self):
        self.scratch_all(self.card)
        gc_before = self.balance()
        sc_before = self.balance(currency="SC")

        result = self.svc.claim_prize(self.card.instance_id, "u1")
        self.assertTrue(result.success)
        self.assertTrue(result.settlement_ref.startswith("STL_"))
        self.assertEqual((result.winnings_gc, result.winnings_sc), (500, 5))
        self.assertEqual(self.balance(), gc_before + 500)
        self.assertEqual(self.balance(currency="SC"), sc_before + 5)

        stored = self.svc.get_card(self.card.instance_id, "u1")
        self.assertTrue(stored.prize_claimed)
        self.assertEqual(stored.settlement_ref, result.settlement_ref)

        with self.assertRaises(AlreadyClaimed):
            self.svc.claim_prize(self.card.instance_id, "u1")
        self.assertEqual(self.balance(), gc_before + 500)

        rows = self.db.execute("SELECT * FROM settlements WHERE instance_id = ?",
                               (self.card.instance_id,)).fetchall()
        self.assertEqual(len(rows), 1)

    def test_losing_card_cannot_claim(self):
        loser_type = self.make_card("loser")
        card = self.svc.purchase_card("u1", loser_type.id)
        self.assertFalse(card.is_winner)
        self.scratch_all(card)
        with self.assertRaises(NotAWinner):
            self.svc.claim_prize(card.instance_id, "u1")

    def test_foreign_claim(self):
        self.scratch_all(self.card)
        with self.assertRaises(Forbidden):
            self.svc.claim_prize(self.card.instance_id, "intruder")

    def test_failed_credit_leaves_card_claimable(self):
        self.scratch_all(self.card)
        gc_before = self.balance()
        failing = self.make_service(ledger_factory=FailingCreditLedger)
        with self.assertRaises(RuntimeError):
            failing.claim_prize(self.card.instance_id, "u1")

        stored = self.svc.get_card(self.card.instance_id, "u1")
        self.assertFalse(stored.prize_claimed)
        self.assertIsNone(stored.settlement_ref)
        self.assertEqual(self.balance(), gc_before)
        self.assertEqual(self.db.execute("SELECT COUNT(*) AS n FROM settlements").fetchone()["n"], 0)

        self.assertTrue(self.svc.claim_prize(self.card.instance_id, "u1").success)
        self.assertEqual(self.balance(), gc_before + 500)

    def test_concurrent_claims_pay_once(self):
        self.scratch_all(self.card)
        gc_before = self.balance()
        outcomes, lock = [], threading.Lock()

        def claim():
            try:
                self.make_service().claim_prize(self.card.instance_id, "u1")
                result = "paid"
            except AlreadyClaimed:
                result = "already"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=claim) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(outcomes.count("paid"), 1)
        self.assertEqual(outcomes.count("already"), 5)
        self.assertEqual(self.balance(), gc_before + 500)


# ============================================================
# Reads + audit
# ============================================================

class TestReadsAndAudit(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.ct = self.sure_win()
        self.fund()

    def test_holder_cards_newest_first_with_filter(self):
        first = self.svc.purchase_card("u1", self.ct.id)
        self.now += timedelta(minutes=1)
        second = self.svc.purchase_card("u1", self.ct.id)
        self.scratch_all(first)

        cards = self.svc.get_holder_cards("u1")
        self.assertEqual([c.instance_id for c in cards], [second.instance_id, first.instance_id])
        done = self.svc.get_holder_cards("u1", status="completed")
        self.assertEqual([c.instance_id for c in done], [first.instance_id])
        self.assertEqual(len(self.svc.get_holder_cards("u1", limit=1)), 1)
        self.assertEqual(self.svc.get_holder_cards("someone-else"), [])

    def test_verify_untampered_card(self):
        card = self.svc.purchase_card("u1", self.ct.id)
        report = self.svc.verify_card(card.instance_id)
        self.assertTrue(report.hash_matches)
        self.assertTrue(report.layout_matches)
        self.assertTrue(report.draw_matches)
        self.assertTrue(report.verified)
        self.assertEqual(report.recomputed_hash, card.verification_hash)

    def test_verify_detects_outcome_tampering(self):
        card = self.svc.purchase_card("u1", self.ct.id)
        outcome = card.outcome.to_dict()
        outcome["winnings_gc"] = 999_999
        with self.db.transaction():
            self.db.execute("UPDATE card_instances SET outcome_json = ? WHERE instance_id = ?",
                            (json.dumps(outcome), card.instance_id))
        report = self.svc.verify_card(card.instance_id)
        self.assertFalse(report.hash_matches)
        self.assertFalse(report.verified)

    def test_verify_detects_grid_tampering(self):
        card = self.svc.purchase_card("u1", self.ct.id)
        grid = list(reversed(card.symbols))
        if grid == card.symbols:
            grid = grid[1:] + grid[:1]
        with self.db.transaction():
            self.db.execute("UPDATE card_instances SET symbols_json = ? WHERE instance_id = ?",
                            (json.dumps(grid), card.instance_id))
        report = self.svc.verify_card(card.instance_id)
        self.assertTrue(report.hash_matches)
        self.assertFalse(report.layout_matches)

    def test_holder_verify_requires_completion(self):
        card = self.svc.purchase_card("u1", self.ct.id)
        with self.assertRaises(NotCompleted):
            self.svc.verify_card(card.instance_id, "u1")
        self.scratch_all(card)
        self.assertTrue(self.svc.verify_card(card.instance_id, "u1").verified)
        with self.assertRaises(Forbidden):
            self.svc.verify_card(card.instance_id, "intruder")

    def test_card_type_details(self):
        details = self.svc.get_card_type_details(self.ct.id)
        self.assertEqual(details["card_type"]["id"], self.ct.id)
        self.assertEqual(len(details["prizes"]), 1)
        self.assertAlmostEqual(details["rtp"]["hit_rate_theoretical"], 1.0)
        with self.assertRaises(NotFound):
            self.svc.get_card_type_details("nope")


# ============================================================
# Catalog edits
# ============================================================

class TestCatalogValidation(ServiceTestCase):

    def test_probabilities_cannot_exceed_one(self):
        ct = self.make_card(tiers=[dict(win_probability=0.7, winning_symbol="bell")])
        with self.assertRaises(CatalogError):
            self.catalog.create_prize_tier(ct.id, "T2", "Too much", 0.4, "star")
        # inactive tiers do not count towards the sum
        tier = self.catalog.create_prize_tier(ct.id, "T2", "Parked", 0.4, "star", is_active=False)
        with self.assertRaises(CatalogError):
            self.catalog.set_prize_tier_active(tier.id, True)
        self.assertAlmostEqual(self.catalog.validate_prize_table(ct.id), 0.7)

    def test_tier_must_fit_the_card(self):
        ct = self.make_card()
        with self.assertRaises(CatalogError):
            self.catalog.create_prize_tier(ct.id, "T1", "Ghost", 0.1, "unicorn")
        with self.assertRaises(CatalogError):
            self.catalog.create_prize_tier(ct.id, "T1", "Too many", 0.1, "bell", match_count=10)
        with self.assertRaises(CatalogError):
            self.catalog.create_prize_tier(ct.id, "T1", "Too rich", 0.1, "bell", prize_gc=20_000)

    def test_card_shape_validation(self):
        with self.assertRaises(CatalogError):
            self.make_card("bad_match", min_symbols_to_match=10)
        with self.assertRaises(CatalogError):
            self.make_card("bad_pool", symbols=["bell"])
        with self.assertRaises(CatalogError):
            self.make_card("blank_pool", symbols=["bell", "blank"])
        with self.assertRaises(CatalogError):
            self.catalog.update_card_type("whatever", theme_id="other")

    def test_probability_columns_are_double_precision(self):
        for column in ("overall_odds", "rtp_percentage", "win_probability"):
            self.assertIn(f"{column} DOUBLE PRECISION", SCHEMA_SQL)
        ct = self.make_card(tiers=[dict(win_probability=0.6, winning_symbol="bell")])
        self.catalog.create_prize_tier(ct.id, "T2", "Rest", 0.4, "star")
        self.assertAlmostEqual(self.catalog.validate_prize_table(ct.id), 1.0, places=12)

    def test_updates_are_validated(self):
        ct = self.make_card(tiers=[dict(win_probability=0.1, winning_symbol="bell", prize_gc=500)],
                            launch_date=self.now)
        bad_updates = [
            dict(currency_type="EUR"),
            dict(cost_gc=-1),
            dict(daily_purchase_limit=-5),
            dict(end_date=self.now - timedelta(days=1)),
            dict(max_prize_gc=100),
        ]
        for fields in bad_updates:
            with self.assertRaises(CatalogError, msg=str(fields)):
                self.catalog.update_card_type(ct.id, **fields)
        with self.assertRaises(CatalogError):
            self.catalog.update_card_type("nope", cost_gc=5)

        self.assertEqual(self.catalog.get_card_type(ct.id).cost_gc, 100)
        updated = self.catalog.update_card_type(ct.id, cost_gc=200, max_prize_gc=500,
                                                end_date=self.now + timedelta(days=7))
        self.assertEqual(updated.cost_gc, 200)
        self.assertEqual(updated.max_prize_gc, 500)

    def test_list_themes(self):
        self.catalog.create_theme("retired", "Retired", is_active=False)
        self.assertEqual([t.name for t in self.svc.list_themes()], ["classic"])
        names = {t.name for t in self.catalog.list_themes(active_only=False)}
        self.assertEqual(names, {"classic", "retired"})

    def test_rtp_report(self):
        ct = self.make_card(tiers=[
            dict(win_probability=0.2, winning_symbol="bell", prize_gc=200),
            dict(win_probability=0.05, winning_symbol="star", prize_gc=1000),
        ])
        report = self.catalog.rtp_report(ct.id, rounds=10_000)
        self.assertAlmostEqual(report["hit_rate_theoretical"], 0.25)
        self.assertAlmostEqual(report["rtp_theoretical"], 0.9)
        self.assertIn("simulation", report)


if __name__ == "__main__":
    unittest.main()
