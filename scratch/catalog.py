"""
SCRATCHWORKS - Catalog & Prize Table Access

Reads card types / prize tiers and owns the one piece of shared mutable
catalog state: the per-tier win counters. Operator edits (create theme,
card type, tier) are thin but validate everything the engine relies on,
so the draw path never has to: probabilities of active tiers sum to <= 1,
winning symbols belong to the card's pool, match counts fit the grid.

Usage:
    from scratch.catalog import Catalog
    catalog = Catalog(db)                       # db: config.database.DatabaseConnection
    ct = catalog.create_card_type(theme.id, "lucky7", "Lucky 7", cost_gc=100)
    catalog.create_prize_tier(ct.id, "T1", "Bell x3", 0.25, "bell", prize_gc=500)
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Optional

from config.settings import ScratchConfig
from scratch.errors import CatalogError
from scratch.models import CardType, PrizeTier, Theme, iso, parse_iso, utc_now

logger = logging.getLogger("scratchworks.catalog")

PROBABILITY_EPSILON = 1e-9

_CARD_TYPE_SELECT = """
    SELECT ct.*, t.display_name AS theme_display_name, t.is_active AS theme_is_active
    FROM card_types ct
    JOIN themes t ON ct.theme_id = t.id
"""

_UPDATABLE_CARD_FIELDS = {
    "display_name", "cost_gc", "cost_sc", "currency_type", "max_prize_gc", "max_prize_sc",
    "overall_odds", "rtp_percentage", "daily_purchase_limit", "max_instances_per_user",
    "purchase_requires_kyc", "min_age_requirement", "launch_date", "end_date",
    "is_active", "sort_order",
}


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def day_key(now: datetime) -> str:
    """UTC calendar day used for daily counters."""
    return iso(now)[:10]


def _as_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return parse_iso(iso(value))
    return parse_iso(value)


class Catalog:
    """Card type + prize table store bound to one connection."""

    def __init__(self, db):
        self.db = db

    # ─── Themes ───────────────────────────────────────────────

    def create_theme(self, name: str, display_name: str = "",
                     is_active: bool = True, sort_order: int = 0) -> Theme:
        theme = Theme(id=_new_id(), name=name, display_name=display_name or name,
                      is_active=is_active, sort_order=sort_order)
        self.db.execute(
            """INSERT INTO themes (id, name, display_name, is_active, sort_order, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (theme.id, theme.name, theme.display_name, int(is_active), sort_order, iso(utc_now())),
        )
        self.db.commit()
        return theme

    def set_theme_active(self, theme_id: str, active: bool) -> None:
        self.db.execute("UPDATE themes SET is_active = ? WHERE id = ?", (int(active), theme_id))
        self.db.commit()

    def list_themes(self, active_only: bool = True) -> list[Theme]:
        sql = "SELECT * FROM themes"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY sort_order, display_name"
        return [Theme.from_row(r) for r in self.db.execute(sql).fetchall()]

    # ─── Card types ───────────────────────────────────────────

    def create_card_type(
        self,
        theme_id: str,
        name: str,
        display_name: str = "",
        total_scratch_areas: int = 9,
        min_symbols_to_match: int = 3,
        cost_gc: int = 0,
        cost_sc: int = 0,
        currency_type: str = "GC",
        max_prize_gc: int = 0,
        max_prize_sc: int = 0,
        overall_odds: float = 0.25,
        rtp_percentage: float = 85.0,
        daily_purchase_limit: int = 50,
        max_instances_per_user: int = 100,
        purchase_requires_kyc: bool = False,
        min_age_requirement: int = 18,
        symbols: Optional[list[str]] = None,
        launch_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        is_active: bool = True,
        sort_order: int = 0,
    ) -> CardType:
        """Create a card type. Raises CatalogError on an unplayable configuration."""
        pool = list(symbols) if symbols else list(ScratchConfig.DEFAULT_SYMBOLS)

        if total_scratch_areas < 1:
            raise CatalogError("A card needs at least one scratch area")
        if not 2 <= min_symbols_to_match <= total_scratch_areas:
            raise CatalogError(
                f"min_symbols_to_match must be between 2 and {total_scratch_areas}",
                {"min_symbols_to_match": min_symbols_to_match},
            )
        if len(set(pool)) != len(pool) or len(pool) < 2:
            raise CatalogError("Symbol pool needs at least two distinct symbols")
        if ScratchConfig.BLANK_SYMBOL in pool:
            raise CatalogError(f"'{ScratchConfig.BLANK_SYMBOL}' is reserved for blank fillers")
        self._validate_card_fields(currency_type=currency_type, cost_gc=cost_gc, cost_sc=cost_sc,
                                   max_prize_gc=max_prize_gc, max_prize_sc=max_prize_sc,
                                   daily_purchase_limit=daily_purchase_limit,
                                   max_instances_per_user=max_instances_per_user,
                                   launch_date=launch_date, end_date=end_date)

        theme = self.db.execute("SELECT id FROM themes WHERE id = ?", (theme_id,)).fetchone()
        if not theme:
            raise CatalogError(f"Theme not found: {theme_id}")

        card_id = _new_id()
        self.db.execute(
            """INSERT INTO card_types
               (id, theme_id, name, display_name, total_scratch_areas, min_symbols_to_match,
                cost_gc, cost_sc, currency_type, max_prize_gc, max_prize_sc, overall_odds,
                rtp_percentage, daily_purchase_limit, max_instances_per_user,
                purchase_requires_kyc, min_age_requirement, symbols_json, launch_date,
                end_date, is_active, sort_order, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (card_id, theme_id, name, display_name or name, total_scratch_areas,
             min_symbols_to_match, cost_gc, cost_sc, currency_type, max_prize_gc,
             max_prize_sc, overall_odds, rtp_percentage, daily_purchase_limit,
             max_instances_per_user, int(purchase_requires_kyc), min_age_requirement,
             json.dumps(pool), iso(launch_date), iso(end_date), int(is_active),
             sort_order, iso(utc_now())),
        )
        self.db.commit()
        logger.info(f"Card type created: {name} ({card_id}) grid={total_scratch_areas} "
                    f"match={min_symbols_to_match}")
        return self.get_card_type(card_id)

    def update_card_type(self, card_type_id: str, **fields) -> CardType:
        unknown = set(fields) - _UPDATABLE_CARD_FIELDS
        if unknown:
            raise CatalogError(f"Fields cannot be updated: {sorted(unknown)}")
        card = self.get_card_type(card_type_id)
        if not card:
            raise CatalogError(f"Card type not found: {card_type_id}")
        if not fields:
            return card

        merged = {key: getattr(card, key, None) for key in _UPDATABLE_CARD_FIELDS}
        merged.update(fields)
        self._validate_card_fields(
            currency_type=merged["currency_type"], cost_gc=merged["cost_gc"],
            cost_sc=merged["cost_sc"], max_prize_gc=merged["max_prize_gc"],
            max_prize_sc=merged["max_prize_sc"],
            daily_purchase_limit=merged["daily_purchase_limit"],
            max_instances_per_user=merged["max_instances_per_user"],
            launch_date=merged["launch_date"], end_date=merged["end_date"],
        )
        self._check_prize_ceiling(card_type_id, merged["max_prize_gc"], merged["max_prize_sc"])

        values = []
        for key, value in fields.items():
            if isinstance(value, datetime):
                value = iso(value)
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)
        assignments = ", ".join(f"{k} = ?" for k in fields)
        self.db.execute(f"UPDATE card_types SET {assignments} WHERE id = ?", (*values, card_type_id))
        self.db.commit()
        logger.info(f"Card type updated: {card_type_id} fields={sorted(fields)}")
        return self.get_card_type(card_type_id)

    @staticmethod
    def _validate_card_fields(currency_type: str, cost_gc: int, cost_sc: int,
                              max_prize_gc: int, max_prize_sc: int,
                              daily_purchase_limit: int, max_instances_per_user: int,
                              launch_date, end_date) -> None:
        if currency_type not in ScratchConfig.CURRENCIES:
            raise CatalogError(f"Unknown currency: {currency_type}")
        if cost_gc < 0 or cost_sc < 0:
            raise CatalogError("Costs cannot be negative")
        if max_prize_gc < 0 or max_prize_sc < 0:
            raise CatalogError("Maximum prizes cannot be negative")
        if daily_purchase_limit < 0 or max_instances_per_user < 0:
            raise CatalogError("Purchase limits cannot be negative")
        start, end = _as_datetime(launch_date), _as_datetime(end_date)
        if start and end and end <= start:
            raise CatalogError("end_date must be after launch_date")

    def _check_prize_ceiling(self, card_type_id: str, max_prize_gc: int,
                             max_prize_sc: int) -> None:
        """Existing tiers (active or not) must still fit under the card maximums."""
        row = self.db.execute(
            "SELECT COALESCE(MAX(prize_gc), 0) AS gc, COALESCE(MAX(prize_sc), 0) AS sc "
            "FROM prize_tiers WHERE card_type_id = ?",
            (card_type_id,),
        ).fetchone()
        if max_prize_gc and row["gc"] > max_prize_gc:
            raise CatalogError(f"max_prize_gc {max_prize_gc} is below an existing payout of {row['gc']}")
        if max_prize_sc and row["sc"] > max_prize_sc:
            raise CatalogError(f"max_prize_sc {max_prize_sc} is below an existing payout of {row['sc']}")

    def get_card_type(self, card_type_id: str) -> Optional[CardType]:
        row = self.db.execute(_CARD_TYPE_SELECT + " WHERE ct.id = ?", (card_type_id,)).fetchone()
        return CardType.from_row(row) if row else None

    def list_card_types(self, active_only: bool = True) -> list[CardType]:
        sql = _CARD_TYPE_SELECT
        if active_only:
            sql += " WHERE ct.is_active = 1 AND t.is_active = 1"
        sql += " ORDER BY ct.sort_order, ct.display_name"
        return [CardType.from_row(r) for r in self.db.execute(sql).fetchall()]

    # ─── Prize tiers ──────────────────────────────────────────

    def create_prize_tier(
        self,
        card_type_id: str,
        prize_tier: str,
        prize_name: str,
        win_probability: float,
        winning_symbol: str,
        match_count: Optional[int] = None,
        prize_gc: int = 0,
        prize_sc: int = 0,
        bonus_items: Optional[dict] = None,
        max_wins_per_day: Optional[int] = None,
        max_total_wins: Optional[int] = None,
        is_jackpot: bool = False,
        is_active: bool = True,
        sort_order: Optional[int] = None,
    ) -> PrizeTier:
        card = self.get_card_type(card_type_id)
        if not card:
            raise CatalogError(f"Card type not found: {card_type_id}")

        match_count = match_count or card.min_symbols_to_match
        self._validate_tier(card, win_probability, winning_symbol, match_count,
                            prize_gc, prize_sc, max_wins_per_day, max_total_wins)
        if is_active:
            total = self.total_probability(card_type_id) + win_probability
            if total > 1.0 + PROBABILITY_EPSILON:
                raise CatalogError(
                    f"Active tier probabilities would sum to {total:.6f} (> 1)",
                    {"card_type_id": card_type_id, "total_probability": total},
                )

        if sort_order is None:
            row = self.db.execute(
                "SELECT COUNT(*) AS n FROM prize_tiers WHERE card_type_id = ?", (card_type_id,)
            ).fetchone()
            sort_order = row["n"]

        tier_id = _new_id()
        self.db.execute(
            """INSERT INTO prize_tiers
               (id, card_type_id, prize_tier, prize_name, prize_gc, prize_sc, bonus_items_json,
                win_probability, max_wins_per_day, max_total_wins, winning_symbol,
                match_count, is_jackpot, is_active, sort_order, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (tier_id, card_type_id, prize_tier, prize_name, prize_gc, prize_sc,
             json.dumps(bonus_items) if bonus_items else None, win_probability,
             max_wins_per_day, max_total_wins, winning_symbol, match_count,
             int(is_jackpot), int(is_active), sort_order, iso(utc_now())),
        )
        self.db.commit()
        return self.get_prize_tier(tier_id)

    def _validate_tier(self, card: CardType, win_probability: float, winning_symbol: str,
                       match_count: int, prize_gc: int, prize_sc: int,
                       max_wins_per_day: Optional[int], max_total_wins: Optional[int]) -> None:
        if not 0.0 < win_probability <= 1.0:
            raise CatalogError("win_probability must be in (0, 1]")
        if winning_symbol not in card.symbols:
            raise CatalogError(f"Winning symbol '{winning_symbol}' is not in the card's symbol pool",
                               {"symbols": card.symbols})
        if not card.min_symbols_to_match <= match_count <= card.total_scratch_areas:
            raise CatalogError(
                f"match_count must be between {card.min_symbols_to_match} "
                f"and {card.total_scratch_areas}",
            )
        if prize_gc < 0 or prize_sc < 0:
            raise CatalogError("Payouts cannot be negative")
        if card.max_prize_gc and prize_gc > card.max_prize_gc:
            raise CatalogError(f"prize_gc {prize_gc} exceeds card max {card.max_prize_gc}")
        if card.max_prize_sc and prize_sc > card.max_prize_sc:
            raise CatalogError(f"prize_sc {prize_sc} exceeds card max {card.max_prize_sc}")
        for label, cap in (("max_wins_per_day", max_wins_per_day), ("max_total_wins", max_total_wins)):
            if cap is not None and cap < 0:
                raise CatalogError(f"{label} cannot be negative")

    def set_prize_tier_active(self, tier_id: str, active: bool) -> PrizeTier:
        tier = self.get_prize_tier(tier_id)
        if not tier:
            raise CatalogError(f"Prize tier not found: {tier_id}")
        if active and not tier.is_active:
            total = self.total_probability(tier.card_type_id) + tier.win_probability
            if total > 1.0 + PROBABILITY_EPSILON:
                raise CatalogError(f"Activating would push probabilities to {total:.6f} (> 1)")
        self.db.execute("UPDATE prize_tiers SET is_active = ? WHERE id = ?", (int(active), tier_id))
        self.db.commit()
        return self.get_prize_tier(tier_id)

    def get_prize_tier(self, tier_id: str) -> Optional[PrizeTier]:
        row = self.db.execute("SELECT * FROM prize_tiers WHERE id = ?", (tier_id,)).fetchone()
        return PrizeTier.from_row(row) if row else None

    def list_prize_tiers(self, card_type_id: str, active_only: bool = True) -> list[PrizeTier]:
        """Tiers in stable draw order (sort_order, then id)."""
        sql = "SELECT * FROM prize_tiers WHERE card_type_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY sort_order, id"
        return [PrizeTier.from_row(r) for r in self.db.execute(sql, (card_type_id,)).fetchall()]

    def active_tiers(self, card_type_id: str) -> list[PrizeTier]:
        return self.list_prize_tiers(card_type_id, active_only=True)

    def total_probability(self, card_type_id: str) -> float:
        row = self.db.execute(
            "SELECT COALESCE(SUM(win_probability), 0) AS p FROM prize_tiers "
            "WHERE card_type_id = ? AND is_active = 1",
            (card_type_id,),
        ).fetchone()
        return float(row["p"])

    def validate_prize_table(self, card_type_id: str) -> float:
        """Total active win probability; CatalogError if it exceeds 1."""
        total = self.total_probability(card_type_id)
        if total > 1.0 + PROBABILITY_EPSILON:
            raise CatalogError(f"Prize table probabilities sum to {total:.6f} (> 1)",
                               {"card_type_id": card_type_id})
        return total

    # ─── Supply counters ──────────────────────────────────────

    def reserve_supply(self, tier_id: str, now: datetime) -> bool:
        """Atomically take one win from a tier's daily + lifetime supply.

        A single guarded UPDATE: the increment only applies while both caps
        have room, so concurrent purchases can never push a counter past
        its ceiling. The daily counter rolls over when wins_today_date is
        not today. Returns False when the tier is exhausted.
        """
        today = day_key(now)
        self.db.execute(
            """UPDATE prize_tiers
               SET total_wins = total_wins + 1,
                   current_wins_today = CASE WHEN wins_today_date = ?
                                             THEN current_wins_today + 1 ELSE 1 END,
                   wins_today_date = ?
               WHERE id = ? AND is_active = 1
                 AND (max_total_wins IS NULL OR total_wins < max_total_wins)
                 AND (max_wins_per_day IS NULL
                      OR (CASE WHEN wins_today_date = ? THEN current_wins_today ELSE 0 END)
                         < max_wins_per_day)""",
            (today, today, tier_id, today),
        )
        return self.db.rowcount == 1

    def record_sale(self, card_type_id: str, winnings_gc: int, winnings_sc: int) -> None:
        self.db.execute(
            """UPDATE card_types
               SET total_sold = total_sold + 1,
                   total_winnings_gc = total_winnings_gc + ?,
                   total_winnings_sc = total_winnings_sc + ?
               WHERE id = ?""",
            (winnings_gc, winnings_sc, card_type_id),
        )

    # ─── Math audit ───────────────────────────────────────────

    def rtp_report(self, card_type_id: str, currency: Optional[str] = None,
                   rounds: int = 0) -> dict:
        """Theoretical (and optionally simulated) RTP of the active prize table."""
        from sim_engine.rmg import get_game_engine

        card = self.get_card_type(card_type_id)
        if not card:
            raise CatalogError(f"Card type not found: {card_type_id}")
        engine = get_game_engine("scratch")
        config = engine.config_from_catalog(card, self.active_tiers(card_type_id),
                                            currency or card.currency_type,
                                            policy=ScratchConfig.exhausted_tier_policy())
        report = {
            "card_type_id": card_type_id,
            "currency": config["currency"],
            "cost": config["cost"],
            "hit_rate_theoretical": round(engine.hit_rate(config), 6),
            "rtp_theoretical": round(1.0 - engine.compute_house_edge(config), 6),
            "house_edge_theoretical": round(engine.compute_house_edge(config), 6),
            "rtp_target": card.rtp_percentage / 100.0,
            "odds_target": card.overall_odds,
        }
        if rounds:
            report["simulation"] = engine.simulate(config, rounds=rounds).to_dict()
        return report
