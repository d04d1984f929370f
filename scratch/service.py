"""
SCRATCHWORKS - Scratch Card Service

Purchase, reveal, settlement and audit of card instances.

Lifecycle:
    purchase_card   debit + draw + layout + commit, one transaction
    scratch_area    one area at a time, optimistic version check
    claim_prize     credit + settlement record + claim flag, one transaction
    expire_cards    batch sweep of overdue cards

Each call opens its own connection (config.database.get_standalone_db),
so the service can be shared between threads and request handlers.

Usage:
    from scratch.service import ScratchCardService
    svc = ScratchCardService()
    card = svc.purchase_card("user-1", card_type_id)
    svc.scratch_area(card.instance_id, 0, "user-1")
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from config.database import get_standalone_db
from config.settings import ScratchConfig
from scratch.catalog import Catalog
from scratch.errors import (
    AlreadyClaimed, Forbidden, InvalidState, LimitExceeded, NotAvailable,
    NotAWinner, NotCompleted, NotFound, ScratchCardError,
)
from scratch.layout import SymbolLayoutEngine
from scratch.ledger import Ledger
from scratch.models import (
    AreaProgress, CardInstance, CardStatus, CardType, ClaimResult, RevealEvent,
    ScratchResult, Theme, VerificationReport, iso, parse_iso, utc_now,
)
from scratch.outcome import OutcomeGenerator
from scratch.rng import SeededRNG, new_seed, verification_hash, verify_commitment

logger = logging.getLogger("scratchworks.cards")

_OPEN_STATUSES = (CardStatus.UNSCRATCHED.value, CardStatus.PARTIALLY_SCRATCHED.value)


def default_eligibility(holder_id: str, card_type: CardType, context: dict) -> None:
    """Age / KYC gate. Only checks what the caller actually supplied in
    `context` (keys: age, kyc_verified); identity proofing lives upstream."""
    if card_type.purchase_requires_kyc and context.get("kyc_verified") is False:
        raise Forbidden("KYC verification required for this card",
                        {"card_type_id": card_type.id})
    age = context.get("age")
    if age is not None and age < card_type.min_age_requirement:
        raise Forbidden(f"Minimum age for this card is {card_type.min_age_requirement}",
                        {"card_type_id": card_type.id})


class ScratchCardService:

    def __init__(
        self,
        db_path: Optional[str] = None,
        ledger_factory: Callable = Ledger,
        eligibility: Callable = default_eligibility,
        clock: Callable[[], datetime] = utc_now,
        policy: Optional[str] = None,
        layout_engine: Optional[SymbolLayoutEngine] = None,
    ):
        self.db_path = db_path
        self.ledger_factory = ledger_factory
        self.eligibility = eligibility
        self.clock = clock
        self.policy = policy or ScratchConfig.exhausted_tier_policy()
        self.layout = layout_engine or SymbolLayoutEngine()

    @contextmanager
    def _session(self):
        db = get_standalone_db(self.db_path)
        try:
            yield db
        finally:
            db.close()

    # ─── Catalog views ────────────────────────────────────────

    def list_themes(self, active_only: bool = True) -> list[Theme]:
        with self._session() as db:
            return Catalog(db).list_themes(active_only=active_only)

    def list_card_types(self, active_only: bool = True) -> list[CardType]:
        with self._session() as db:
            return Catalog(db).list_card_types(active_only=active_only)

    def get_card_type_details(self, card_type_id: str) -> dict:
        """Card type with its active prize table and theoretical RTP."""
        with self._session() as db:
            catalog = Catalog(db)
            card = catalog.get_card_type(card_type_id)
            if not card:
                raise NotFound(f"Card type not found: {card_type_id}")
            return {
                "card_type": card.to_dict(),
                "prizes": [t.to_dict() for t in catalog.active_tiers(card_type_id)],
                "rtp": catalog.rtp_report(card_type_id),
            }

    # ─── Balances ─────────────────────────────────────────────

    def get_balances(self, holder_id: str) -> dict[str, int]:
        with self._session() as db:
            return self.ledger_factory(db).balances(holder_id)

    def deposit(self, holder_id: str, currency: str, amount: int) -> int:
        with self._session() as db:
            return self.ledger_factory(db).deposit(holder_id, currency, amount)

    # ─── Purchase ─────────────────────────────────────────────

    def purchase_card(self, holder_id: str, card_type_id: str,
                      context: Optional[dict] = None,
                      currency: Optional[str] = None) -> CardInstance:
        """Buy one card. The outcome and grid are fixed here, before any reveal."""
        context = context or {}
        now = self.clock()

        with self._session() as db:
            catalog = Catalog(db)
            card = catalog.get_card_type(card_type_id)
            if not card:
                raise NotFound(f"Card type not found: {card_type_id}")

            currency = currency or card.currency_type
            cost = self._check_available(card, currency, now)
            self._check_limits(db, holder_id, card, now)
            self.eligibility(holder_id, card, context)

            seed = new_seed()
            instance_id = "SC_" + uuid.uuid4().hex
            try:
                with db.transaction():
                    ledger = self.ledger_factory(db)
                    # Re-check under the holder lock; a parallel purchase may have landed
                    ledger.lock_holder(holder_id)
                    self._check_limits(db, holder_id, card, now)
                    ledger.debit(holder_id, currency, cost, reference=instance_id)

                    outcome = OutcomeGenerator(catalog, self.policy).generate(
                        card, SeededRNG(seed, "outcome"), now)
                    symbols = self.layout.build(card, outcome, SeededRNG(seed, "layout"))

                    instance = CardInstance(
                        instance_id=instance_id,
                        card_type_id=card.id,
                        holder_id=holder_id,
                        purchase_cost_gc=cost if currency == "GC" else 0,
                        purchase_cost_sc=cost if currency == "SC" else 0,
                        purchase_currency=currency,
                        purchased_at=iso(now),
                        outcome=outcome,
                        symbols=symbols,
                        status=CardStatus.UNSCRATCHED,
                        progress=[AreaProgress(area=i) for i in range(len(symbols))],
                        reveal_log=[],
                        game_seed=seed,
                        verification_hash=verification_hash(instance_id, outcome.to_dict(), seed),
                        expires_at=iso(now + timedelta(days=ScratchConfig.CARD_EXPIRY_DAYS)),
                        client_info=self._client_info(context),
                    )
                    self._insert(db, instance)
                    catalog.record_sale(card.id, outcome.winnings_gc, outcome.winnings_sc)
            except ScratchCardError as e:
                logger.warning(f"Purchase rejected: holder={holder_id} card={card_type_id} {e}")
                raise
            except Exception:
                logger.exception(f"Purchase rolled back: holder={holder_id} card={card_type_id}")
                raise

        logger.info(f"Card purchased: {instance_id} holder={holder_id} type={card.name} "
                    f"cost={cost} {currency} winner={outcome.is_winner}")
        return instance

    def _check_available(self, card: CardType, currency: str, now: datetime) -> int:
        if not card.is_active or not card.theme_active:
            raise NotAvailable(f"Card type {card.name} is not active", {"card_type_id": card.id})
        if not card.in_window(now):
            raise NotAvailable(f"Card type {card.name} is outside its sales window",
                               {"launch_date": card.launch_date, "end_date": card.end_date})
        if currency not in ScratchConfig.CURRENCIES:
            raise NotAvailable(f"Unknown currency: {currency}")
        cost = card.cost_in(currency)
        if cost <= 0:
            raise NotAvailable(f"Card type {card.name} is not sold for {currency}",
                               {"currency": currency})
        return cost

    def _check_limits(self, db, holder_id: str, card: CardType, now: datetime) -> None:
        """Daily (UTC day) and lifetime purchase caps per holder; 0 = unlimited."""
        if card.daily_purchase_limit:
            day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            row = db.execute(
                """SELECT COUNT(*) AS n FROM card_instances
                   WHERE holder_id = ? AND card_type_id = ? AND purchased_at >= ?""",
                (holder_id, card.id, iso(day_start)),
            ).fetchone()
            if row["n"] >= card.daily_purchase_limit:
                raise LimitExceeded("Daily purchase limit reached", "daily",
                                    card.daily_purchase_limit)
        if card.max_instances_per_user:
            row = db.execute(
                "SELECT COUNT(*) AS n FROM card_instances WHERE holder_id = ? AND card_type_id = ?",
                (holder_id, card.id),
            ).fetchone()
            if row["n"] >= card.max_instances_per_user:
                raise LimitExceeded("Lifetime purchase limit reached", "lifetime",
                                    card.max_instances_per_user)

    @staticmethod
    def _client_info(context: dict) -> Optional[dict]:
        info = {k: context[k] for k in ("ip_address", "user_agent") if context.get(k)}
        return info or None

    def _insert(self, db, instance: CardInstance) -> None:
        outcome = instance.outcome
        db.execute(
            """INSERT INTO card_instances
               (instance_id, card_type_id, holder_id, purchase_cost_gc, purchase_cost_sc,
                purchase_currency, purchased_at, outcome_json, symbols_json, status,
                scratch_progress_json, reveal_log_json, is_winner, prize_id, winnings_gc,
                winnings_sc, bonus_items_json, game_seed, verification_hash,
                client_info_json, expires_at, version)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (instance.instance_id, instance.card_type_id, instance.holder_id,
             instance.purchase_cost_gc, instance.purchase_cost_sc, instance.purchase_currency,
             instance.purchased_at, json.dumps(outcome.to_dict()), json.dumps(instance.symbols),
             instance.status.value, self._progress_json(instance), "[]",
             int(outcome.is_winner), outcome.prize_id, outcome.winnings_gc, outcome.winnings_sc,
             json.dumps(outcome.bonus_items) if outcome.bonus_items else None,
             instance.game_seed, instance.verification_hash,
             json.dumps(instance.client_info) if instance.client_info else None,
             instance.expires_at, instance.version),
        )

    @staticmethod
    def _progress_json(instance: CardInstance) -> str:
        return json.dumps([asdict(a) for a in instance.progress])

    # ─── Reveal ───────────────────────────────────────────────

    def scratch_area(self, instance_id: str, area_index: int, holder_id: str) -> ScratchResult:
        now = self.clock()
        with self._session() as db:
            instance = self._load_owned(db, instance_id, holder_id)

            if not 0 <= area_index < len(instance.symbols):
                raise InvalidState(f"Area {area_index} does not exist on this card",
                                   {"total_areas": len(instance.symbols)})
            if instance.status.is_terminal:
                raise InvalidState(f"Card is {instance.status.value}",
                                   {"status": instance.status.value})
            if now > parse_iso(instance.expires_at):
                self._expire(db, instance)
                raise InvalidState("Card has expired", {"expires_at": instance.expires_at})

            area = instance.progress[area_index]
            if area.revealed:
                logger.warning(f"Re-reveal rejected: {instance_id} area={area_index}")
                raise InvalidState(f"Area {area_index} is already revealed",
                                   {"area_index": area_index})

            stamp = iso(now)
            symbol = instance.symbols[area_index]
            area.revealed = True
            area.symbol = symbol
            area.revealed_at = stamp
            instance.reveal_log.append(RevealEvent(area_index, symbol, stamp))
            if instance.first_scratch_at is None:
                instance.first_scratch_at = stamp

            complete = instance.revealed_count == len(instance.symbols)
            target = CardStatus.COMPLETED if complete else CardStatus.PARTIALLY_SCRATCHED
            if not instance.status.can_become(target):
                raise InvalidState(f"Cannot move from {instance.status.value} to {target.value}")
            instance.status = target
            if complete:
                instance.completed_at = stamp
                started = parse_iso(instance.first_scratch_at)
                instance.total_scratch_time = int((now - started).total_seconds())

            with db.transaction():
                db.execute(
                    """UPDATE card_instances
                       SET status = ?, scratch_progress_json = ?, reveal_log_json = ?,
                           first_scratch_at = ?, completed_at = ?, total_scratch_time = ?,
                           version = version + 1
                       WHERE instance_id = ? AND version = ?""",
                    (instance.status.value, self._progress_json(instance),
                     json.dumps([asdict(e) for e in instance.reveal_log]),
                     instance.first_scratch_at, instance.completed_at,
                     instance.total_scratch_time, instance_id, instance.version),
                )
                if db.rowcount != 1:
                    raise InvalidState("Card changed while scratching; reload and retry",
                                       {"instance_id": instance_id})
            instance.version += 1

        if complete:
            logger.info(f"Card completed: {instance_id} winner={instance.is_winner} "
                        f"time={instance.total_scratch_time}s")
        return ScratchResult(
            symbol=symbol,
            card_complete=complete,
            winnings_revealed=self._winnings_visible(instance),
            instance=instance,
        )

    @staticmethod
    def _winnings_visible(instance: CardInstance) -> bool:
        """UI hint only: the bound combination is already on screen."""
        outcome = instance.outcome
        if not outcome.is_winner:
            return False
        shown = sum(1 for a in instance.progress
                    if a.revealed and a.symbol == outcome.winning_symbol)
        return shown >= outcome.match_count

    def _expire(self, db, instance: CardInstance) -> None:
        with db.transaction():
            db.execute(
                """UPDATE card_instances SET status = ?, version = version + 1
                   WHERE instance_id = ? AND version = ? AND status IN (?, ?)""",
                (CardStatus.EXPIRED.value, instance.instance_id, instance.version, *_OPEN_STATUSES),
            )
        instance.status = CardStatus.EXPIRED
        logger.info(f"Card expired on access: {instance.instance_id}")

    def expire_cards(self, now: Optional[datetime] = None) -> int:
        """Move every overdue open card to expired. Returns how many moved."""
        now = now or self.clock()
        with self._session() as db:
            with db.transaction():
                db.execute(
                    """UPDATE card_instances SET status = ?, version = version + 1
                       WHERE status IN (?, ?) AND expires_at < ?""",
                    (CardStatus.EXPIRED.value, *_OPEN_STATUSES, iso(now)),
                )
                expired = db.rowcount
        logger.info(f"Expiry sweep: {expired} card(s) expired")
        return expired

    # ─── Settlement ───────────────────────────────────────────

    def claim_prize(self, instance_id: str, holder_id: str) -> ClaimResult:
        """Pay out a completed winning card exactly once."""
        now = self.clock()
        with self._session() as db:
            instance = self._load_owned(db, instance_id, holder_id)
            outcome = instance.outcome
            if not outcome.is_winner:
                raise NotAWinner("This card did not win", {"instance_id": instance_id})
            if instance.status != CardStatus.COMPLETED:
                raise NotCompleted("Scratch every area before claiming",
                                   {"status": instance.status.value})
            if instance.prize_claimed:
                raise AlreadyClaimed("Prize already claimed",
                                     {"settlement_ref": instance.settlement_ref})

            settlement_ref = "STL_" + uuid.uuid4().hex
            try:
                with db.transaction():
                    db.execute(
                        """UPDATE card_instances
                           SET prize_claimed = 1, prize_claimed_at = ?, settlement_ref = ?,
                               version = version + 1
                           WHERE instance_id = ? AND prize_claimed = 0 AND version = ?""",
                        (iso(now), settlement_ref, instance_id, instance.version),
                    )
                    if db.rowcount != 1:
                        raise AlreadyClaimed("Prize already claimed", {"instance_id": instance_id})

                    ledger = self.ledger_factory(db)
                    ledger.credit(holder_id, "GC", outcome.winnings_gc, reference=settlement_ref)
                    ledger.credit(holder_id, "SC", outcome.winnings_sc, reference=settlement_ref)
                    db.execute(
                        """INSERT INTO settlements
                           (id, instance_id, holder_id, prize_id, amount_gc, amount_sc, created_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?)""",
                        (settlement_ref, instance_id, holder_id, outcome.prize_id,
                         outcome.winnings_gc, outcome.winnings_sc, iso(now)),
                    )
            except ScratchCardError as e:
                logger.warning(f"Claim rejected: {instance_id} holder={holder_id} {e}")
                raise
            except Exception:
                logger.exception(f"Claim rolled back: {instance_id} holder={holder_id}")
                raise

        logger.info(f"Prize claimed: {instance_id} ref={settlement_ref} "
                    f"gc={outcome.winnings_gc} sc={outcome.winnings_sc}")
        return ClaimResult(success=True, settlement_ref=settlement_ref,
                           winnings_gc=outcome.winnings_gc, winnings_sc=outcome.winnings_sc)

    # ─── Reads ────────────────────────────────────────────────

    def _load(self, db, instance_id: str) -> CardInstance:
        row = db.execute("SELECT * FROM card_instances WHERE instance_id = ?",
                         (instance_id,)).fetchone()
        if not row:
            raise NotFound(f"Card not found: {instance_id}")
        return CardInstance.from_row(row)

    def _load_owned(self, db, instance_id: str, holder_id: str) -> CardInstance:
        instance = self._load(db, instance_id)
        if instance.holder_id != holder_id:
            logger.warning(f"Foreign card access: {instance_id} by {holder_id}")
            raise Forbidden("This card belongs to another holder")
        return instance

    def get_card(self, instance_id: str, holder_id: Optional[str] = None) -> CardInstance:
        with self._session() as db:
            if holder_id is None:
                return self._load(db, instance_id)
            return self._load_owned(db, instance_id, holder_id)

    def get_holder_cards(self, holder_id: str, status: Optional[str] = None,
                         limit: Optional[int] = None) -> list[CardInstance]:
        """Holder's cards, newest first."""
        sql = "SELECT * FROM card_instances WHERE holder_id = ?"
        params: list = [holder_id]
        if status:
            sql += " AND status = ?"
            params.append(CardStatus(status).value)
        sql += " ORDER BY purchased_at DESC, instance_id LIMIT ?"
        params.append(limit or ScratchConfig.MY_CARDS_LIMIT)
        with self._session() as db:
            return [CardInstance.from_row(r) for r in db.execute(sql, params).fetchall()]

    # ─── Audit ────────────────────────────────────────────────

    def verify_card(self, instance_id: str, holder_id: Optional[str] = None) -> VerificationReport:
        """Recompute the commitment and replay the draw + layout from the seed.

        Holders may only audit their own completed cards; operators call
        without holder_id. Layout replay assumes the card type's symbol
        pool has not been edited since purchase.
        """
        with self._session() as db:
            if holder_id is None:
                instance = self._load(db, instance_id)
            else:
                instance = self._load_owned(db, instance_id, holder_id)
                if instance.status != CardStatus.COMPLETED:
                    raise NotCompleted("Seed is disclosed once the card is completed")
            card = Catalog(db).get_card_type(instance.card_type_id)

        outcome_dict = instance.outcome.to_dict()
        seed = instance.game_seed
        recomputed = verification_hash(instance_id, outcome_dict, seed)
        hash_ok = verify_commitment(instance_id, outcome_dict, seed, instance.verification_hash)

        draw_ok = SeededRNG(seed, "outcome").random() == instance.outcome.draw
        layout_ok = False
        if card is not None:
            replay = self.layout.build(card, instance.outcome, SeededRNG(seed, "layout"))
            layout_ok = replay == instance.symbols

        report = VerificationReport(
            instance_id=instance_id,
            verification_hash=instance.verification_hash,
            recomputed_hash=recomputed,
            hash_matches=hash_ok,
            layout_matches=layout_ok,
            draw_matches=draw_ok,
            outcome=outcome_dict,
            game_seed=seed,
        )
        if not report.verified:
            logger.warning(f"Verification failed: {instance_id} hash={hash_ok} "
                           f"layout={layout_ok} draw={draw_ok}")
        return report
