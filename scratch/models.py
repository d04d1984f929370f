"""
SCRATCHWORKS - Data Models

Plain dataclasses for catalog rows, outcomes and card instances, plus the
card status state machine. Rows come back from config.database as dicts;
`from_row()` turns them into typed objects.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


# ═══════════════════════════════════════════════════════════════
# Time helpers
# ═══════════════════════════════════════════════════════════════

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string so stored timestamps compare lexically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _loads(raw, default):
    if raw is None or raw == "":
        return default
    if isinstance(raw, (list, dict)):
        return raw
    return json.loads(raw)


# ═══════════════════════════════════════════════════════════════
# State machine
# ═══════════════════════════════════════════════════════════════

class CardStatus(str, Enum):
    UNSCRATCHED = "unscratched"
    PARTIALLY_SCRATCHED = "partially_scratched"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (CardStatus.COMPLETED, CardStatus.EXPIRED)

    def can_become(self, target: "CardStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    CardStatus.UNSCRATCHED: {CardStatus.PARTIALLY_SCRATCHED, CardStatus.COMPLETED, CardStatus.EXPIRED},
    CardStatus.PARTIALLY_SCRATCHED: {CardStatus.PARTIALLY_SCRATCHED, CardStatus.COMPLETED, CardStatus.EXPIRED},
    CardStatus.COMPLETED: set(),
    CardStatus.EXPIRED: set(),
}


# ═══════════════════════════════════════════════════════════════
# Catalog
# ═══════════════════════════════════════════════════════════════

@dataclass
class Theme:
    id: str
    name: str
    display_name: str
    is_active: bool = True
    sort_order: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "Theme":
        return cls(
            id=row["id"],
            name=row["name"],
            display_name=row["display_name"],
            is_active=bool(row["is_active"]),
            sort_order=row.get("sort_order") or 0,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CardType:
    id: str
    theme_id: str
    name: str
    display_name: str
    total_scratch_areas: int = 9
    min_symbols_to_match: int = 3
    cost_gc: int = 0
    cost_sc: int = 0
    currency_type: str = "GC"
    max_prize_gc: int = 0
    max_prize_sc: int = 0
    overall_odds: float = 0.25
    rtp_percentage: float = 85.0
    daily_purchase_limit: int = 50
    max_instances_per_user: int = 100
    purchase_requires_kyc: bool = False
    min_age_requirement: int = 18
    symbols: list[str] = field(default_factory=list)
    launch_date: Optional[str] = None
    end_date: Optional[str] = None
    is_active: bool = True
    theme_active: bool = True
    theme_name: str = ""
    total_sold: int = 0

    def cost_in(self, currency: str) -> int:
        return self.cost_sc if currency == "SC" else self.cost_gc

    def in_window(self, now: datetime) -> bool:
        start = parse_iso(self.launch_date)
        end = parse_iso(self.end_date)
        if start and now < start:
            return False
        if end and now > end:
            return False
        return True

    @classmethod
    def from_row(cls, row: dict) -> "CardType":
        theme_active = row.get("theme_is_active")
        return cls(
            id=row["id"],
            theme_id=row["theme_id"],
            name=row["name"],
            display_name=row["display_name"],
            total_scratch_areas=row["total_scratch_areas"],
            min_symbols_to_match=row["min_symbols_to_match"],
            cost_gc=row["cost_gc"],
            cost_sc=row["cost_sc"],
            currency_type=row["currency_type"],
            max_prize_gc=row["max_prize_gc"],
            max_prize_sc=row["max_prize_sc"],
            overall_odds=row["overall_odds"],
            rtp_percentage=row["rtp_percentage"],
            daily_purchase_limit=row["daily_purchase_limit"],
            max_instances_per_user=row["max_instances_per_user"],
            purchase_requires_kyc=bool(row["purchase_requires_kyc"]),
            min_age_requirement=row["min_age_requirement"],
            symbols=_loads(row.get("symbols_json"), []),
            launch_date=row.get("launch_date"),
            end_date=row.get("end_date"),
            is_active=bool(row["is_active"]),
            theme_active=True if theme_active is None else bool(theme_active),
            theme_name=row.get("theme_display_name") or "",
            total_sold=row.get("total_sold") or 0,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PrizeTier:
    id: str
    card_type_id: str
    prize_tier: str
    prize_name: str
    win_probability: float
    winning_symbol: str
    match_count: int
    prize_gc: int = 0
    prize_sc: int = 0
    bonus_items: Optional[dict] = None
    max_wins_per_day: Optional[int] = None
    max_total_wins: Optional[int] = None
    current_wins_today: int = 0
    wins_today_date: str = ""
    total_wins: int = 0
    is_jackpot: bool = False
    is_active: bool = True
    sort_order: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "PrizeTier":
        return cls(
            id=row["id"],
            card_type_id=row["card_type_id"],
            prize_tier=row["prize_tier"],
            prize_name=row["prize_name"],
            win_probability=row["win_probability"],
            winning_symbol=row["winning_symbol"],
            match_count=row["match_count"],
            prize_gc=row["prize_gc"],
            prize_sc=row["prize_sc"],
            bonus_items=_loads(row.get("bonus_items_json"), None),
            max_wins_per_day=row.get("max_wins_per_day"),
            max_total_wins=row.get("max_total_wins"),
            current_wins_today=row.get("current_wins_today") or 0,
            wins_today_date=row.get("wins_today_date") or "",
            total_wins=row.get("total_wins") or 0,
            is_jackpot=bool(row.get("is_jackpot")),
            is_active=bool(row["is_active"]),
            sort_order=row.get("sort_order") or 0,
        )

    def to_dict(self) -> dict:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════
# Outcome + instance
# ═══════════════════════════════════════════════════════════════

@dataclass
class Outcome:
    """Predetermined result of a card, fixed at purchase."""
    is_winner: bool
    prize_id: Optional[str] = None
    winnings_gc: int = 0
    winnings_sc: int = 0
    winning_symbol: Optional[str] = None
    match_count: int = 0
    winning_combination: list[str] = field(default_factory=list)
    bonus_items: Optional[dict] = None
    draw: float = 0.0                      # the r in [0,1) that selected the tier
    downgraded_from: Optional[str] = None  # tier drawn but out of supply

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Outcome":
        return cls(**data)

    @classmethod
    def loss(cls, draw: float, downgraded_from: Optional[str] = None) -> "Outcome":
        return cls(is_winner=False, draw=draw, downgraded_from=downgraded_from)


@dataclass
class AreaProgress:
    area: int
    revealed: bool = False
    symbol: str = ""
    revealed_at: Optional[str] = None


@dataclass
class RevealEvent:
    area_index: int
    symbol: str
    timestamp: str


@dataclass
class CardInstance:
    instance_id: str
    card_type_id: str
    holder_id: str
    purchase_cost_gc: int
    purchase_cost_sc: int
    purchase_currency: str
    purchased_at: str
    outcome: Outcome
    symbols: list[str]
    status: CardStatus
    progress: list[AreaProgress]
    reveal_log: list[RevealEvent]
    game_seed: str
    verification_hash: str
    expires_at: str
    first_scratch_at: Optional[str] = None
    completed_at: Optional[str] = None
    total_scratch_time: Optional[int] = None
    prize_claimed: bool = False
    prize_claimed_at: Optional[str] = None
    settlement_ref: Optional[str] = None
    client_info: Optional[dict] = None
    version: int = 0

    @property
    def is_winner(self) -> bool:
        return self.outcome.is_winner

    @property
    def prize_id(self) -> Optional[str]:
        return self.outcome.prize_id

    @property
    def revealed_count(self) -> int:
        return sum(1 for a in self.progress if a.revealed)

    @classmethod
    def from_row(cls, row: dict) -> "CardInstance":
        return cls(
            instance_id=row["instance_id"],
            card_type_id=row["card_type_id"],
            holder_id=row["holder_id"],
            purchase_cost_gc=row["purchase_cost_gc"],
            purchase_cost_sc=row["purchase_cost_sc"],
            purchase_currency=row["purchase_currency"],
            purchased_at=row["purchased_at"],
            outcome=Outcome.from_dict(_loads(row["outcome_json"], {})),
            symbols=_loads(row["symbols_json"], []),
            status=CardStatus(row["status"]),
            progress=[AreaProgress(**a) for a in _loads(row["scratch_progress_json"], [])],
            reveal_log=[RevealEvent(**e) for e in _loads(row["reveal_log_json"], [])],
            game_seed=row["game_seed"],
            verification_hash=row["verification_hash"],
            expires_at=row["expires_at"],
            first_scratch_at=row.get("first_scratch_at"),
            completed_at=row.get("completed_at"),
            total_scratch_time=row.get("total_scratch_time"),
            prize_claimed=bool(row.get("prize_claimed")),
            prize_claimed_at=row.get("prize_claimed_at"),
            settlement_ref=row.get("settlement_ref"),
            client_info=_loads(row.get("client_info_json"), None),
            version=row.get("version") or 0,
        )

    def to_public_dict(self) -> dict:
        """Holder-facing view: unrevealed symbols and the seed stay hidden
        until the card is completed; the verification hash is always shown."""
        done = self.status == CardStatus.COMPLETED
        return {
            "instance_id": self.instance_id,
            "card_type_id": self.card_type_id,
            "status": self.status.value,
            "purchase_currency": self.purchase_currency,
            "purchase_cost_gc": self.purchase_cost_gc,
            "purchase_cost_sc": self.purchase_cost_sc,
            "purchased_at": self.purchased_at,
            "expires_at": self.expires_at,
            "areas": [
                {"area": a.area, "revealed": a.revealed,
                 "symbol": a.symbol if (a.revealed or done) else None,
                 "revealed_at": a.revealed_at}
                for a in self.progress
            ],
            "reveal_log": [asdict(e) for e in self.reveal_log],
            "first_scratch_at": self.first_scratch_at,
            "completed_at": self.completed_at,
            "total_scratch_time": self.total_scratch_time,
            "is_winner": self.outcome.is_winner if done else None,
            "winnings_gc": self.outcome.winnings_gc if done else None,
            "winnings_sc": self.outcome.winnings_sc if done else None,
            "prize_claimed": self.prize_claimed,
            "prize_claimed_at": self.prize_claimed_at,
            "settlement_ref": self.settlement_ref,
            "verification_hash": self.verification_hash,
            "game_seed": self.game_seed if done else None,
        }


# ═══════════════════════════════════════════════════════════════
# Operation results
# ═══════════════════════════════════════════════════════════════

@dataclass
class ScratchResult:
    symbol: str
    card_complete: bool
    winnings_revealed: bool
    instance: CardInstance

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "card_complete": self.card_complete,
            "winnings_revealed": self.winnings_revealed,
            "instance": self.instance.to_public_dict(),
        }


@dataclass
class ClaimResult:
    success: bool
    settlement_ref: str
    winnings_gc: int = 0
    winnings_sc: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class VerificationReport:
    instance_id: str
    verification_hash: str
    recomputed_hash: str
    hash_matches: bool
    layout_matches: bool
    draw_matches: bool
    outcome: dict
    game_seed: str

    @property
    def verified(self) -> bool:
        return self.hash_matches and self.layout_matches and self.draw_matches

    def to_dict(self) -> dict:
        d = asdict(self)
        d["verified"] = self.verified
        return d
