"""
SCRATCHWORKS - Configuration

All knobs are class attributes read from the environment once at import.
A `.env` file in the working directory is honoured (python-dotenv).

- ScratchConfig   -> game engine: expiry, filler retries, exhausted-tier policy, symbols
- DatabaseConfig  -> SQLite path / PostgreSQL URL
- WebConfig       -> Flask secret + API mount point
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).parent.parent


def _csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


# ============================================================
# GAME ENGINE
#
# EXHAUSTED_TIER_POLICY decides what happens when the drawn
# prize tier has no supply left:
#   "lose"   -> the draw becomes a losing card (realised RTP drops
#               as capped tiers run out)
#   "redraw" -> win mass is renormalised over tiers that still have
#               supply and the draw is repeated from the same seed
# ============================================================

class ScratchConfig:

    # --- Card lifecycle ---
    CARD_EXPIRY_DAYS = int(os.getenv("SCRATCH_CARD_EXPIRY_DAYS", "30"))
    MY_CARDS_LIMIT = int(os.getenv("SCRATCH_MY_CARDS_LIMIT", "50"))

    # --- Outcome generation ---
    EXHAUSTED_TIER_POLICY = os.getenv("SCRATCH_EXHAUSTED_TIER_POLICY", "lose").lower()
    EXHAUSTED_TIER_POLICIES = ("lose", "redraw")

    # --- Symbol layout ---
    MAX_FILLER_ATTEMPTS = int(os.getenv("SCRATCH_MAX_FILLER_ATTEMPTS", "25"))
    BLANK_SYMBOL = os.getenv("SCRATCH_BLANK_SYMBOL", "blank")
    DEFAULT_SYMBOLS = _csv_env(
        "SCRATCH_DEFAULT_SYMBOLS",
        "cherry,bell,star,diamond,seven,clover,horseshoe,crown",
    )

    # --- Currencies (GC = gold coins, SC = sweeps coins) ---
    CURRENCIES = ("GC", "SC")

    # --- Math audit ---
    SIMULATION_ROUNDS = int(os.getenv("SCRATCH_SIMULATION_ROUNDS", "100000"))

    @classmethod
    def exhausted_tier_policy(cls) -> str:
        """Validated policy name; unknown values fall back to "lose"."""
        if cls.EXHAUSTED_TIER_POLICY in cls.EXHAUSTED_TIER_POLICIES:
            return cls.EXHAUSTED_TIER_POLICY
        return "lose"


class DatabaseConfig:
    DATABASE_URL = os.getenv("DATABASE_URL", "")
    DB_PATH = os.getenv("DB_PATH", "scratchworks.db")
    PG_POOL_MIN = int(os.getenv("PG_POOL_MIN", "2"))
    PG_POOL_MAX = int(os.getenv("PG_POOL_MAX", "20"))


class WebConfig:
    SECRET_KEY = os.getenv("FLASK_SECRET_KEY") or os.getenv("SECRET_KEY", "")
    API_PREFIX = os.getenv("SCRATCH_API_PREFIX", "/api/scratch-cards")
    ADMIN_HOLDERS = set(_csv_env("SCRATCH_ADMIN_HOLDERS", ""))
