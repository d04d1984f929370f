"""
SCRATCHWORKS - Instant-Win Math Engine

Math models for instant-win games. Each engine exposes
compute_house_edge() and simulate().

Usage:
    from sim_engine.rmg import get_game_engine
    engine = get_game_engine("scratch")
    config = engine.config_from_catalog(card_type, tiers, "GC")
    results = engine.simulate(config, rounds=100_000)
"""

from sim_engine.rmg.scratch import ScratchEngine

GAME_ENGINES = {
    "scratch": ScratchEngine,
}

GAME_TYPES = list(GAME_ENGINES.keys())


def get_game_engine(game_type: str):
    """Get the math engine for a game type."""
    cls = GAME_ENGINES.get(game_type.lower())
    if cls is None:
        raise ValueError(f"Unknown game type: {game_type}. Available: {GAME_TYPES}")
    return cls()
