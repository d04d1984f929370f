"""Scratch Card - prize table math (RTP, hit rate, capped-supply simulation)."""
from sim_engine.rmg.base import BaseRMGEngine


class ScratchEngine(BaseRMGEngine):
    game_type = "scratch"

    def config_from_catalog(self, card_type, tiers, currency: str,
                            policy: str = "lose") -> dict:
        """Build a math config from a CardType and its active PrizeTiers.

        Payouts in the other currency are ignored; RTP is per currency.
        `remaining` carries each tier's lifetime supply left so simulations
        can show how caps erode realised RTP.
        """
        cost = card_type.cost_in(currency)
        prizes = []
        for t in tiers:
            payout = t.prize_sc if currency == "SC" else t.prize_gc
            remaining = None
            if t.max_total_wins is not None:
                remaining = max(t.max_total_wins - t.total_wins, 0)
            prizes.append({
                "label": t.prize_name,
                "payout": payout,
                "probability": t.win_probability,
                "remaining": remaining,
            })
        return {
            "game_type": "scratch",
            "currency": currency,
            "cost": cost,
            "prizes": prizes,
            "policy": policy,
        }

    def hit_rate(self, config: dict) -> float:
        return sum(p["probability"] for p in config.get("prizes", []))

    def compute_house_edge(self, config: dict) -> float:
        cost = config.get("cost") or 0
        if cost <= 0:
            return 0.0
        expected = sum(p["payout"] * p["probability"] for p in config.get("prizes", []))
        return 1.0 - expected / cost

    def simulate_round(self, config: dict, rng) -> float:
        prizes = config.get("prizes", [])
        cost = config.get("cost") or 0
        r = rng.random()
        cumulative = 0.0
        for p in prizes:
            cumulative += p["probability"]
            if r < cumulative:
                if p.get("remaining") is not None:
                    if p["remaining"] <= 0:
                        if config.get("policy") == "redraw":
                            return self._redraw(config, rng)
                        return 0.0
                    p["remaining"] -= 1
                return p["payout"] / cost if cost else 0.0
        return 0.0

    def _redraw(self, config: dict, rng) -> float:
        prizes = config["prizes"]
        cost = config.get("cost") or 0
        live = [p for p in prizes if p.get("remaining") is None or p["remaining"] > 0]
        mass = sum(p["probability"] for p in live)
        if not live or mass <= 0:
            return 0.0
        r = rng.random() * mass
        cumulative = 0.0
        for p in live:
            cumulative += p["probability"]
            if r < cumulative:
                if p.get("remaining") is not None:
                    p["remaining"] -= 1
                return p["payout"] / cost if cost else 0.0
        return 0.0
