#!/usr/bin/env python3
"""
Tests for the /api/scratch-cards blueprint (Flask test client).

Validates:
1.  Catalog endpoints list card types with prize table + RTP
2.  Holder endpoints require a session user
3.  Purchase -> scratch -> claim over HTTP
4.  Errors render as {"success": false, "error": {...}} with their status
5.  Request bodies and query strings are validated
6.  Admin cleanup is gated on SCRATCH_ADMIN_HOLDERS
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.database import get_standalone_db
from config.settings import WebConfig
from scratch.catalog import Catalog
from scratch.cli import seed_demo_catalog
from web_app import create_app

PREFIX = WebConfig.API_PREFIX


class TestScratchAPI(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "api.db")
        self.app = create_app(db_path=self.db_path)
        self.app.config["TESTING"] = True
        self.client = self.app.test_client()

        db = get_standalone_db(self.db_path)
        try:
            self.demo = seed_demo_catalog(db)
            catalog = Catalog(db)
            self.sure = catalog.create_card_type(
                self.demo.theme_id, "sure_thing", "Sure Thing", cost_gc=10, max_prize_gc=50)
            catalog.create_prize_tier(self.sure.id, "T1", "Bells", 1.0, "bell", prize_gc=50)
        finally:
            db.close()

        service = self.app.extensions["scratch_service"]
        service.deposit("u1", "GC", 10_000)
        service.deposit("u1", "SC", 10)

    def tearDown(self):
        self.tmp.cleanup()

    def login(self, user_id="u1", **extra):
        with self.client.session_transaction() as sess:
            sess["user"] = {"id": user_id, **extra}

    def purchase(self, card_type_id, **body):
        return self.client.post(f"{PREFIX}/purchase", json={"card_type_id": card_type_id, **body})

    # ─── Catalog ───

    def test_list_themes(self):
        resp = self.client.get(f"{PREFIX}/themes")
        self.assertEqual(resp.status_code, 200)
        themes = resp.get_json()["themes"]
        self.assertEqual([t["name"] for t in themes], ["classic"])
        self.assertEqual(themes[0]["id"], self.demo.theme_id)

    def test_list_types(self):
        resp = self.client.get(f"{PREFIX}/types")
        self.assertEqual(resp.status_code, 200)
        names = {c["name"] for c in resp.get_json()["card_types"]}
        self.assertEqual(names, {"lucky_sevens", "sure_thing"})

    def test_type_details(self):
        resp = self.client.get(f"{PREFIX}/types/{self.demo.id}")
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertEqual(len(data["prizes"]), 4)
        self.assertAlmostEqual(data["rtp"]["hit_rate_theoretical"], 0.25)
        self.assertAlmostEqual(data["rtp"]["rtp_theoretical"], 0.825)

    def test_unknown_type_is_404(self):
        resp = self.client.get(f"{PREFIX}/types/nope")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json()["error"]["code"], "NOT_FOUND")

    # ─── Auth ───

    def test_holder_routes_require_login(self):
        self.assertEqual(self.purchase(self.sure.id).status_code, 401)
        self.assertEqual(self.client.get(f"{PREFIX}/my-cards").status_code, 401)
        resp = self.client.post(f"{PREFIX}/claim-prize", json={"instance_id": "SC_x"})
        self.assertEqual(resp.status_code, 401)
        self.assertFalse(resp.get_json()["success"])

    # ─── Play ───

    def test_purchase_scratch_claim(self):
        self.login()
        resp = self.purchase(self.sure.id)
        self.assertEqual(resp.status_code, 201)
        card = resp.get_json()["card"]
        self.assertEqual(card["status"], "unscratched")
        self.assertIsNone(card["game_seed"])
        self.assertTrue(all(a["symbol"] is None for a in card["areas"]))
        instance_id = card["instance_id"]

        for area in range(9):
            resp = self.client.post(f"{PREFIX}/scratch",
                                    json={"instance_id": instance_id, "area_index": area})
            self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertTrue(data["card_complete"])
        self.assertTrue(data["winnings_revealed"])
        self.assertEqual(data["instance"]["status"], "completed")
        self.assertIsNotNone(data["instance"]["game_seed"])

        resp = self.client.post(f"{PREFIX}/claim-prize", json={"instance_id": instance_id})
        self.assertEqual(resp.status_code, 200)
        claim = resp.get_json()
        self.assertTrue(claim["success"])
        self.assertEqual(claim["winnings_gc"], 50)

        resp = self.client.post(f"{PREFIX}/claim-prize", json={"instance_id": instance_id})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.get_json()["error"]["code"], "ALREADY_CLAIMED")

        balances = self.client.get(f"{PREFIX}/balance").get_json()["balances"]
        self.assertEqual(balances["GC"], 10_000 - 10 + 50)

        resp = self.client.get(f"{PREFIX}/card/{instance_id}/verify")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.get_json()["verification"]["verified"])

    def test_purchase_records_client_info(self):
        self.login()
        resp = self.client.post(f"{PREFIX}/purchase", json={"card_type_id": self.sure.id},
                                headers={"User-Agent": "pytest-agent"})
        instance_id = resp.get_json()["card"]["instance_id"]
        card = self.app.extensions["scratch_service"].get_card(instance_id)
        self.assertEqual(card.client_info["user_agent"], "pytest-agent")

    def test_session_eligibility_is_forwarded(self):
        db = get_standalone_db(self.db_path)
        try:
            Catalog(db).update_card_type(self.sure.id, min_age_requirement=21)
        finally:
            db.close()
        self.login(age=18)
        resp = self.purchase(self.sure.id)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.get_json()["error"]["code"], "FORBIDDEN")

    def test_insufficient_funds_is_402(self):
        self.login("pauper")
        resp = self.purchase(self.sure.id)
        self.assertEqual(resp.status_code, 402)
        self.assertEqual(resp.get_json()["error"]["details"]["available"], 0)

    def test_re_reveal_and_foreign_card(self):
        self.login()
        instance_id = self.purchase(self.sure.id).get_json()["card"]["instance_id"]
        body = {"instance_id": instance_id, "area_index": 0}
        self.assertEqual(self.client.post(f"{PREFIX}/scratch", json=body).status_code, 200)
        resp = self.client.post(f"{PREFIX}/scratch", json=body)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.get_json()["error"]["code"], "INVALID_STATE")

        self.login("intruder")
        self.assertEqual(self.client.post(f"{PREFIX}/scratch", json=body).status_code, 403)
        self.assertEqual(self.client.get(f"{PREFIX}/card/{instance_id}").status_code, 403)

    def test_claim_before_completion(self):
        self.login()
        instance_id = self.purchase(self.sure.id).get_json()["card"]["instance_id"]
        resp = self.client.post(f"{PREFIX}/claim-prize", json={"instance_id": instance_id})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.get_json()["error"]["code"], "NOT_COMPLETED")

    def test_my_cards(self):
        self.login()
        self.purchase(self.sure.id)
        self.purchase(self.demo.id, currency="SC")
        data = self.client.get(f"{PREFIX}/my-cards").get_json()
        self.assertEqual(data["count"], 2)
        data = self.client.get(f"{PREFIX}/my-cards?status=completed").get_json()
        self.assertEqual(data["count"], 0)
        data = self.client.get(f"{PREFIX}/my-cards?limit=1").get_json()
        self.assertEqual(data["count"], 1)

    # ─── Validation ───

    def test_invalid_bodies(self):
        self.login()
        resp = self.client.post(f"{PREFIX}/scratch", json={"instance_id": "SC_x", "area_index": -1})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"]["code"], "VALIDATION_ERROR")
        self.assertEqual(self.client.post(f"{PREFIX}/purchase").status_code, 400)
        resp = self.purchase(self.sure.id, currency="EUR")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get(f"{PREFIX}/my-cards?status=bogus").status_code, 400)

    # ─── Admin ───

    def test_cleanup_requires_admin(self):
        self.login()
        self.assertEqual(self.client.post(f"{PREFIX}/admin/cleanup-expired").status_code, 403)
        with patch.object(WebConfig, "ADMIN_HOLDERS", {"ops"}):
            self.login("ops")
            resp = self.client.post(f"{PREFIX}/admin/cleanup-expired")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json(), {"success": True, "expired": 0})

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["status"], "ok")


if __name__ == "__main__":
    unittest.main()
