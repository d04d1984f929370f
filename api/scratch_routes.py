"""
SCRATCHWORKS - Scratch Card Routes

Thin JSON layer over ScratchCardService. The holder is whoever is in
session["user"]; logging in is handled elsewhere.

Every failure renders as {"success": false, "error": {code, message, details}}
with the status carried by the ScratchCardError subclass.
"""

import json
import logging
from functools import wraps
from typing import Literal, Optional

from flask import current_app, jsonify, request, session
from pydantic import BaseModel, Field, ValidationError

from api import scratch_bp
from config.settings import ScratchConfig, WebConfig
from scratch.errors import ScratchCardError
from scratch.models import CardStatus
from scratch.service import ScratchCardService

logger = logging.getLogger("scratchworks.api")

Currency = Literal["GC", "SC"]


# ═══════════════════════════════════════════════════════════════
# Request models
# ═══════════════════════════════════════════════════════════════

class PurchaseRequest(BaseModel):
    card_type_id: str = Field(min_length=1)
    currency: Optional[Currency] = None


class ScratchRequest(BaseModel):
    instance_id: str = Field(min_length=1)
    area_index: int = Field(ge=0)


class ClaimRequest(BaseModel):
    instance_id: str = Field(min_length=1)


class MyCardsQuery(BaseModel):
    status: Optional[CardStatus] = None
    limit: int = Field(default=ScratchConfig.MY_CARDS_LIMIT, ge=1, le=200)


# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════

def _service() -> ScratchCardService:
    return current_app.extensions["scratch_service"]


def _current_user() -> dict:
    return session.get("user") or {}


def _holder_id() -> str:
    return str(_current_user()["id"])


def _error(code: str, message: str, status: int, details: Optional[dict] = None):
    return jsonify({"success": False,
                    "error": {"code": code, "message": message, "details": details or {}}}), status


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not _current_user().get("id"):
            return _error("UNAUTHORIZED", "Login required", 401)
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    """Holder id or email must be listed in SCRATCH_ADMIN_HOLDERS."""
    @wraps(f)
    def decorated(*args, **kwargs):
        user = _current_user()
        if not user.get("id"):
            return _error("UNAUTHORIZED", "Login required", 401)
        ids = {str(user.get("id")), str(user.get("email", "")).strip().lower()}
        if not ids & WebConfig.ADMIN_HOLDERS:
            logger.warning(f"Admin route refused for {user.get('id')}")
            return _error("FORBIDDEN", "Admin access required", 403)
        return f(*args, **kwargs)
    return decorated


def _body(model):
    return model.model_validate(request.get_json(silent=True) or {})


def _purchase_context() -> dict:
    user = _current_user()
    ctx = {
        "ip_address": request.headers.get("X-Forwarded-For", request.remote_addr),
        "user_agent": request.headers.get("User-Agent"),
    }
    for key in ("age", "kyc_verified"):
        if key in user:
            ctx[key] = user[key]
    return ctx


# ═══════════════════════════════════════════════════════════════
# Error handlers
# ═══════════════════════════════════════════════════════════════

@scratch_bp.errorhandler(ScratchCardError)
def handle_scratch_error(e: ScratchCardError):
    return jsonify({"success": False, "error": e.to_dict()}), int(e.status_code)


@scratch_bp.errorhandler(ValidationError)
def handle_validation_error(e: ValidationError):
    return _error("VALIDATION_ERROR", "Invalid request",
                  400, {"errors": json.loads(e.json(include_url=False))})


# ═══════════════════════════════════════════════════════════════
# Catalog
# ═══════════════════════════════════════════════════════════════

@scratch_bp.route("/themes", methods=["GET"])
def list_themes():
    themes = _service().list_themes()
    return jsonify({"success": True, "themes": [t.to_dict() for t in themes]})


@scratch_bp.route("/types", methods=["GET"])
def list_types():
    cards = _service().list_card_types()
    return jsonify({"success": True, "card_types": [c.to_dict() for c in cards]})


@scratch_bp.route("/types/<card_type_id>", methods=["GET"])
def card_type_details(card_type_id):
    return jsonify({"success": True, **_service().get_card_type_details(card_type_id)})


# ═══════════════════════════════════════════════════════════════
# Holder actions
# ═══════════════════════════════════════════════════════════════

@scratch_bp.route("/purchase", methods=["POST"])
@login_required
def purchase():
    req = _body(PurchaseRequest)
    card = _service().purchase_card(_holder_id(), req.card_type_id,
                                    context=_purchase_context(), currency=req.currency)
    return jsonify({"success": True, "card": card.to_public_dict()}), 201


@scratch_bp.route("/scratch", methods=["POST"])
@login_required
def scratch():
    req = _body(ScratchRequest)
    result = _service().scratch_area(req.instance_id, req.area_index, _holder_id())
    return jsonify({"success": True, **result.to_dict()})


@scratch_bp.route("/claim-prize", methods=["POST"])
@login_required
def claim_prize():
    req = _body(ClaimRequest)
    result = _service().claim_prize(req.instance_id, _holder_id())
    return jsonify(result.to_dict())


@scratch_bp.route("/my-cards", methods=["GET"])
@login_required
def my_cards():
    query = MyCardsQuery.model_validate(request.args.to_dict())
    status = query.status.value if query.status else None
    cards = _service().get_holder_cards(_holder_id(), status=status, limit=query.limit)
    return jsonify({"success": True, "cards": [c.to_public_dict() for c in cards],
                    "count": len(cards)})


@scratch_bp.route("/card/<instance_id>", methods=["GET"])
@login_required
def get_card(instance_id):
    card = _service().get_card(instance_id, _holder_id())
    return jsonify({"success": True, "card": card.to_public_dict()})


@scratch_bp.route("/card/<instance_id>/verify", methods=["GET"])
@login_required
def verify_card(instance_id):
    report = _service().verify_card(instance_id, _holder_id())
    return jsonify({"success": True, "verification": report.to_dict()})


@scratch_bp.route("/balance", methods=["GET"])
@login_required
def balance():
    return jsonify({"success": True, "balances": _service().get_balances(_holder_id())})


# ═══════════════════════════════════════════════════════════════
# Admin
# ═══════════════════════════════════════════════════════════════

@scratch_bp.route("/admin/cleanup-expired", methods=["POST"])
@admin_required
def cleanup_expired():
    count = _service().expire_cards()
    logger.info(f"Expired-card cleanup by {_current_user().get('id')}: {count}")
    return jsonify({"success": True, "expired": count})
