"""
SCRATCHWORKS - Scratch Card HTTP API

Flask blueprint mounted at WebConfig.API_PREFIX (default /api/scratch-cards).
"""

from flask import Blueprint

from config.settings import WebConfig

scratch_bp = Blueprint("scratch_cards", __name__, url_prefix=WebConfig.API_PREFIX)

from api import scratch_routes  # noqa: E402, F401
