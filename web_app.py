"""
SCRATCHWORKS - Scratch Card Web Service

Run:
    python web_app.py                 # dev server on $PORT (default 5000)
    gunicorn "web_app:create_app()"
"""
import logging, os, secrets
from datetime import timedelta

from flask import Flask, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

# ── Structured logging ──
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("scratchworks")

from config.database import close_db_on_teardown, get_db, init_db
from config.settings import DatabaseConfig, WebConfig
from api import scratch_bp
from scratch.service import ScratchCardService


def create_app(db_path=None, service=None, init_schema=True):
    """Build the Flask app. `db_path` overrides DB_PATH (SQLite mode)."""
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    app.secret_key = WebConfig.SECRET_KEY or secrets.token_hex(32)
    if not WebConfig.SECRET_KEY:
        logger.warning("FLASK_SECRET_KEY not set, sessions will not survive a restart")
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=30)
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["DB_PATH"] = db_path or DatabaseConfig.DB_PATH

    if init_schema:
        init_db(app.config["DB_PATH"])

    app.extensions["scratch_service"] = service or ScratchCardService(db_path=app.config["DB_PATH"])
    app.register_blueprint(scratch_bp)
    app.teardown_appcontext(close_db_on_teardown)
    logger.info(f"Registered scratch card API at {WebConfig.API_PREFIX}")

    # ─── HEALTH CHECK ───

    @app.route("/health")
    def health_check():
        """Verifies web server + database are responsive."""
        try:
            get_db().execute("SELECT 1").fetchone()
            return jsonify({"status": "ok"}), 200
        except Exception as e:
            return jsonify({"status": "error", "detail": str(e)}), 503

    # ─── ERRORS ───

    @app.errorhandler(404)
    def error_404(e):
        return jsonify({"success": False,
                        "error": {"code": "NOT_FOUND", "message": f"No route for {request.path}",
                                  "details": {}}}), 404

    @app.errorhandler(500)
    def error_500(e):
        logger.error(f"500 error: {e}", exc_info=True)
        return jsonify({"success": False,
                        "error": {"code": "INTERNAL_ERROR", "message": "Internal server error",
                                  "details": {}}}), 500

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
