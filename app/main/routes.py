"""
app/main/routes.py
──────────────────
Health check for load balancers and monitoring.
"""
from datetime import datetime

from flask import current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app import db
from app.main import main


@main.route("/health")
def health():
    """Report whether the database answers a trivial query."""
    status = "ok"
    failures = []

    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db.session.rollback()
        status = "error"
        failures.append(f"DB: {e}")
        current_app.logger.error(f"Health check failed (DB): {e}")

    response = {
        "status": status,
        "timestamp": datetime.utcnow().isoformat(),
        "details": {
            "db": "ok" if not failures else "error",
        },
    }
    if failures:
        response["failures"] = failures

    return jsonify(response), (200 if status == "ok" else 503)
