"""
Liveness and readiness probes.

``/healthz`` answers while the process serves requests. ``/readyz`` also
requires the database to answer ``SELECT 1``; the check is injected by the
app factory through ``init_health``.
"""

import logging
from typing import Callable, Optional

from flask import Blueprint, jsonify

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__)

_database_check: Optional[Callable[[], bool]] = None


def init_health(check_database: Callable[[], bool]):
    """Register the callable used by ``/readyz`` to probe the database."""
    global _database_check
    _database_check = check_database


@health_bp.route("/healthz")
def healthz():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/readyz")
def readyz():
    """200 with ``status: ready`` when the database answers, 503 otherwise."""
    database_ok = False
    if _database_check is not None:
        try:
            database_ok = bool(_database_check())
        except Exception as e:
            logger.error(f"Database readiness probe raised: {e}")

    checks = {"database": database_ok}
    if not database_ok:
        return jsonify({"status": "not_ready", "checks": checks}), 503
    return jsonify({"status": "ready", "checks": checks}), 200
