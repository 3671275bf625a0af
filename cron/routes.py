# cron/routes.py
"""
Scheduler entry points: POST /cron/<job> with Authorization: Bearer <CRON_SECRET>.

Jobs: billing, expire-trials, trial-reminders, webhook-deliveries, dunning,
prune-webhook-events.
"""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from services.billing_jobs import JOBS, run_job
from services.guards import require_cron_secret

cron_bp = Blueprint("cron", __name__, url_prefix="/cron")


@cron_bp.route("/<job>", methods=["POST"])
@require_cron_secret
def trigger(job: str):
    if job not in JOBS:
        return jsonify({"error": f"Unknown job: {job}", "jobs": sorted(JOBS)}), 404
    current_app.logger.info("[Cron] running %s", job)
    result = run_job(job)
    current_app.logger.info("[Cron] %s done: %s", job, {k: v for k, v in result.items() if k != "errors"})
    return jsonify({"ok": True, **result})
