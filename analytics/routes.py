# analytics/routes.py
from __future__ import annotations

from flask import Blueprint, Response, jsonify
from flask_login import login_required

from services.analytics import export_revenue_csv, revenue_summary, subscription_cohorts
from services.guards import current_org
from services.params import date_range, int_arg

analytics_bp = Blueprint("analytics", __name__, url_prefix="/api/analytics")


@analytics_bp.route("/revenue", methods=["GET"])
@login_required
def revenue():
    start, end = date_range(default_days=30)
    return jsonify(revenue_summary(current_org(), start, end))


@analytics_bp.route("/cohorts", methods=["GET"])
@login_required
def cohorts():
    months = int_arg("months", 6, hi=24)
    return jsonify({"months": months, "cohorts": subscription_cohorts(current_org(), months=months)})


@analytics_bp.route("/export", methods=["GET"])
@login_required
def export():
    start, end = date_range(default_days=30)
    filename = f"revenue-{start.date().isoformat()}-{end.date().isoformat()}.csv"
    return Response(
        export_revenue_csv(current_org(), start, end),
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
