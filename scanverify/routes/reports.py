# scanverify/routes/reports.py
# Dashboard (today + weekly chart), weekly/monthly reports, per-user
# performance and the server-generated Excel export.

import io
import re

from flask import Blueprint, current_app
from flask import flash, redirect, render_template, request, send_file, url_for
from werkzeug.utils import secure_filename

from scanverify.services.api_client import ApiError, ApiUnauthorized
from scanverify.utils.common import (
    admin_required, best_effort, counts, get_api, is_admin, navigate_to,
)
bp = Blueprint(__name__.rsplit('.', 1)[-1], __name__)

MATCH_COLOR = 'rgba(16, 185, 129, 0.8)'
NOT_MATCH_COLOR = 'rgba(239, 68, 68, 0.8)'
XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def weekly_chart(daily) -> dict:
    """
    Bar-chart config for the daily report.  The API lists days newest
    first; the chart reads left to right, oldest first.
    """
    days = list(reversed(daily or []))
    return {
        'type': 'bar',
        'data': {
            'labels': [d.get('date') for d in days],
            'datasets': [
                {'label': 'Match', 'data': [d.get('match') or 0 for d in days],
                 'backgroundColor': MATCH_COLOR, 'borderRadius': 6},
                {'label': 'Not Match', 'data': [d.get('not_match') or 0 for d in days],
                 'backgroundColor': NOT_MATCH_COLOR, 'borderRadius': 6},
            ],
        },
    }


@bp.get('/dashboard')
def dashboard():
    navigate_to('dashboard')
    api = get_api()
    summary = best_effort(api.report_summary, {}, "dashboard")
    daily = best_effort(lambda: api.report_daily(days=7), [], "chart")
    return render_template(
        'dashboard.html',
        active='dashboard',
        today=counts(summary.get('today')),
        chart=weekly_chart(daily),
    )


@bp.get('/reports')
def reports():
    navigate_to('reports')
    api = get_api()
    summary = best_effort(api.report_summary, {}, "reports")
    performance = []
    if is_admin():
        performance = best_effort(api.report_users, [], "user performance")
    return render_template(
        'reports.html',
        active='reports',
        week=counts(summary.get('week')),
        month=counts(summary.get('month')),
        performance=performance,
    )


@bp.get('/reports/export')
@admin_required
def export():
    start = (request.args.get('start_date') or '').strip()
    end = (request.args.get('end_date') or '').strip()
    start = start if _DATE_RE.match(start) else None
    end = end if _DATE_RE.match(end) else None
    try:
        fname, content = get_api().export_report(start_date=start, end_date=end)
    except ApiUnauthorized:
        raise
    except ApiError as e:
        current_app.logger.warning("Export failed: %s", e.message)
        flash("Export failed", "error")
        return redirect(url_for('reports.reports'))

    fname = secure_filename(fname) or "scan_report.xlsx"
    current_app.logger.info("Export %s (%d bytes)", fname, len(content))
    return send_file(io.BytesIO(content), mimetype=XLSX_MIMETYPE,
                     as_attachment=True, download_name=fname)
