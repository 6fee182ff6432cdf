import re

from flask import Blueprint, current_app
from flask import render_template, request

from scanverify.utils.common import best_effort, get_api, navigate_to
bp = Blueprint(__name__.rsplit('.', 1)[-1], __name__)

_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def parse_history_filters(args) -> dict:
    """Normalise the filter form; anything malformed is dropped, not sent."""
    date = (args.get('date') or '').strip()
    is_match = (args.get('is_match') or '').strip().lower()
    barcode = (args.get('barcode') or '').strip()
    return {
        'date': date if _DATE_RE.match(date) else '',
        'is_match': is_match if is_match in ('true', 'false') else '',
        'barcode': barcode[:100],
    }


@bp.get('/history')
def history():
    navigate_to('history')
    filters = parse_history_filters(request.args)
    scans = best_effort(lambda: get_api().list_scans(**filters), [], "history")
    current_app.logger.debug("History filters=%s rows=%d", filters, len(scans))
    return render_template('history.html', active='history', scans=scans, filters=filters)
