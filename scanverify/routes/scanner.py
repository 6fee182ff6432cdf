# scanverify/routes/scanner.py
# Camera scanner page: start/reuse the station scanner, show the decoded
# barcode, submit a match / not-match judgment, resume scanning afterwards.

from flask import Blueprint, current_app
from flask import flash, jsonify, redirect, render_template, request, session, url_for

from scanverify.services.api_client import ApiError, ApiUnauthorized
from scanverify.utils.common import (
    best_effort, counts, get_api, get_scanner, navigate_to,
)
bp = Blueprint(__name__.rsplit('.', 1)[-1], __name__)

_TRUTHY = ("1", "true", "yes", "on")


@bp.get('/scanner')
def scanner():
    entering = session.get('current_page') != 'scanner'
    navigate_to('scanner')
    sc = get_scanner()

    # Re-rendering the page with a decoded barcode keeps the result on
    # screen; arriving from another page starts a fresh scan.
    if not sc.restart_pending and (entering or not sc.result_visible):
        if not sc.start():
            flash("Cannot access camera", "error")

    stats = best_effort(lambda: get_api().scan_stats(), {}, "scan stats")
    return render_template(
        'scanner.html',
        active='scanner',
        scanner=sc.status(),
        today=counts(stats.get('today')),
    )


@bp.get('/scanner/status')
def scanner_status():
    """Polled by the scanner page; reports a decoded barcode once available."""
    return jsonify(get_scanner().status())


@bp.post('/scanner/submit')
def scanner_submit():
    sc = get_scanner()
    barcode = sc.scanned_barcode
    if not barcode:
        return redirect(url_for('scanner.scanner'))

    is_match = (request.form.get('is_match') or '').strip().lower() in _TRUTHY
    notes = (request.form.get('notes') or '').strip()

    try:
        get_api().submit_scan(barcode, is_match, notes)
    except ApiUnauthorized:
        raise
    except ApiError as e:
        current_app.logger.warning("Scan %s not saved: %s", barcode, e.message)
        flash(e.message if e.status else "Error saving scan", "error")
        return redirect(url_for('scanner.scanner'))

    current_app.logger.info("Scan %s submitted (match=%s)", barcode, is_match)
    flash("Marked MATCH" if is_match else "Marked NOT MATCH", "success")
    sc.clear_result()
    sc.schedule_restart(current_app.extensions['scheduler'], current_app.config['RESCAN_DELAY'])
    return redirect(url_for('scanner.scanner'))


@bp.post('/scanner/manual')
def scanner_manual():
    """Typed or keyboard-wedge barcode, handled like a camera decode."""
    barcode = (request.form.get('barcode') or '').strip()
    if not barcode:
        flash("Enter a barcode.", "error")
        return redirect(url_for('scanner.scanner'))
    get_scanner().accept_manual(barcode)
    return redirect(url_for('scanner.scanner'))


@bp.post('/scanner/stop')
def scanner_stop():
    sc = get_scanner()
    sc.cancel_restart()
    sc.stop()
    flash("Camera stopped.", "info")
    return redirect(url_for('scanner.scanner_idle'))


@bp.get('/scanner/idle')
def scanner_idle():
    # a page of its own so the scanner view doesn't immediately restart the camera
    navigate_to('scanner_idle')
    return render_template('scanner_idle.html', active='scanner')
