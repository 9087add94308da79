"""
Status routes - scan loop overview and recent activity.
"""

from datetime import datetime, timezone
from flask import Blueprint, jsonify, request

from pullsnap import get_server
from pullsnap.scheduler import get_scheduled_jobs, is_scheduler_running, trigger_sweep_now


bp = Blueprint('status', __name__, url_prefix='/api/status')


def _isoformat(unix_seconds):
    if unix_seconds is None:
        return None
    return datetime.fromtimestamp(unix_seconds, timezone.utc).isoformat()


@bp.route('/overview', methods=['GET'])
def get_overview():
    """
    Get scan loop overview.

    Returns:
        JSON with:
        - scan_loop_status: running, stopped or failed
        - fatal_error: Disk full message that stopped the loop, if any
        - last_sweep_at: Start time of the last sweep
        - targets: Per-target schedule and latest version
    """
    server = get_server()
    loop = server.scan_loop

    if loop.fatal_error:
        status = 'failed'
    elif is_scheduler_running() or loop.running:
        status = 'running'
    else:
        status = 'stopped'

    targets = []
    for state in loop.states:
        target = state.target
        targets.append({
            'name': target.name,
            'source': target.source_path,
            'interval': target.interval,
            'frequency': target.frequency,
            'cadence_seconds': target.cadence_seconds,
            'next_due_at': _isoformat(state.next_due_at),
            'latest_version': server.catalog.latest_version(target),
        })

    return jsonify({
        'name': server.settings.name,
        'scan_loop_status': status,
        'fatal_error': loop.fatal_error,
        'last_sweep_at': loop.last_sweep_at.isoformat() if loop.last_sweep_at else None,
        'available_bytes': server.storage.available_bytes(),
        'pending_sweeps': get_scheduled_jobs(),
        'targets': targets,
    })


@bp.route('/recent-activity', methods=['GET'])
def get_recent_activity():
    """
    Get recent sync outcomes, newest first.

    Query params:
        - limit: Max number of records (default: 20, max: 100)
    """
    limit = request.args.get('limit', 20, type=int)
    limit = max(0, min(limit, 100))

    outcomes = list(get_server().scan_loop.recent_outcomes)[::-1][:limit]
    return jsonify([outcome.to_dict() for outcome in outcomes])


@bp.route('/sweep', methods=['POST'])
def run_sweep():
    """Trigger a sweep without waiting for the scan interval."""
    try:
        trigger_sweep_now()
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 409

    return jsonify({'message': 'Sweep triggered'}), 202
