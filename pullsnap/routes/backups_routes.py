"""
Backup routes - list and restore snapshot versions.
"""

import logging
from flask import Blueprint, jsonify, request

from pullsnap import get_server
from pullsnap.backup.catalog import VersionNotFoundError
from pullsnap.backup.server import OutputExistsError, TargetNotFoundError
from pullsnap.backup.storage import StorageError


bp = Blueprint('backups', __name__, url_prefix='/api/backups')

logger = logging.getLogger(__name__)


def _format_backups(backups):
    return {
        name: [
            {'timestamp': int(path.name), 'path': str(path)}
            for path in paths
        ]
        for name, paths in backups.items()
    }


@bp.route('/', methods=['GET'])
def list_backups():
    """
    Get the versions of all targets.

    Returns:
        JSON object mapping target names to their versions, oldest first
    """
    return jsonify(_format_backups(get_server().list_backups()))


@bp.route('/<target_name>', methods=['GET'])
def list_target_backups(target_name):
    """
    Get the versions of one target.

    Args:
        target_name: Target name
    """
    try:
        backups = get_server().list_backups(target_name)
    except TargetNotFoundError as e:
        return jsonify({'error': str(e)}), 404

    return jsonify(_format_backups(backups))


@bp.route('/<target_name>/<timestamp>/restore', methods=['POST'])
def restore_backup(target_name, timestamp):
    """
    Restore a version.

    Request body (optional):
        {"output": "/path/that/does/not/exist"}

    Without an output path the internal version path is returned and
    nothing is copied.

    Returns:
        JSON with the restored path
    """
    data = request.get_json(silent=True) or {}
    output = data.get('output')

    if output is not None and not isinstance(output, str):
        return jsonify({'error': 'Output must be a path string'}), 400

    try:
        path = get_server().restore_backup(target_name, timestamp, output)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except (TargetNotFoundError, VersionNotFoundError) as e:
        return jsonify({'error': str(e)}), 404
    except OutputExistsError as e:
        return jsonify({'error': str(e)}), 409
    except StorageError as e:
        logger.error(f"Restore of {target_name}@{timestamp} failed: {e}")
        return jsonify({'error': str(e)}), 500

    return jsonify({
        'target': target_name,
        'timestamp': int(timestamp),
        'path': str(path),
        'copied': output is not None
    })
