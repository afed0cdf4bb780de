"""
Backup routes - list, run, prune and restore backups, rotate the key and
report backup health.
"""

from flask import Blueprint, current_app, jsonify, request

from statevault.config import BackupSettings
from statevault.backup.compression import CompressionError
from statevault.backup.disk_check import DiskSpaceError
from statevault.backup.encryption import EncryptionError
from statevault.backup.executor import BackupError, check_prerequisites, run_backup
from statevault.backup.index import IndexManager
from statevault.backup.lock import LockContention, LockIOError
from statevault.backup.manifest import ManifestError
from statevault.backup.notifications import clear_alerts, get_notification_paths, read_alerts, read_last_result
from statevault.backup.providers import UnknownDestinationError, create_storage_providers
from statevault.backup.restore import BackupNotFoundError, RestoreError, run_restore
from statevault.backup.retention import prune_backups
from statevault.backup.rotation import rotate_key
from statevault.backup.storage import ProviderNotFoundError, StorageError
from statevault.utils.paths import PathTraversalError


bp = Blueprint('backups', __name__, url_prefix='/api/backups')


def _settings() -> BackupSettings:
    return BackupSettings.from_mapping(current_app.config)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@bp.errorhandler(UnknownDestinationError)
@bp.errorhandler(BackupNotFoundError)
@bp.errorhandler(ProviderNotFoundError)
def handle_not_found(e):
    return jsonify({'error': str(e)}), 404


@bp.errorhandler(LockContention)
def handle_lock_contention(e):
    return jsonify({'error': str(e)}), 409


@bp.errorhandler(PathTraversalError)
def handle_bad_input(e):
    return jsonify({'error': str(e)}), 400


@bp.errorhandler(BackupError)
@bp.errorhandler(RestoreError)
@bp.errorhandler(StorageError)
@bp.errorhandler(EncryptionError)
@bp.errorhandler(CompressionError)
@bp.errorhandler(ManifestError)
@bp.errorhandler(LockIOError)
@bp.errorhandler(DiskSpaceError)
def handle_backup_failure(e):
    current_app.logger.error(f"Backup operation failed: {e}")
    return jsonify({'error': str(e)}), 500


@bp.route('/', methods=['GET'])
def list_backups():
    """
    Get the merged backup index.

    Query params:
        - refresh: 1 to bypass the index cache

    Returns:
        JSON with lastRefreshed and entries (newest first)
    """
    settings = _settings()
    force_refresh = request.args.get('refresh', '0') in ('1', 'true')

    providers = create_storage_providers(settings.destinations, settings.hostname)
    index = IndexManager(settings.index_path).get_index(providers, force_refresh=force_refresh)

    return jsonify(index)


@bp.route('/run', methods=['POST'])
def run():
    """
    Run a backup now.

    Request body (JSON, optional):
        {"destination": "local", "dry_run": false}

    Returns:
        JSON with backup result
    """
    data = _json_body()
    destination = data.get('destination')
    dry_run = data.get('dry_run', False)

    if destination is not None and not isinstance(destination, str):
        return jsonify({'error': 'destination must be a string'}), 400
    if not isinstance(dry_run, bool):
        return jsonify({'error': 'dry_run must be a boolean'}), 400

    result = run_backup(_settings(), destination=destination, dry_run=dry_run)
    return jsonify(result), 200 if dry_run else 201


@bp.route('/prune', methods=['POST'])
def prune():
    """
    Prune old backups.

    Request body (JSON, optional):
        {"count": 10}  (default: configured retention count)

    Returns:
        JSON with deleted, kept and errors
    """
    settings = _settings()
    data = _json_body()
    count = data.get('count', settings.retention_count)

    if not isinstance(count, int) or isinstance(count, bool) or count < 0:
        return jsonify({'error': 'count must be a non-negative integer'}), 400

    providers = create_storage_providers(settings.destinations, settings.hostname)
    result = prune_backups(providers, count, IndexManager(settings.index_path))

    return jsonify(result)


@bp.route('/restore', methods=['POST'])
def restore():
    """
    Restore a backup.

    Request body (JSON):
        {
            "source": "local",
            "timestamp": "2024-01-15T12-30-00",  (optional, default: latest)
            "dry_run": false,
            "skip_pre_backup": false
        }

    Returns:
        JSON with restore result
    """
    data = _json_body()
    source = data.get('source')
    timestamp = data.get('timestamp')
    dry_run = data.get('dry_run', False)
    skip_pre_backup = data.get('skip_pre_backup', False)

    if not source or not isinstance(source, str):
        return jsonify({'error': 'source is required'}), 400
    if timestamp is not None and not isinstance(timestamp, str):
        return jsonify({'error': 'timestamp must be a string'}), 400
    if not isinstance(dry_run, bool) or not isinstance(skip_pre_backup, bool):
        return jsonify({'error': 'dry_run and skip_pre_backup must be booleans'}), 400

    result = run_restore(
        _settings(),
        source,
        timestamp=timestamp,
        dry_run=dry_run,
        skip_pre_backup=skip_pre_backup
    )
    return jsonify(result)


@bp.route('/providers', methods=['GET'])
def providers_status():
    """
    Check every configured destination and the external tools.

    Returns:
        JSON with providers (name, available, error) and prerequisites
    """
    settings = _settings()
    providers = create_storage_providers(settings.destinations, settings.hostname)

    statuses = []
    for provider in providers:
        status = {'name': provider.name}
        status.update(provider.check())
        statuses.append(status)

    return jsonify({
        'providers': statuses,
        'prerequisites': check_prerequisites(settings, providers)
    })


@bp.route('/rotate-key', methods=['POST'])
def rotate():
    """
    Rotate the age encryption key.

    Request body (JSON, optional):
        {"reencrypt": false, "source": "local"}

    Returns:
        JSON with oldKeyId, newKeyId, reencrypted and errors
    """
    data = _json_body()
    reencrypt = data.get('reencrypt', False)
    source = data.get('source')

    if not isinstance(reencrypt, bool):
        return jsonify({'error': 'reencrypt must be a boolean'}), 400
    if source is not None and not isinstance(source, str):
        return jsonify({'error': 'source must be a string'}), 400

    result = rotate_key(_settings(), reencrypt=reencrypt, source=source)
    return jsonify(result)


@bp.route('/status', methods=['GET'])
def status():
    """
    Report the last scheduled backup outcome and any alerts.

    Returns:
        JSON with lastResult (or null), consecutiveFailures and alerts
    """
    paths = get_notification_paths(_settings().state_dir)
    last_result = read_last_result(paths['last_result'])

    return jsonify({
        'lastResult': last_result,
        'consecutiveFailures': last_result['consecutiveFailures'] if last_result else 0,
        'alerts': read_alerts(paths['alerts'])
    })


@bp.route('/alerts', methods=['DELETE'])
def dismiss_alerts():
    """Clear recorded alerts."""
    clear_alerts(get_notification_paths(_settings().state_dir)['alerts'])
    return '', 204
