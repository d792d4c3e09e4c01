"""
Wind SCADA - Flask Application
JSON API for SCADA imports, auto-import settings, anomalies and monthly production.
Tenants are identified by the X-Tenant-Id request header.
"""
import os
import logging
import tempfile
import threading
from dataclasses import asdict
from datetime import datetime

from flask import Flask, current_app, jsonify, request, abort
from werkzeug.exceptions import HTTPException
from werkzeug.utils import import_string

from database import db, check_dialect, Turbine, TurbineProduction, ScadaImportLog
from discovery import (
    scan_all_file_types, LocationNotFound, is_safe_path, is_safe_location_code, is_within,
)
from file_types import is_valid_file_type
from readers import register_reader
from mappings import toggle_auto_import, get_auto_import_status, AUTO_IMPORT_INTERVALS
from import_service import ImportParams, start_import, create_import_log, find_running_import
from auto_import import run_auto_import
from anomaly_detection import (
    run_anomaly_detection, list_anomalies, resolve_anomaly, anomaly_to_dict,
    get_config, save_config,
)
from notifications import register_notifier, LogNotifier

log = logging.getLogger(__name__)


# ─── Configuration ────────────────────────────────────────────────────────────

def _database_url() -> str:
    db_url = os.environ.get('DATABASE_URL', 'sqlite:///' + os.path.join(
        os.path.dirname(os.path.abspath(__file__)),
        os.environ.get('DATABASE_PATH', 'wind_scada.db')
    ))
    # Railway injects postgres:// but SQLAlchemy requires an explicit driver
    if db_url.startswith('postgres://'):
        db_url = db_url.replace('postgres://', 'postgresql+psycopg://', 1)
    elif db_url.startswith('postgresql://') and '+psycopg' not in db_url:
        db_url = db_url.replace('postgresql://', 'postgresql+psycopg://', 1)
    return db_url


def create_app(test_config=None, reader=None, notifier=None) -> Flask:
    app = Flask(__name__)

    db_url = _database_url()
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-change-in-production')
    app.config['SQLALCHEMY_DATABASE_URI'] = db_url
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {'pool_pre_ping': True}
    if not db_url.startswith('sqlite'):
        app.config['SQLALCHEMY_ENGINE_OPTIONS'].update({'pool_size': 5, 'max_overflow': 10})

    app.config['SCADA_BASE_PATH'] = os.environ.get('SCADA_BASE_PATH', '/data/scada')
    app.config['SCADA_UPLOAD_PATH'] = os.environ.get(
        'SCADA_UPLOAD_PATH', os.path.join(tempfile.gettempdir(), 'scada-uploads'))
    app.config['SCADA_READER'] = os.environ.get('SCADA_READER', '')      # "module:Class"
    app.config['SCADA_NOTIFIER'] = os.environ.get('SCADA_NOTIFIER', '')  # "module:Class"
    app.config['SCADA_IMPORT_IN_BACKGROUND'] = True
    app.config['ANOMALY_MAX_WORKERS'] = int(os.environ.get('ANOMALY_MAX_WORKERS', 4))

    if test_config:
        app.config.update(test_config)

    db.init_app(app)
    with app.app_context():
        check_dialect(db.engine)
        db.create_all()

    if reader is None and app.config['SCADA_READER']:
        reader = import_string(app.config['SCADA_READER'])()
    if reader is not None:
        register_reader(app, reader)

    if notifier is None:
        notifier = (import_string(app.config['SCADA_NOTIFIER'])()
                    if app.config['SCADA_NOTIFIER'] else LogNotifier())
    register_notifier(app, notifier)

    _register_routes(app)
    return app


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _tenant_id() -> str:
    tenant_id = request.headers.get('X-Tenant-Id', '').strip()
    if not tenant_id:
        abort(400, "Missing X-Tenant-Id header")
    return tenant_id


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        abort(400, "Request body must be a JSON object")
    return body


def _location_code(value) -> str:
    code = str(value or '').strip()
    if not code:
        abort(400, "location_code is required")
    if not is_safe_location_code(code):
        abort(400, f"Invalid location_code: {code!r}")
    return code


def _base_path(value) -> str:
    if not value:
        return current_app.config['SCADA_BASE_PATH']
    if not isinstance(value, str) or not is_safe_path(value):
        abort(400, "Invalid base_path: relative hops and NUL bytes are not allowed")
    return value


def _file_paths(value, base_path: str, location_code: str):
    """Explicit files must sit in the site directory or the upload area."""
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        abort(400, "file_paths must be a list of paths")
    roots = (os.path.join(base_path, location_code), current_app.config['SCADA_UPLOAD_PATH'])
    for path in value:
        if not is_safe_path(path) or not any(is_within(path, root) for root in roots):
            abort(400, f"File outside the site and upload directories: {path}")
    return value or None


def _iso(dt):
    return dt.isoformat() if dt else None


def _import_log_dict(entry: ScadaImportLog) -> dict:
    return {
        "id": entry.id,
        "location_code": entry.location_code,
        "file_type": entry.file_type,
        "status": entry.status,
        "files_total": entry.files_total,
        "files_processed": entry.files_processed,
        "records_imported": entry.records_imported,
        "records_skipped": entry.records_skipped,
        "records_failed": entry.records_failed,
        "last_processed_date": _iso(entry.last_processed_date),
        "error_details": entry.error_details,
        "started_at": _iso(entry.started_at),
        "updated_at": _iso(entry.updated_at),
        "completed_at": _iso(entry.completed_at),
    }


def _run_import_in_background(app, params: ImportParams):
    def _run():
        with app.app_context():
            start_import(params)

    threading.Thread(target=_run, daemon=True, name=f"scada-import-{params.import_log_id}").start()


# ─── Routes ───────────────────────────────────────────────────────────────────

def _register_routes(app: Flask):

    @app.errorhandler(HTTPException)
    def _http_error(exc):
        return jsonify({"error": exc.description}), exc.code

    @app.route('/status')
    def status():
        """Health check endpoint."""
        return jsonify({"status": "ok", "ts": datetime.utcnow().isoformat()})

    # ─── API: Imports ─────────────────────────────────────────────────────────

    @app.route('/api/scada/scan')
    def api_scan():
        _tenant_id()
        location_code = _location_code(request.args.get('location_code'))
        base_path = _base_path(request.args.get('base_path'))
        try:
            scans = scan_all_file_types(base_path, location_code)
        except LocationNotFound as exc:
            abort(404, str(exc))
        return jsonify({
            "location_code": location_code,
            "file_types": [s._asdict() for s in scans],
        })

    @app.route('/api/scada/imports', methods=['POST'])
    def api_start_import():
        tenant_id = _tenant_id()
        body = _json_body()
        location_code = _location_code(body.get('location_code'))
        file_type = str(body.get('file_type') or '').strip().upper()
        if not is_valid_file_type(file_type):
            abort(400, f"Unknown file_type: {body.get('file_type')!r}")
        base_path = _base_path(body.get('base_path'))
        file_paths = _file_paths(body.get('file_paths'), base_path, location_code)

        running = find_running_import(tenant_id, location_code, file_type)
        if running:
            abort(409, f"Import #{running.id} for {location_code}/{file_type} is already running")

        entry = create_import_log(tenant_id, location_code, file_type)
        params = ImportParams(
            tenant_id=tenant_id,
            location_code=location_code,
            file_type=file_type,
            base_path=base_path,
            import_log_id=entry.id,
            file_paths=file_paths,
        )

        if app.config['SCADA_IMPORT_IN_BACKGROUND']:
            _run_import_in_background(app, params)
        else:
            start_import(params)
        log.info(f"[{tenant_id}] import #{entry.id} queued for {location_code}/{file_type}")
        return jsonify({"import_id": entry.id, "status": "RUNNING"}), 202

    @app.route('/api/scada/imports/<int:import_id>')
    def api_import_status(import_id):
        tenant_id = _tenant_id()
        entry = ScadaImportLog.query.filter_by(id=import_id, tenant_id=tenant_id).first()
        if entry is None:
            abort(404, f"Import {import_id} not found")
        return jsonify(_import_log_dict(entry))

    # ─── API: Auto-Import ─────────────────────────────────────────────────────

    @app.route('/api/scada/auto-import', methods=['POST'])
    def api_run_auto_import():
        tenant_id = _tenant_id()
        result = run_auto_import(tenant_id)
        return jsonify(result.to_dict())

    @app.route('/api/scada/auto-import/status')
    def api_auto_import_status():
        return jsonify(get_auto_import_status(_tenant_id()))

    @app.route('/api/scada/auto-import/<location_code>', methods=['PUT'])
    def api_toggle_auto_import(location_code):
        tenant_id = _tenant_id()
        location_code = _location_code(location_code)
        body = _json_body()
        enabled = body.get('enabled')
        interval = body.get('interval')

        if not isinstance(enabled, bool):
            abort(400, "enabled must be true or false")
        if interval is not None and interval not in AUTO_IMPORT_INTERVALS:
            abort(400, f"interval must be one of {', '.join(AUTO_IMPORT_INTERVALS)}")

        kwargs = {}
        if 'auto_import_path' in body:
            path = body['auto_import_path']
            if path is not None and (not isinstance(path, str) or not is_safe_path(path)):
                abort(400, "Invalid auto_import_path: relative hops and NUL bytes are not allowed")
            kwargs['auto_import_path'] = path
        count = toggle_auto_import(tenant_id, location_code, enabled, interval, **kwargs)
        if count == 0:
            abort(404, f"No active turbine mappings for {location_code}")
        return jsonify({"location_code": location_code, "updated": count})

    # ─── API: Anomalies ───────────────────────────────────────────────────────

    @app.route('/api/scada/anomalies/run', methods=['POST'])
    def api_run_anomaly_detection():
        tenant_id = _tenant_id()
        body = _json_body()
        run = run_anomaly_detection(tenant_id, park_name=body.get('park_name'),
                                    max_workers=app.config['ANOMALY_MAX_WORKERS'])
        return jsonify({
            "detected": len(run.detected),
            "created": [a.to_dict() for a in run.created],
        })

    @app.route('/api/scada/anomalies')
    def api_anomalies():
        tenant_id = _tenant_id()
        unresolved = request.args.get('unresolved', '').lower() in ('1', 'true', 'yes')
        turbine_id = request.args.get('turbine_id', type=int)
        limit = min(request.args.get('limit', 100, type=int), 500)
        rows = list_anomalies(tenant_id, unresolved_only=unresolved, turbine_id=turbine_id, limit=limit)
        return jsonify([anomaly_to_dict(a) for a in rows])

    @app.route('/api/scada/anomalies/<int:anomaly_id>/resolve', methods=['POST'])
    def api_resolve_anomaly(anomaly_id):
        tenant_id = _tenant_id()
        body = _json_body()
        anomaly = resolve_anomaly(tenant_id, anomaly_id, note=body.get('note'))
        if anomaly is None:
            abort(404, f"Anomaly {anomaly_id} not found")
        return jsonify(anomaly_to_dict(anomaly))

    @app.route('/api/scada/anomaly-config', methods=['GET', 'PUT'])
    def api_anomaly_config():
        tenant_id = _tenant_id()
        if request.method == 'PUT':
            try:
                config = save_config(tenant_id, _json_body())
            except ValueError as exc:
                abort(400, str(exc))
        else:
            config = get_config(tenant_id)
        return jsonify(asdict(config))

    # ─── API: Production ──────────────────────────────────────────────────────

    @app.route('/api/turbine/<int:turbine_id>/productions')
    def api_productions(turbine_id):
        tenant_id = _tenant_id()
        turbine = Turbine.query.filter_by(id=turbine_id, tenant_id=tenant_id).first()
        if turbine is None:
            abort(404, f"Turbine {turbine_id} not found")

        q = TurbineProduction.query.filter_by(turbine_id=turbine_id, tenant_id=tenant_id)
        year = request.args.get('year', type=int)
        if year:
            q = q.filter_by(year=year)
        rows = q.order_by(TurbineProduction.year, TurbineProduction.month).all()
        return jsonify({
            "turbine_id": turbine.id,
            "name": turbine.name,
            "productions": [{
                "year": p.year,
                "month": p.month,
                "production_kwh": p.production_kwh,
                "source": p.source,
                "status": p.status,
                "updated_at": _iso(p.updated_at),
            } for p in rows],
        })


if __name__ == '__main__':
    from dotenv import load_dotenv
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='[SCADA] %(asctime)s %(levelname)s %(message)s',
        datefmt='%H:%M:%S',
    )
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port, debug=False)
