#!/usr/bin/env python3
"""
═══════════════════════════════════════════════════════════════════════════════
MS11 Telemetry Logging Server
═══════════════════════════════════════════════════════════════════════════════

Receives telemetry and events from MS11 controllers via HTTP POST and stores
them in PostgreSQL. Serves stored history and hourly statistics.

Usage:
    pip install -e .
    ms11-server

Environment Variables (.env file):
    See .env.template for all options
"""

import logging
from decimal import Decimal
from datetime import datetime, date
from functools import wraps

import psycopg2
from flask import Blueprint, Flask, current_app, jsonify, request
from flask.json.provider import DefaultJSONProvider
from flask_cors import CORS

from . import config
from .credentials import CredentialStore
from .ingest import PayloadError, build_records
from .query import QueryError, run_query
from .store import TelemetryStore
from .timeutil import get_local_now

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


# Custom JSON encoding for Decimal and datetime
class TelemetryJSONProvider(DefaultJSONProvider):
    @staticmethod
    def default(obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return DefaultJSONProvider.default(obj)


def get_store():
    return current_app.extensions['ms11_store']


def get_credentials():
    return current_app.extensions['ms11_credentials']


def error(message, status):
    return jsonify({'error': message}), status


# ═══════════════════════════════════════════════════════════════════════════════
# Authentication
# ═══════════════════════════════════════════════════════════════════════════════

def require_read_key(f):
    """Require the read API key when one is configured."""
    @wraps(f)
    def decorated(*args, **kwargs):
        read_key = current_app.config['READ_API_KEY']

        # If no read key is configured, allow access (development mode)
        if not read_key:
            return f(*args, **kwargs)

        if request.headers.get('X-API-Key', '') == read_key:
            return f(*args, **kwargs)

        return error('Unauthorized - Invalid or missing API key', 401)
    return decorated


# ═══════════════════════════════════════════════════════════════════════════════
# Ingestion
# ═══════════════════════════════════════════════════════════════════════════════

@api.route('/ingest', methods=['POST'])
@api.route('/ingest.php', methods=['POST'])
def ingest():
    """Store one device report: device state, telemetry sample, optional event."""
    credentials = get_credentials()
    api_key = request.headers.get('X-API-Key', '')
    if not credentials.verify(api_key):
        return error('Unauthorized - Invalid API key', 401)

    data = request.get_json(force=True, silent=True)

    try:
        device, sample, event = build_records(
            data,
            device_label=credentials.label_for(api_key),
            remote_addr=request.remote_addr,
        )
    except PayloadError as e:
        return error(str(e), 400)

    try:
        get_store().record_ingest(device, sample, event)
    except psycopg2.Error as e:
        logger.error(f"Error ingesting data for {device['device_id']}: {e}")
        return error('Database error occurred', 500)

    logger.info(
        f"Telemetry from {device['device_id']}"
        + (f" + event {event['event_category']}/{event['event_type']}" if event else "")
    )
    return jsonify({
        'success': True,
        'message': 'Data received successfully',
        'device_id': device['device_id'],
    }), 201


# ═══════════════════════════════════════════════════════════════════════════════
# Query
# ═══════════════════════════════════════════════════════════════════════════════

@api.route('/query', methods=['GET'])
@api.route('/query.php', methods=['GET'])
@require_read_key
def query():
    """Run one query action (see ms11_telemetry.query)."""
    try:
        return jsonify(run_query(get_store(), request.args))
    except QueryError as e:
        return error(str(e), 400)
    except psycopg2.Error as e:
        logger.error(f"Query {request.args.get('action', 'list_devices')} failed: {e}")
        return error('Database error occurred', 500)


# ═══════════════════════════════════════════════════════════════════════════════
# Operational Endpoints
# ═══════════════════════════════════════════════════════════════════════════════

@api.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint (no auth required for monitoring)."""
    try:
        counts = get_store().counts()
    except psycopg2.Error as e:
        logger.error(f"Health check failed: {e}")
        return jsonify({
            'status': 'unhealthy',
            'database': 'unavailable'
        }), 500

    return jsonify({
        'status': 'healthy',
        'database': 'connected',
        'timezone': config.TIMEZONE,
        'total_devices': counts['devices'],
        'active_devices': counts['active_devices'],
        'total_samples': counts['telemetry'],
        'total_events': counts['events'],
        'server_time': get_local_now().isoformat()
    })


@api.route('/server/time', methods=['GET'])
def get_server_time():
    """Get current server time (useful for device clock sync)."""
    now = get_local_now()
    return jsonify({
        'iso': now.isoformat(),
        'unix': int(now.timestamp()),
        'timezone': config.TIMEZONE
    })


@api.route('/admin/retention', methods=['GET'])
@require_read_key
def get_retention_settings():
    """Get current data retention settings."""
    return jsonify({
        'retention_days': current_app.config['DATA_RETENTION_DAYS'],
        'tables': ['telemetry_data', 'events', 'statistics_hourly'],
        'note': '0 = keep forever'
    })


@api.route('/admin/stats', methods=['GET'])
@require_read_key
def get_database_stats():
    """Get database size and row count statistics."""
    try:
        tables = get_store().storage_report()
    except psycopg2.Error as e:
        logger.error(f"Storage report failed: {e}")
        return error('Database error occurred', 500)

    return jsonify({
        'tables': tables,
        'retention_days': current_app.config['DATA_RETENTION_DAYS']
    })


# ═══════════════════════════════════════════════════════════════════════════════
# Application
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(store=None, credentials=None, **overrides):
    """Build the Flask app; store and credentials default to the environment config."""
    app = Flask(__name__)
    app.json = TelemetryJSONProvider(app)
    app.config.update(
        READ_API_KEY=config.READ_API_KEY,
        DATA_RETENTION_DAYS=config.DATA_RETENTION_DAYS,
        LOG_REQUESTS=config.LOG_REQUESTS,
    )
    app.config.update(overrides)

    # Configure CORS
    if config.CORS_ORIGINS == '*':
        CORS(app, allow_headers=['Content-Type', 'X-API-Key'])
    else:
        CORS(app, origins=config.CORS_ORIGINS.split(','), allow_headers=['Content-Type', 'X-API-Key'])

    if store is None:
        store = TelemetryStore()
    if credentials is None:
        credentials = CredentialStore.from_string(config.API_KEYS, required=config.API_KEY_REQUIRED)
    app.extensions['ms11_store'] = store
    app.extensions['ms11_credentials'] = credentials

    app.register_blueprint(api)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return error('Method not allowed', 405)

    @app.errorhandler(404)
    def not_found(e):
        return error('Not found', 404)

    @app.after_request
    def log_request(response):
        if app.config['LOG_REQUESTS']:
            logger.info(f"{request.remote_addr} {request.method} {request.full_path.rstrip('?')} {response.status_code}")
        return response

    return app


# ═══════════════════════════════════════════════════════════════════════════════
# Main
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    config.setup_logging()

    print("""
═══════════════════════════════════════════════════════════════════════════════
   MS11 Telemetry Logging Server
═══════════════════════════════════════════════════════════════════════════════
""")

    store = TelemetryStore()
    try:
        store.open()
        store.ping()
        logger.info("✓ Database connection successful")
    except psycopg2.Error as e:
        logger.error(f"✗ Database connection failed: {e}")
        print("\n⚠️  Warning: Database connection failed!")
        print("   Check your .env configuration, then run: psql -f schema.sql\n")

    credentials = CredentialStore.from_string(config.API_KEYS, required=config.API_KEY_REQUIRED)
    if not credentials.required:
        auth_str = "Disabled (dev mode)"
    else:
        auth_str = f"{len(credentials)} device key(s)"

    print(f"""
Configuration:
   Database:  {config.DATABASE_URL.split('@')[1] if '@' in config.DATABASE_URL else 'configured'}
   API Keys:  {auth_str}
   Read Key:  {'Enabled' if config.READ_API_KEY else 'Disabled (open queries)'}
   Timezone:  {config.TIMEZONE}
   Host:      {config.HOST}:{config.PORT}
   Retention: {config.DATA_RETENTION_DAYS}d

Endpoints:
   POST /api/ingest            - Device telemetry and events (X-API-Key)
   GET  /api/query             - list_devices | latest_data | telemetry | events | statistics
   GET  /api/health            - Health check
   GET  /api/server/time       - Server time (for device sync)
   GET  /api/admin/retention   - View retention settings
   GET  /api/admin/stats       - Database statistics

Starting server...
═══════════════════════════════════════════════════════════════════════════════
""")

    app = create_app(store=store, credentials=credentials)
    app.run(host=config.HOST, port=config.PORT, debug=config.DEBUG)


if __name__ == '__main__':
    main()
