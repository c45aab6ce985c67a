"""
PostgreSQL persistence for devices, telemetry, events and hourly statistics.

Every SQL statement the server and the maintenance jobs run lives here.
"""

import logging
import threading
from contextlib import contextmanager

from psycopg2 import pool
from psycopg2.extras import RealDictCursor, Json

from . import config

logger = logging.getLogger(__name__)

# Time-series tables and the column retention is measured against
RETENTION_TABLES = (
    ('telemetry_data', 'timestamp'),
    ('events', 'timestamp'),
    ('statistics_hourly', 'hour_timestamp'),
)

STORAGE_TABLES = ('devices', 'telemetry_data', 'events', 'statistics_hourly')


class TelemetryStore:
    """Connection pool plus the queries run against it."""

    def __init__(self, dsn=None, minconn=None, maxconn=None, db_pool=None):
        self.dsn = dsn or config.DATABASE_URL
        self.minconn = minconn or config.DB_POOL_MIN
        self.maxconn = maxconn or config.DB_POOL_MAX
        self._pool = db_pool
        self._pool_lock = threading.Lock()

    # ═══════════════════════════════════════════════════════════════════════
    # Connection handling
    # ═══════════════════════════════════════════════════════════════════════

    def open(self):
        """Initialize the database connection pool."""
        if self._pool is None:
            with self._pool_lock:
                if self._pool is None:
                    self._pool = pool.ThreadedConnectionPool(
                        self.minconn,
                        self.maxconn,
                        self.dsn,
                        cursor_factory=RealDictCursor
                    )
                    logger.info(f"✓ Database pool initialized (min={self.minconn}, max={self.maxconn})")
        return self

    def close(self):
        with self._pool_lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None

    @contextmanager
    def connection(self):
        """Borrow a connection from the pool."""
        db_pool = self._pool
        if db_pool is None:
            db_pool = self.open()._pool
        conn = db_pool.getconn()
        try:
            yield conn
        finally:
            # same pool the connection came from
            db_pool.putconn(conn)

    @contextmanager
    def transaction(self):
        """Cursor whose statements commit together or not at all."""
        with self.connection() as conn:
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    @contextmanager
    def cursor(self):
        """Cursor for read-only statements."""
        with self.connection() as conn:
            cur = conn.cursor()
            try:
                yield cur
            finally:
                cur.close()
                conn.rollback()

    def ping(self):
        """Check database connection."""
        with self.cursor() as cur:
            cur.execute("SELECT 1")
        return True

    def counts(self):
        with self.cursor() as cur:
            cur.execute("""
                SELECT
                    (SELECT COUNT(*) FROM devices) AS devices,
                    (SELECT COUNT(*) FROM devices WHERE is_active) AS active_devices,
                    (SELECT COUNT(*) FROM telemetry_data) AS telemetry,
                    (SELECT COUNT(*) FROM events) AS events
            """)
            return dict(cur.fetchone())

    # ═══════════════════════════════════════════════════════════════════════
    # Ingestion
    # ═══════════════════════════════════════════════════════════════════════

    def record_ingest(self, device, sample, event=None):
        """
        Write one ingestion request: device upsert, telemetry sample and
        optional event. Either all rows are written or none are.
        """
        with self.transaction() as cur:
            cur.execute("""
                INSERT INTO devices (
                    device_id, device_name, firmware_version, filesystem_version,
                    ip_address, mac_address, first_seen, last_seen
                ) VALUES (
                    %(device_id)s, %(device_name)s, %(firmware_version)s, %(filesystem_version)s,
                    %(ip_address)s, %(mac_address)s, NOW(), NOW()
                )
                ON CONFLICT (device_id) DO UPDATE SET
                    device_name = COALESCE(EXCLUDED.device_name, devices.device_name),
                    firmware_version = COALESCE(EXCLUDED.firmware_version, devices.firmware_version),
                    filesystem_version = COALESCE(EXCLUDED.filesystem_version, devices.filesystem_version),
                    ip_address = COALESCE(EXCLUDED.ip_address, devices.ip_address),
                    mac_address = COALESCE(EXCLUDED.mac_address, devices.mac_address),
                    last_seen = NOW()
            """, device)

            cur.execute("""
                INSERT INTO telemetry_data (
                    device_id, timestamp, temperature, humidity, uptime_seconds,
                    free_heap, wifi_rssi, ms11_connected, extra_data
                ) VALUES (
                    %(device_id)s, %(timestamp)s, %(temperature)s, %(humidity)s, %(uptime_seconds)s,
                    %(free_heap)s, %(wifi_rssi)s, %(ms11_connected)s, %(extra_data)s
                )
                RETURNING id
            """, {
                **sample,
                'extra_data': Json(sample['extra_data']) if sample.get('extra_data') else None
            })
            sample_id = cur.fetchone()['id']

            if event is not None:
                cur.execute("""
                    INSERT INTO events (
                        device_id, event_type, event_category, message, details
                    ) VALUES (
                        %(device_id)s, %(event_type)s, %(event_category)s, %(message)s, %(details)s
                    )
                """, {
                    **event,
                    'details': Json(event['details']) if event.get('details') is not None else None
                })

        return sample_id

    # ═══════════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════════

    def list_devices(self):
        with self.cursor() as cur:
            cur.execute("""
                SELECT
                    device_id, device_name, firmware_version, filesystem_version,
                    ip_address, mac_address, first_seen, last_seen, is_active
                FROM devices
                ORDER BY last_seen DESC NULLS LAST
            """)
            return [dict(r) for r in cur.fetchall()]

    def latest_data(self, device_id=None):
        where = "WHERE device_id = %(device_id)s" if device_id else ""
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT
                    t.device_id, d.device_name, t.timestamp, t.temperature, t.humidity,
                    t.uptime_seconds, t.free_heap, t.wifi_rssi, t.ms11_connected
                FROM (
                    SELECT DISTINCT ON (device_id) *
                    FROM telemetry_data
                    {where}
                    ORDER BY device_id, timestamp DESC, id DESC
                ) t
                JOIN devices d ON t.device_id = d.device_id
                ORDER BY t.timestamp DESC
            """, {'device_id': device_id})
            return [dict(r) for r in cur.fetchall()]

    def telemetry(self, device_id, start=None, end=None, limit=100, offset=0):
        conditions = ["device_id = %(device_id)s"]
        params = {'device_id': device_id, 'limit': limit, 'offset': offset}

        if start:
            conditions.append("timestamp >= %(start)s")
            params['start'] = start

        if end:
            conditions.append("timestamp <= %(end)s")
            params['end'] = end

        where = " AND ".join(conditions)
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT
                    timestamp, temperature, humidity, uptime_seconds,
                    free_heap, wifi_rssi, ms11_connected, extra_data
                FROM telemetry_data
                WHERE {where}
                ORDER BY timestamp DESC, id DESC
                LIMIT %(limit)s OFFSET %(offset)s
            """, params)
            return [dict(r) for r in cur.fetchall()]

    def events(self, device_id=None, limit=100, offset=0):
        where = "WHERE e.device_id = %(device_id)s" if device_id else ""
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT
                    e.device_id, d.device_name, e.timestamp, e.event_type,
                    e.event_category, e.message, e.details
                FROM events e
                JOIN devices d ON e.device_id = d.device_id
                {where}
                ORDER BY e.timestamp DESC, e.id DESC
                LIMIT %(limit)s OFFSET %(offset)s
            """, {'device_id': device_id, 'limit': limit, 'offset': offset})
            return [dict(r) for r in cur.fetchall()]

    def statistics(self, device_id, start=None, end=None, limit=100):
        conditions = ["device_id = %(device_id)s"]
        params = {'device_id': device_id, 'limit': limit}

        if start:
            conditions.append("hour_timestamp >= %(start)s")
            params['start'] = start

        if end:
            conditions.append("hour_timestamp <= %(end)s")
            params['end'] = end

        where = " AND ".join(conditions)
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT
                    hour_timestamp, temp_avg, temp_min, temp_max,
                    humidity_avg, humidity_min, humidity_max,
                    uptime_avg, free_heap_avg, wifi_rssi_avg, sample_count
                FROM statistics_hourly
                WHERE {where}
                ORDER BY hour_timestamp DESC
                LIMIT %(limit)s
            """, params)
            return [dict(r) for r in cur.fetchall()]

    # ═══════════════════════════════════════════════════════════════════════
    # Hourly aggregation
    # ═══════════════════════════════════════════════════════════════════════

    def active_device_ids(self):
        with self.cursor() as cur:
            cur.execute("SELECT device_id FROM devices WHERE is_active ORDER BY device_id")
            return [r['device_id'] for r in cur.fetchall()]

    def hourly_summary(self, device_id, hour_start, hour_end):
        """Aggregate one device's samples with a temperature in [hour_start, hour_end)."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT
                    COUNT(*) AS sample_count,
                    AVG(temperature) AS temp_avg,
                    MIN(temperature) AS temp_min,
                    MAX(temperature) AS temp_max,
                    AVG(humidity) AS humidity_avg,
                    MIN(humidity) AS humidity_min,
                    MAX(humidity) AS humidity_max,
                    AVG(uptime_seconds) AS uptime_avg,
                    AVG(free_heap) AS free_heap_avg,
                    AVG(wifi_rssi) AS wifi_rssi_avg
                FROM telemetry_data
                WHERE device_id = %(device_id)s
                    AND timestamp >= %(hour_start)s
                    AND timestamp < %(hour_end)s
                    AND temperature IS NOT NULL
            """, {'device_id': device_id, 'hour_start': hour_start, 'hour_end': hour_end})
            return dict(cur.fetchone())

    def save_hourly_summary(self, device_id, hour_start, summary):
        """Create or fully overwrite the rollup row for (device, hour)."""
        with self.transaction() as cur:
            cur.execute("""
                INSERT INTO statistics_hourly (
                    device_id, hour_timestamp,
                    temp_avg, temp_min, temp_max,
                    humidity_avg, humidity_min, humidity_max,
                    uptime_avg, free_heap_avg, wifi_rssi_avg,
                    sample_count
                ) VALUES (
                    %(device_id)s, %(hour_timestamp)s,
                    %(temp_avg)s, %(temp_min)s, %(temp_max)s,
                    %(humidity_avg)s, %(humidity_min)s, %(humidity_max)s,
                    %(uptime_avg)s, %(free_heap_avg)s, %(wifi_rssi_avg)s,
                    %(sample_count)s
                )
                ON CONFLICT (device_id, hour_timestamp) DO UPDATE SET
                    temp_avg = EXCLUDED.temp_avg,
                    temp_min = EXCLUDED.temp_min,
                    temp_max = EXCLUDED.temp_max,
                    humidity_avg = EXCLUDED.humidity_avg,
                    humidity_min = EXCLUDED.humidity_min,
                    humidity_max = EXCLUDED.humidity_max,
                    uptime_avg = EXCLUDED.uptime_avg,
                    free_heap_avg = EXCLUDED.free_heap_avg,
                    wifi_rssi_avg = EXCLUDED.wifi_rssi_avg,
                    sample_count = EXCLUDED.sample_count,
                    updated_at = NOW()
            """, {
                **summary,
                'device_id': device_id,
                'hour_timestamp': hour_start
            })

    # ═══════════════════════════════════════════════════════════════════════
    # Retention
    # ═══════════════════════════════════════════════════════════════════════

    def count_older_than(self, cutoff):
        """Rows per time-series table strictly older than cutoff."""
        results = {}
        with self.cursor() as cur:
            for table, column in RETENTION_TABLES:
                cur.execute(f"SELECT COUNT(*) AS count FROM {table} WHERE {column} < %s", (cutoff,))
                results[table] = cur.fetchone()['count']
        return results

    def delete_older_than(self, cutoff, tables=None):
        """Delete rows strictly older than cutoff, committing each table on its own."""
        results = {}
        for table, column in RETENTION_TABLES:
            if tables is not None and table not in tables:
                continue
            with self.transaction() as cur:
                cur.execute(f"DELETE FROM {table} WHERE {column} < %s", (cutoff,))
                results[table] = cur.rowcount
            logger.info(f"Retention: deleted {results[table]} row(s) from {table}")
        return results

    def storage_report(self):
        """Size and row count per table, largest first."""
        tables = []
        with self.cursor() as cur:
            for table in STORAGE_TABLES:
                cur.execute(f"""
                    SELECT
                        COUNT(*) AS row_count,
                        pg_total_relation_size(%s::regclass) AS size_bytes,
                        pg_size_pretty(pg_total_relation_size(%s::regclass)) AS total_size
                    FROM {table}
                """, (table, table))
                tables.append({'table_name': table, **dict(cur.fetchone())})
        tables.sort(key=lambda t: t['size_bytes'], reverse=True)
        return tables
