"""
Shared fixtures: an in-memory stand-in for TelemetryStore and a Flask client.
"""

import copy
import os
from datetime import datetime, timedelta, timezone
from statistics import mean

import psycopg2
import pytest

# Fixed before ms11_telemetry.config is imported
os.environ['TIMEZONE'] = 'Europe/Amsterdam'
os.environ['LOG_FILE'] = ''

from ms11_telemetry.credentials import CredentialStore
from ms11_telemetry.server import create_app

API_KEY = 'example_key_device_1'
API_KEY_LABEL = 'Device 1'


class FakeStore:
    """In-memory TelemetryStore with the same method surface."""

    def __init__(self):
        self.devices = {}
        self.telemetry_rows = []
        self.event_rows = []
        self.stats_rows = {}
        self.fail_on = None
        self.calls = []
        self._next_id = 1

    def _now(self):
        return datetime.now(timezone.utc)

    def _fail(self, step):
        if self.fail_on == step:
            raise psycopg2.OperationalError(f"simulated failure during {step}")

    def _id(self):
        self._next_id += 1
        return self._next_id - 1

    # ingestion

    def record_ingest(self, device, sample, event=None):
        self.calls.append('record_ingest')
        snapshot = (copy.deepcopy(self.devices), list(self.telemetry_rows), list(self.event_rows))
        try:
            self._fail('device')
            now = self._now()
            existing = self.devices.get(device['device_id'])
            if existing is None:
                self.devices[device['device_id']] = {
                    **device, 'first_seen': now, 'last_seen': now, 'is_active': True
                }
            else:
                for key, value in device.items():
                    if value is not None:
                        existing[key] = value
                existing['last_seen'] = now

            self._fail('telemetry')
            sample_id = self._id()
            self.telemetry_rows.append({**sample, 'id': sample_id})

            if event is not None:
                self._fail('event')
                self.event_rows.append({**event, 'id': self._id(), 'timestamp': now})
        except psycopg2.Error:
            self.devices, self.telemetry_rows, self.event_rows = snapshot
            raise
        return sample_id

    # queries

    def list_devices(self):
        self._fail('query')
        return sorted(self.devices.values(), key=lambda d: d['last_seen'], reverse=True)

    def latest_data(self, device_id=None):
        self._fail('query')
        latest = {}
        for row in self.telemetry_rows:
            if device_id and row['device_id'] != device_id:
                continue
            current = latest.get(row['device_id'])
            if current is None or (row['timestamp'], row['id']) > (current['timestamp'], current['id']):
                latest[row['device_id']] = row
        rows = [
            {**row, 'device_name': self.devices[row['device_id']]['device_name']}
            for row in latest.values()
        ]
        return sorted(rows, key=lambda r: r['timestamp'], reverse=True)

    def telemetry(self, device_id, start=None, end=None, limit=100, offset=0):
        self._fail('query')
        self.calls.append(('telemetry', device_id, start, end, limit, offset))
        rows = [
            r for r in self.telemetry_rows
            if r['device_id'] == device_id
            and (start is None or r['timestamp'] >= start)
            and (end is None or r['timestamp'] <= end)
        ]
        rows.sort(key=lambda r: (r['timestamp'], r['id']), reverse=True)
        return rows[offset:offset + limit]

    def events(self, device_id=None, limit=100, offset=0):
        self._fail('query')
        self.calls.append(('events', device_id, limit, offset))
        rows = [
            {**e, 'device_name': self.devices[e['device_id']]['device_name']}
            for e in self.event_rows
            if not device_id or e['device_id'] == device_id
        ]
        rows.sort(key=lambda r: (r['timestamp'], r['id']), reverse=True)
        return rows[offset:offset + limit]

    def statistics(self, device_id, start=None, end=None, limit=100):
        self._fail('query')
        self.calls.append(('statistics', device_id, start, end, limit))
        rows = [
            {**row, 'hour_timestamp': hour}
            for (dev, hour), row in self.stats_rows.items()
            if dev == device_id
            and (start is None or hour >= start)
            and (end is None or hour <= end)
        ]
        rows.sort(key=lambda r: r['hour_timestamp'], reverse=True)
        return rows[:limit]

    # aggregation

    def active_device_ids(self):
        self._fail('active_devices')
        return sorted(d['device_id'] for d in self.devices.values() if d.get('is_active', True))

    def hourly_summary(self, device_id, hour_start, hour_end):
        self._fail(f'summary:{device_id}')
        rows = [
            r for r in self.telemetry_rows
            if r['device_id'] == device_id
            and hour_start <= r['timestamp'] < hour_end
            and r.get('temperature') is not None
        ]

        def agg(fn, field):
            values = [r[field] for r in rows if r.get(field) is not None]
            return fn(values) if values else None

        return {
            'sample_count': len(rows),
            'temp_avg': agg(mean, 'temperature'),
            'temp_min': agg(min, 'temperature'),
            'temp_max': agg(max, 'temperature'),
            'humidity_avg': agg(mean, 'humidity'),
            'humidity_min': agg(min, 'humidity'),
            'humidity_max': agg(max, 'humidity'),
            'uptime_avg': agg(mean, 'uptime_seconds'),
            'free_heap_avg': agg(mean, 'free_heap'),
            'wifi_rssi_avg': agg(mean, 'wifi_rssi'),
        }

    def save_hourly_summary(self, device_id, hour_start, summary):
        self._fail(f'save:{device_id}')
        self.stats_rows[(device_id, hour_start)] = dict(summary)

    # retention

    def _retention_sets(self):
        return {
            'telemetry_data': (self.telemetry_rows, lambda r: r['timestamp']),
            'events': (self.event_rows, lambda r: r['timestamp']),
        }

    def count_older_than(self, cutoff):
        self._fail('count')
        counts = {
            table: sum(1 for r in rows if ts(r) < cutoff)
            for table, (rows, ts) in self._retention_sets().items()
        }
        counts['statistics_hourly'] = sum(1 for (_, hour) in self.stats_rows if hour < cutoff)
        return counts

    def delete_older_than(self, cutoff, tables=None):
        self._fail('delete')
        results = {}
        if tables is None or 'telemetry_data' in tables:
            before = len(self.telemetry_rows)
            self.telemetry_rows = [r for r in self.telemetry_rows if r['timestamp'] >= cutoff]
            results['telemetry_data'] = before - len(self.telemetry_rows)
        if tables is None or 'events' in tables:
            before = len(self.event_rows)
            self.event_rows = [r for r in self.event_rows if r['timestamp'] >= cutoff]
            results['events'] = before - len(self.event_rows)
        if tables is None or 'statistics_hourly' in tables:
            old = [key for key in self.stats_rows if key[1] < cutoff]
            for key in old:
                del self.stats_rows[key]
            results['statistics_hourly'] = len(old)
        return results

    def storage_report(self):
        return [
            {'table_name': 'devices', 'row_count': len(self.devices), 'size_bytes': 0, 'total_size': '0 bytes'},
            {'table_name': 'telemetry_data', 'row_count': len(self.telemetry_rows), 'size_bytes': 0, 'total_size': '0 bytes'},
            {'table_name': 'events', 'row_count': len(self.event_rows), 'size_bytes': 0, 'total_size': '0 bytes'},
            {'table_name': 'statistics_hourly', 'row_count': len(self.stats_rows), 'size_bytes': 0, 'total_size': '0 bytes'},
        ]

    def close(self):
        pass

    def counts(self):
        self._fail('query')
        return {
            'devices': len(self.devices),
            'active_devices': len(self.active_device_ids()),
            'telemetry': len(self.telemetry_rows),
            'events': len(self.event_rows),
        }

    # helpers for tests

    def add_sample(self, device_id, timestamp, **fields):
        if device_id not in self.devices:
            self.devices[device_id] = {
                'device_id': device_id, 'device_name': device_id,
                'first_seen': timestamp, 'last_seen': timestamp, 'is_active': True,
            }
        row = {
            'device_id': device_id, 'timestamp': timestamp, 'id': self._id(),
            'temperature': None, 'humidity': None, 'uptime_seconds': None,
            'free_heap': None, 'wifi_rssi': None, 'ms11_connected': None,
            'extra_data': None,
        }
        row.update(fields)
        self.telemetry_rows.append(row)
        return row

    def add_event(self, device_id, timestamp, **fields):
        row = {
            'device_id': device_id, 'timestamp': timestamp, 'id': self._id(),
            'event_type': 'info', 'event_category': 'general', 'message': '', 'details': None,
        }
        row.update(fields)
        self.event_rows.append(row)
        return row


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def credentials():
    return CredentialStore({API_KEY: API_KEY_LABEL, 'example_key_device_2': 'Device 2'})


@pytest.fixture
def app(store, credentials):
    app = create_app(store=store, credentials=credentials, READ_API_KEY='', TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {'X-API-Key': API_KEY}


@pytest.fixture
def utc_hour():
    """A fixed hour boundary in UTC."""
    return datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def minutes(utc_hour):
    def at(n):
        return utc_hour + timedelta(minutes=n)
    return at
