"""
Turns one device payload into the rows written by TelemetryStore.record_ingest.

Expected JSON:
{
    "device_id": "MS11-A1B2C3",                 // required
    "device_name": "Greenhouse",                // optional - defaults to API key label
    "firmware_version": "2026.2.12.02",         // optional
    "filesystem_version": "2026.2.12.02",       // optional
    "ip_address": "192.168.1.100",              // optional - defaults to remote address
    "mac_address": "AA:BB:CC:DD:EE:FF",         // optional
    "timestamp": "2026-02-12T10:30:00+01:00",   // optional - ISO or unix, else receipt time
    "temperature": 23.5,
    "humidity": 45.2,
    "uptime_seconds": 86400,
    "free_heap": 245760,
    "wifi_rssi": -65,
    "ms11_connected": true,
    "event": {                                  // optional
        "type": "warning",                      // defaults to "info"
        "category": "sensor",                   // defaults to "general"
        "message": "AHT10 read failed",
        "details": {...}
    },
    ...                                         // anything else is kept in extra_data
}
"""

from .timeutil import get_local_now, parse_timestamp

DEVICE_FIELDS = (
    'device_id', 'device_name', 'firmware_version', 'filesystem_version',
    'ip_address', 'mac_address',
)

SAMPLE_FIELDS = (
    'timestamp', 'temperature', 'humidity', 'uptime_seconds',
    'free_heap', 'wifi_rssi', 'ms11_connected',
)

KNOWN_FIELDS = frozenset(DEVICE_FIELDS + SAMPLE_FIELDS + ('event',))

DEFAULT_EVENT_TYPE = 'info'
DEFAULT_EVENT_CATEGORY = 'general'


class PayloadError(ValueError):
    """Payload cannot be ingested; message is safe to return to the caller."""


def validate_payload(data):
    if not isinstance(data, dict):
        raise PayloadError('Invalid JSON')
    device_id = data.get('device_id')
    if device_id is None or device_id == '':
        raise PayloadError('Missing required field: device_id')
    if isinstance(device_id, (dict, list)):
        raise PayloadError('Invalid device_id')
    return data


def extra_fields(data):
    """Top-level keys outside the known field set, or None."""
    extra = {k: v for k, v in data.items() if k not in KNOWN_FIELDS}
    # an "event" that is not an object is not logged as an event, keep it
    if 'event' in data and not isinstance(data['event'], dict):
        extra['event'] = data['event']
    return extra or None


def build_device(data, device_label, remote_addr=None):
    return {
        'device_id': str(data['device_id']),
        'device_name': data.get('device_name') or device_label,
        'firmware_version': data.get('firmware_version'),
        'filesystem_version': data.get('filesystem_version'),
        'ip_address': data.get('ip_address') or remote_addr,
        'mac_address': data.get('mac_address'),
    }


def build_sample(data, received_at=None):
    connected = data.get('ms11_connected')
    return {
        'device_id': str(data['device_id']),
        'timestamp': parse_timestamp(data.get('timestamp')) or received_at or get_local_now(),
        'temperature': data.get('temperature'),
        'humidity': data.get('humidity'),
        'uptime_seconds': data.get('uptime_seconds'),
        'free_heap': data.get('free_heap'),
        'wifi_rssi': data.get('wifi_rssi'),
        'ms11_connected': bool(connected) if connected is not None else None,
        'extra_data': extra_fields(data),
    }


def build_event(data):
    event = data.get('event')
    if not isinstance(event, dict):
        return None
    return {
        'device_id': str(data['device_id']),
        'event_type': event.get('type') or DEFAULT_EVENT_TYPE,
        'event_category': event.get('category') or DEFAULT_EVENT_CATEGORY,
        'message': event.get('message') or '',
        'details': event.get('details'),
    }


def build_records(data, device_label, remote_addr=None, received_at=None):
    """Validate a payload and return (device, sample, event)."""
    validate_payload(data)
    received_at = received_at or get_local_now()
    return (
        build_device(data, device_label, remote_addr),
        build_sample(data, received_at),
        build_event(data),
    )
