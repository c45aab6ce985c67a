"""
Read-only query actions.

Query parameters:
    action, device_id, limit, offset, start, end
"""

from .timeutil import floor_hour, parse_timestamp

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
# PostgreSQL OFFSET is a bigint
MAX_OFFSET = 2 ** 63 - 1

ACTIONS = ('list_devices', 'latest_data', 'telemetry', 'events', 'statistics')


class QueryError(ValueError):
    """Bad query parameters; message is safe to return to the caller."""


def clamp_limit(value, default=DEFAULT_LIMIT, ceiling=MAX_LIMIT):
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    return max(1, min(limit, ceiling))


def clamp_offset(value, ceiling=MAX_OFFSET):
    try:
        return max(0, min(int(value), ceiling))
    except (TypeError, ValueError):
        return 0


def parse_bound(args, name):
    value = args.get(name)
    if not value:
        return None
    dt = parse_timestamp(value)
    if dt is None:
        raise QueryError(f'Invalid {name} timestamp')
    return dt


def require_device(device_id, action):
    if not device_id:
        raise QueryError(f'device_id is required for {action} action')
    return device_id


def run_query(store, args):
    """Dispatch one query request; returns the JSON envelope."""
    action = args.get('action') or 'list_devices'
    device_id = args.get('device_id') or None
    limit = clamp_limit(args.get('limit'))
    offset = clamp_offset(args.get('offset'))

    if action == 'list_devices':
        devices = store.list_devices()
        return {
            'success': True,
            'devices': devices,
            'count': len(devices),
        }

    if action == 'latest_data':
        data = store.latest_data(device_id)
        return {
            'success': True,
            'data': data,
            'count': len(data),
        }

    if action == 'telemetry':
        require_device(device_id, action)
        data = store.telemetry(
            device_id,
            start=parse_bound(args, 'start'),
            end=parse_bound(args, 'end'),
            limit=limit,
            offset=offset,
        )
        return {
            'success': True,
            'device_id': device_id,
            'data': data,
            'count': len(data),
            'limit': limit,
            'offset': offset,
        }

    if action == 'events':
        events = store.events(device_id, limit=limit, offset=offset)
        return {
            'success': True,
            'events': events,
            'count': len(events),
            'limit': limit,
            'offset': offset,
        }

    if action == 'statistics':
        require_device(device_id, action)
        start = parse_bound(args, 'start')
        end = parse_bound(args, 'end')
        stats = store.statistics(
            device_id,
            start=floor_hour(start) if start else None,
            end=floor_hour(end) if end else None,
            limit=limit,
        )
        return {
            'success': True,
            'device_id': device_id,
            'statistics': stats,
            'count': len(stats),
        }

    raise QueryError('Invalid action specified')
