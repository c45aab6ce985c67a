"""
API key to device label lookup.

Keys are process-wide configuration and never change at runtime.
"""

from types import MappingProxyType

UNKNOWN_DEVICE = 'Unknown Device'


class CredentialStore:
    """Read-only mapping of API key -> device label."""

    def __init__(self, keys=None, required=True):
        self._keys = MappingProxyType(dict(keys or {}))
        self.required = required

    @classmethod
    def from_string(cls, value, required=True):
        """
        Parse "key1=Device 1,key2=Device 2".

        A key without a label gets the generic device name.
        """
        keys = {}
        for item in (value or '').split(','):
            item = item.strip()
            if not item:
                continue
            key, _, label = item.partition('=')
            key = key.strip()
            if key:
                keys[key] = label.strip() or UNKNOWN_DEVICE
        return cls(keys, required=required)

    def verify(self, api_key):
        if not self.required:
            return True
        return bool(api_key) and api_key in self._keys

    def label_for(self, api_key):
        return self._keys.get(api_key, UNKNOWN_DEVICE)

    def __len__(self):
        return len(self._keys)

    def __contains__(self, api_key):
        return api_key in self._keys
