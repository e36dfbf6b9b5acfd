"""
Namespaced key-value state store.

Each namespace (a workflow mode such as "team" or "ralph") is one JSON
document at <state_root>/<namespace>-state.json. The coordination core only
consumes read/write/delete/list; the MCP server exposes them as tools.
"""

import json
import os
import re
import logging
from typing import Any, Dict, List, Optional

from .state import LockedStateFile, quarantine_file

logger = logging.getLogger(__name__)

NAMESPACE_PATTERN = re.compile(r'^[a-z0-9][a-z0-9-]{0,63}$')
STATE_SUFFIX = '-state.json'


class ModeStateStore:
    """read/write/delete/list over <namespace>-state.json documents."""

    def __init__(self, state_root: str):
        self.state_root = os.path.abspath(state_root)

    def _path(self, namespace: str) -> str:
        if not NAMESPACE_PATTERN.match(namespace or ''):
            raise ValueError(f"Invalid state namespace: {namespace!r} (expected [a-z0-9-]+)")
        return os.path.join(self.state_root, f"{namespace}{STATE_SUFFIX}")

    def read(self, namespace: str) -> Optional[Dict[str, Any]]:
        """Return the namespace document, or None when absent or malformed."""
        path = self._path(namespace)
        if not os.path.exists(path):
            return None
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Malformed state document {path}: {e}")
            quarantine_file(path)
            return None
        if not isinstance(data, dict):
            quarantine_file(path)
            return None
        return data

    def write(self, namespace: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Merge `fields` into the namespace document and return the result."""
        path = self._path(namespace)
        with LockedStateFile(path) as (data, f):
            data.update(fields)
            f.seek(0)
            f.truncate()
            f.write(json.dumps(data, indent=2))
        return data

    def delete(self, namespace: str) -> bool:
        path = self._path(namespace)
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False

    def namespaces(self) -> List[str]:
        if not os.path.isdir(self.state_root):
            return []
        return sorted(
            filename[:-len(STATE_SUFFIX)]
            for filename in os.listdir(self.state_root)
            if filename.endswith(STATE_SUFFIX) and NAMESPACE_PATTERN.match(filename[:-len(STATE_SUFFIX)])
        )

    def list(self) -> List[str]:
        """Namespaces whose document has active == true."""
        active = []
        for namespace in self.namespaces():
            data = self.read(namespace)
            if data and data.get('active') is True:
                active.append(namespace)
        return active

    def get_status(self, namespace: Optional[str] = None) -> Dict[str, Any]:
        statuses: Dict[str, Any] = {}
        for name in self.namespaces():
            if namespace and name != namespace:
                continue
            data = self.read(name)
            if data is None:
                statuses[name] = {'error': 'malformed state file'}
                continue
            statuses[name] = {
                'active': bool(data.get('active')),
                'phase': data.get('current_phase'),
                'path': self._path(name),
                'data': data,
            }
        return statuses
