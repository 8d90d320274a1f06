import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from wavestats.domain.entities import CachedUser
from wavestats.domain.ports import ProfileStore

logger = logging.getLogger(__name__)

# Fields a patch may overwrite; anything else is ignored
PATCHABLE_FIELDS = ('display_name', 'followers', 'image', 'topTracks')


class ProfileStoreError(Exception):
    """The profile cache could not be read or written."""
    pass


def _apply_patch(record: Optional[CachedUser], user_id: str, patch: Dict[str, Any]) -> CachedUser:
    data = record.to_json() if record else CachedUser(id=user_id).to_json()
    for key in PATCHABLE_FIELDS:
        if key in patch:
            data[key] = patch[key]
    return CachedUser.from_json(data)


class InMemoryProfileStore(ProfileStore):
    """Process-local profile cache, used when no database file is configured."""

    def __init__(self):
        self._users: Dict[str, CachedUser] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[CachedUser]:
        with self._lock:
            record = self._users.get(user_id)
            return CachedUser.from_json(record.to_json()) if record else None

    def upsert(self, user_id: str, patch: Dict[str, Any]) -> CachedUser:
        with self._lock:
            record = _apply_patch(self._users.get(user_id), user_id, patch)
            self._users[user_id] = record
            return CachedUser.from_json(record.to_json())

    def all(self) -> List[CachedUser]:
        with self._lock:
            return [CachedUser.from_json(r.to_json()) for r in self._users.values()]


class JsonProfileStore(ProfileStore):
    """Profile cache kept in a single JSON document ``{"users": [...]}``.

    Every operation reads the whole document and every write rewrites it.
    Writes are serialised by a store-wide lock, so concurrent upserts inside
    one process cannot lose each other's updates. Across processes the last
    writer wins.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.RLock()

    def _read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                content = f.read()
        except IOError as e:
            raise ProfileStoreError(f"Failed to read profile cache {self.path}: {e}")

        if not content.strip():
            return []
        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise ProfileStoreError(f"Profile cache {self.path} is not valid JSON: {e}")

        users = document.get('users') if isinstance(document, dict) else None
        if not isinstance(users, list):
            raise ProfileStoreError(f"Profile cache {self.path} has no users list")
        for index, entry in enumerate(users):
            if not isinstance(entry, dict) or not isinstance(entry.get('id'), str):
                raise ProfileStoreError(f"Profile cache {self.path} has a malformed user entry at index {index}")
        return users

    def _write(self, users: List[Dict[str, Any]]) -> None:
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(directory), prefix='.profiles-', suffix='.json')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump({'users': users}, f, indent=2, ensure_ascii=False)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (IOError, OSError, TypeError, ValueError) as e:
            raise ProfileStoreError(f"Failed to write profile cache {self.path}: {e}")

    def initialize(self) -> None:
        """Create an empty document if none exists yet."""
        with self._lock:
            if not self.path.exists():
                self._write([])

    def get(self, user_id: str) -> Optional[CachedUser]:
        with self._lock:
            for data in self._read():
                if data.get('id') == user_id:
                    return CachedUser.from_json(data)
        return None

    def upsert(self, user_id: str, patch: Dict[str, Any]) -> CachedUser:
        """Insert the record if absent, otherwise overwrite the patched fields."""
        with self._lock:
            users = self._read()
            for index, data in enumerate(users):
                if data.get('id') == user_id:
                    record = _apply_patch(CachedUser.from_json(data), user_id, patch)
                    users[index] = record.to_json()
                    break
            else:
                record = _apply_patch(None, user_id, patch)
                users.append(record.to_json())
                logger.info(f"Cached new user profile {user_id}")

            self._write(users)
            return record

    def all(self) -> List[CachedUser]:
        with self._lock:
            return [CachedUser.from_json(data) for data in self._read()]
