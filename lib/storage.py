"""
Storage, identity and blob-store collaborators.

The pipeline only talks to these through the protocols below. The in-memory
and local-disk implementations back the bundled app and the tests.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import os
import re
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)

ALBUM_COVERS = "album_covers"
ALBUM_REVIEWS = "album_reviews"

Record = Dict[str, Any]
# {"field": value} for equality, {"field": {"not": value}} for inequality
Where = Mapping[str, Any]


class Storage(Protocol):
    async def create(self, collection: str, record: Record) -> Record: ...

    async def update_many(self, collection: str, where: Where, patch: Record) -> int: ...

    async def find_many(self, collection: str, where: Where | None = None) -> List[Record]: ...

    async def find_first(self, collection: str, where: Where | None = None) -> Optional[Record]: ...


class Identity(Protocol):
    def current_user_id(self) -> Optional[str]: ...


class BlobStore(Protocol):
    async def save(self, data: bytes, suggested_name: str) -> str: ...


def matches(record: Mapping[str, Any], where: Where | None) -> bool:
    for field, cond in (where or {}).items():
        value = record.get(field)
        if isinstance(cond, Mapping) and "not" in cond:
            if value == cond["not"]:
                return False
        elif value != cond:
            return False
    return True


class InMemoryStorage:
    """Process-local collections of dict rows, returned as copies."""

    def __init__(self):
        self._rows: Dict[str, List[Record]] = defaultdict(list)

    async def create(self, collection: str, record: Record) -> Record:
        row = copy.deepcopy(dict(record))
        row.setdefault("id", uuid.uuid4().hex)
        row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        self._rows[collection].append(row)
        return copy.deepcopy(row)

    async def update_many(self, collection: str, where: Where, patch: Record) -> int:
        count = 0
        for row in self._rows[collection]:
            if matches(row, where):
                row.update(copy.deepcopy(dict(patch)))
                count += 1
        return count

    async def find_many(self, collection: str, where: Where | None = None) -> List[Record]:
        return [copy.deepcopy(r) for r in self._rows[collection] if matches(r, where)]

    async def find_first(self, collection: str, where: Where | None = None) -> Optional[Record]:
        for r in self._rows[collection]:
            if matches(r, where):
                return copy.deepcopy(r)
        return None


class StaticIdentity:
    def __init__(self, user_id: str | None):
        self.user_id = user_id

    def current_user_id(self) -> Optional[str]:
        return self.user_id


class HeaderIdentity:
    """User id from the ``X-User-Id`` request header (set by the auth proxy)."""

    header = "x-user-id"

    def __init__(self, headers: Mapping[str, str]):
        self._headers = headers

    def current_user_id(self) -> Optional[str]:
        value = (self._headers.get(self.header) or "").strip()
        return value or None


_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class LocalBlobStore:
    """Writes blobs under ``directory`` and serves them from ``url_prefix``."""

    def __init__(self, directory: str, url_prefix: str = "/albums"):
        self.directory = directory
        self.url_prefix = url_prefix.rstrip("/")

    def _filename(self, suggested_name: str) -> str:
        name = _UNSAFE_NAME_RE.sub("_", os.path.basename(suggested_name or "")).strip("._") or "blob"
        return f"{uuid.uuid4().hex[:12]}-{name}"

    def _write(self, path: str, data: bytes) -> None:
        os.makedirs(self.directory, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)

    async def save(self, data: bytes, suggested_name: str) -> str:
        filename = self._filename(suggested_name)
        await asyncio.to_thread(self._write, os.path.join(self.directory, filename), data)
        logger.info(f"[Blob] saved {len(data)} bytes as {filename}")
        return f"{self.url_prefix}/{filename}"
