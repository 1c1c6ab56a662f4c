"""
Document Store - Key/value persistence for workspace and run artifacts.

Keys are hierarchical strings (namespace/target_id/doc_type). Documents
are JSON objects that carry a schema_version tag.

Implementations:
- SQLiteStore: aiosqlite-backed, one row per document
- FileStore: one JSON file per key under a base directory
- InMemoryStore: dict-backed, for embedding and tests
"""

import asyncio
import fnmatch
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol

import aiosqlite

from .errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA_VERSION_KEY = "schema_version"


class Store(Protocol):
	"""Minimal document store used by the orchestrator and workspace tracker."""

	async def read(self, key: str) -> Optional[dict[str, Any]]:
		...

	async def write(self, key: str, doc: dict[str, Any]) -> None:
		...

	async def exists(self, key: str) -> bool:
		...

	async def delete(self, key: str) -> bool:
		...

	async def list(self, pattern: Optional[str] = None) -> list[str]:
		...


def validate_key(key: str) -> str:
	"""Reject keys that are empty or try to escape their namespace."""
	if not key or key.startswith("/") or key.endswith("/"):
		raise StoreError(f"Invalid store key: {key!r}")
	parts = key.split("/")
	if any(part in ("", ".", "..") for part in parts):
		raise StoreError(f"Invalid store key: {key!r}")
	return key


def key_matches(key: str, pattern: Optional[str]) -> bool:
	"""Glob match when the pattern has wildcards, otherwise substring match."""
	if not pattern:
		return True
	if any(ch in pattern for ch in "*?["):
		return fnmatch.fnmatchcase(key, pattern)
	return pattern in key


class InMemoryStore:
	"""Dict-backed store. Documents are deep-copied through JSON on the way in and out."""

	def __init__(self):
		self._docs: dict[str, str] = {}

	async def read(self, key: str) -> Optional[dict[str, Any]]:
		raw = self._docs.get(validate_key(key))
		return json.loads(raw) if raw is not None else None

	async def write(self, key: str, doc: dict[str, Any]) -> None:
		self._docs[validate_key(key)] = json.dumps(doc)

	async def exists(self, key: str) -> bool:
		return validate_key(key) in self._docs

	async def delete(self, key: str) -> bool:
		return self._docs.pop(validate_key(key), None) is not None

	async def list(self, pattern: Optional[str] = None) -> list[str]:
		return sorted(k for k in self._docs if key_matches(k, pattern))


class FileStore:
	"""
	One JSON file per key.

	Usage:
		store = FileStore(Path("data/workspace"))
		await store.write("analyst/fed-march/plan", {"schema_version": "plan_v1", ...})
	"""

	def __init__(self, base_dir: Path):
		self.base_dir = Path(base_dir)
		self.base_dir.mkdir(parents=True, exist_ok=True)

	def _path(self, key: str) -> Path:
		return self.base_dir / f"{validate_key(key)}.json"

	async def read(self, key: str) -> Optional[dict[str, Any]]:
		path = self._path(key)
		return await asyncio.to_thread(self._read_sync, path, key)

	def _read_sync(self, path: Path, key: str) -> Optional[dict[str, Any]]:
		if not path.exists():
			return None
		try:
			with open(path) as f:
				return json.load(f)
		except (OSError, json.JSONDecodeError) as e:
			raise StoreError(f"Failed to read {key}: {e}", context={"key": key}) from e

	async def write(self, key: str, doc: dict[str, Any]) -> None:
		path = self._path(key)
		await asyncio.to_thread(self._write_sync, path, key, doc)

	def _write_sync(self, path: Path, key: str, doc: dict[str, Any]) -> None:
		try:
			path.parent.mkdir(parents=True, exist_ok=True)
			fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
			with os.fdopen(fd, "w") as f:
				json.dump(doc, f, indent=2)
			os.replace(tmp, path)
		except OSError as e:
			raise StoreError(f"Failed to write {key}: {e}", context={"key": key}) from e

	async def exists(self, key: str) -> bool:
		return self._path(key).exists()

	async def delete(self, key: str) -> bool:
		path = self._path(key)
		if not path.exists():
			return False
		path.unlink()
		return True

	async def list(self, pattern: Optional[str] = None) -> list[str]:
		keys = []
		for path in self.base_dir.rglob("*.json"):
			key = path.relative_to(self.base_dir).with_suffix("").as_posix()
			if key_matches(key, pattern):
				keys.append(key)
		return sorted(keys)


class SQLiteStore:
	"""
	SQLite-backed document storage.

	Usage:
		store = SQLiteStore("data/documents.db")
		await store.init()
		await store.write("analyst/fed-march/forecast", doc)
		doc = await store.read("analyst/fed-march/forecast")
		await store.close()
	"""

	def __init__(self, db_path: str):
		"""Initialize the document store."""
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db: Optional[aiosqlite.Connection] = None

	async def init(self):
		"""Initialize the database schema."""
		self._db = await aiosqlite.connect(str(self.db_path))
		self._db.row_factory = aiosqlite.Row

		await self._db.execute("""
			CREATE TABLE IF NOT EXISTS documents (
				key TEXT PRIMARY KEY,
				schema_version TEXT,
				data TEXT NOT NULL,
				created_at TEXT NOT NULL,
				updated_at TEXT NOT NULL
			)
		""")

		await self._db.commit()
		logger.info(f"Document store initialized at {self.db_path}")

	async def close(self):
		"""Close the database connection."""
		if self._db:
			await self._db.close()
			self._db = None

	async def _conn(self) -> aiosqlite.Connection:
		if not self._db:
			await self.init()
		return self._db

	async def read(self, key: str) -> Optional[dict[str, Any]]:
		db = await self._conn()
		async with db.execute("SELECT data FROM documents WHERE key = ?", (validate_key(key),)) as cursor:
			row = await cursor.fetchone()
		if row is None:
			return None
		try:
			return json.loads(row["data"])
		except json.JSONDecodeError as e:
			raise StoreError(f"Corrupt document at {key}: {e}", context={"key": key}) from e

	async def write(self, key: str, doc: dict[str, Any]) -> None:
		db = await self._conn()
		now = datetime.now().isoformat()
		await db.execute(
			"""
			INSERT INTO documents (key, schema_version, data, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?)
			ON CONFLICT(key) DO UPDATE SET
				schema_version = excluded.schema_version,
				data = excluded.data,
				updated_at = excluded.updated_at
			""",
			(validate_key(key), doc.get(SCHEMA_VERSION_KEY), json.dumps(doc), now, now),
		)
		await db.commit()

	async def exists(self, key: str) -> bool:
		db = await self._conn()
		async with db.execute("SELECT 1 FROM documents WHERE key = ?", (validate_key(key),)) as cursor:
			return await cursor.fetchone() is not None

	async def delete(self, key: str) -> bool:
		db = await self._conn()
		cursor = await db.execute("DELETE FROM documents WHERE key = ?", (validate_key(key),))
		await db.commit()
		return cursor.rowcount > 0

	async def list(self, pattern: Optional[str] = None) -> list[str]:
		db = await self._conn()
		async with db.execute("SELECT key FROM documents ORDER BY key") as cursor:
			rows = await cursor.fetchall()
		return [row["key"] for row in rows if key_matches(row["key"], pattern)]
