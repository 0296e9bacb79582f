"""Storage backends for the profile store.

Both backends persist `StoredProfile` records (id, name, encrypted blob)
behind the same transactional interface:

	begin() -> read_all()/upsert()/delete() -> commit() | rollback()

- SQLiteBackend: relational table `connection_profiles`.
- RecordFileBackend: a JSON document of records keyed by id, replaced
  atomically on commit.

Backends never see plaintext connection strings; encryption happens in
the store before a record reaches them.
"""
from __future__ import annotations
import json, os, shutil, sqlite3, threading, logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional
from connvault.config.settings import (
	TABLE_NAME, RECORD_FORMAT, RECORD_FORMAT_VERSION, BACKEND_KINDS
)

log = logging.getLogger(__name__)

class StorageError(Exception): ...
class InvalidRecord(StorageError): ...

@dataclass(frozen=True)
class StoredProfile:
	"""At-rest form of a profile: the connection string is a cipher blob."""
	id: str
	name: str
	connection_string_blob: str

	def validate(self) -> 'StoredProfile':
		"""Raise InvalidRecord unless every field is a string (all columns are NOT NULL TEXT)."""
		for field in ('id', 'name', 'connection_string_blob'):
			value = getattr(self, field)
			if not isinstance(value, str):
				raise InvalidRecord(f'Profile {field} must be a string, got {type(value).__name__}')
		return self

def _sort_key(rec: StoredProfile):
	return (rec.name, rec.id)


class StorageBackend(ABC):
	"""Transactional record store.

	A transaction holds the backend lock from `begin` until `commit` or
	`rollback` and belongs to the thread that began it; data methods are
	only valid inside one, on that thread.
	"""

	def __init__(self, path: Path):
		self.path = Path(path)
		self._lock = threading.Lock()
		self._owner: Optional[int] = None
		self._write = False

	def __enter__(self):
		return self

	def __exit__(self, *exc):
		self.close()

	def _owns_txn(self) -> bool:
		return self._owner is not None and self._owner == threading.get_ident()

	def begin(self, write: bool = False) -> None:
		if self._owns_txn():
			raise StorageError('Transaction already active')
		self._lock.acquire()
		try:
			self._begin(write)
		except BaseException:
			self._lock.release()
			raise
		self._owner = threading.get_ident()
		self._write = write

	def commit(self) -> None:
		self._require_txn()
		try:
			self._commit()
		finally:
			self._end()

	def rollback(self) -> None:
		"""Abort the calling thread's transaction, if it has one."""
		if not self._owns_txn():
			return
		try:
			self._rollback()
		finally:
			self._end()

	def _end(self):
		self._owner = None
		self._write = False
		self._lock.release()

	def _require_txn(self, write: bool = False):
		if not self._owns_txn():
			raise StorageError('No active transaction')
		if write and not self._write:
			raise StorageError('Transaction is read-only')

	def close(self) -> None:
		"""Release the backend, waiting for another thread's transaction to finish."""
		self.rollback()
		with self._lock:
			self._close()

	@abstractmethod
	def initialize(self) -> None:
		"""Create the schema if absent. Idempotent."""

	@abstractmethod
	def _begin(self, write: bool) -> None: ...

	@abstractmethod
	def _commit(self) -> None: ...

	@abstractmethod
	def _rollback(self) -> None: ...

	@abstractmethod
	def read_all(self) -> List[StoredProfile]:
		"""Return every record ordered by name, then id."""

	@abstractmethod
	def upsert(self, record: StoredProfile) -> None: ...

	@abstractmethod
	def delete(self, profile_id: str) -> None: ...

	@abstractmethod
	def backup(self, dest: Path) -> Path: ...

	@abstractmethod
	def _close(self) -> None: ...


class SQLiteBackend(StorageBackend):
	kind = 'sqlite'

	def __init__(self, path: Path):
		super().__init__(path)
		try:
			self.path.parent.mkdir(parents=True, exist_ok=True)
			# Transactions are issued explicitly (BEGIN / COMMIT).
			self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
				str(self.path), isolation_level=None, check_same_thread=False
			)
		except (sqlite3.Error, OSError) as e:
			raise StorageError(f'Cannot open database {self.path}: {e}') from e

	@property
	def conn(self) -> sqlite3.Connection:
		if self._conn is None:
			raise StorageError('Backend is closed')
		return self._conn

	def initialize(self) -> None:
		self.begin(write=True)
		try:
			self.conn.execute(
				f"""CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
					id TEXT PRIMARY KEY,
					name TEXT NOT NULL,
					connection_string TEXT NOT NULL
				)"""
			)
			self.commit()
		except sqlite3.Error as e:
			self.rollback()
			raise StorageError(f'Failed to create schema: {e}') from e
		except BaseException:
			self.rollback()
			raise

	def _begin(self, write: bool) -> None:
		try:
			self.conn.execute('BEGIN IMMEDIATE' if write else 'BEGIN')
		except sqlite3.Error as e:
			raise StorageError(f'Failed to begin transaction: {e}') from e

	def _commit(self) -> None:
		try:
			self.conn.execute('COMMIT')
		except sqlite3.Error as e:
			try:
				self.conn.execute('ROLLBACK')
			except sqlite3.Error:
				log.debug('Rollback after failed commit also failed', exc_info=True)
			raise StorageError(f'Commit failed: {e}') from e

	def _rollback(self) -> None:
		try:
			if self.conn.in_transaction:
				self.conn.execute('ROLLBACK')
		except sqlite3.Error as e:
			raise StorageError(f'Rollback failed: {e}') from e

	def read_all(self) -> List[StoredProfile]:
		self._require_txn()
		try:
			rows = self.conn.execute(
				f"SELECT id, name, connection_string FROM {TABLE_NAME} ORDER BY name, id"
			).fetchall()
		except sqlite3.Error as e:
			raise StorageError(f'Read failed: {e}') from e
		return [StoredProfile(*row) for row in rows]

	def upsert(self, record: StoredProfile) -> None:
		self._require_txn(write=True)
		record.validate()
		try:
			self.conn.execute(
				f"""INSERT INTO {TABLE_NAME} (id, name, connection_string) VALUES (?, ?, ?)
				ON CONFLICT(id) DO UPDATE SET
					name = excluded.name,
					connection_string = excluded.connection_string""",
				(record.id, record.name, record.connection_string_blob),
			)
		except sqlite3.Error as e:
			raise StorageError(f'Write failed: {e}') from e

	def delete(self, profile_id: str) -> None:
		self._require_txn(write=True)
		try:
			self.conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id = ?", (profile_id,))
		except sqlite3.Error as e:
			raise StorageError(f'Delete failed: {e}') from e

	def backup(self, dest: Path) -> Path:
		dest = Path(dest)
		dest.parent.mkdir(parents=True, exist_ok=True)
		with self._lock:
			try:
				target = sqlite3.connect(str(dest))
				try:
					self.conn.backup(target)
				finally:
					target.close()
			except sqlite3.Error as e:
				raise StorageError(f'Backup failed: {e}') from e
		return dest

	def _close(self) -> None:
		if self._conn is not None:
			self._conn.close()
			self._conn = None


class RecordFileBackend(StorageBackend):
	"""Key-store backend: one JSON document, records keyed by id.

	Document layout:
		{"format": "connvault-records", "version": 1,
		 "profiles": {"<id>": {"id": ..., "name": ..., "connection_string": ...}}}
	"""
	kind = 'records'

	def __init__(self, path: Path):
		super().__init__(path)
		self._pending: Optional[Dict[str, Dict[str, str]]] = None
		try:
			self.path.parent.mkdir(parents=True, exist_ok=True)
		except OSError as e:
			raise StorageError(f'Cannot create directory for {self.path}: {e}') from e

	def exists(self) -> bool:
		return self.path.exists() and self.path.stat().st_size > 0

	def initialize(self) -> None:
		with self._lock:
			if self.exists():
				self._load()  # validate the existing document
				return
			self._write_document({})

	def _load(self) -> Dict[str, Dict[str, str]]:
		if not self.exists():
			return {}
		try:
			doc = json.loads(self.path.read_text(encoding='utf-8'))
		except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
			raise StorageError(f'Cannot read record file {self.path}: {e}') from e
		if not isinstance(doc, dict) or doc.get('format') != RECORD_FORMAT:
			raise StorageError(f'{self.path} is not a {RECORD_FORMAT} document')
		if doc.get('version') != RECORD_FORMAT_VERSION:
			raise StorageError(f"Unsupported record file version: {doc.get('version')}")
		profiles = doc.get('profiles')
		if not isinstance(profiles, dict):
			raise StorageError('Record file has no profiles table')
		return profiles

	def _write_document(self, profiles: Dict[str, Dict[str, str]]) -> None:
		doc = {"format": RECORD_FORMAT, "version": RECORD_FORMAT_VERSION, "profiles": profiles}
		tmp = self.path.with_name(self.path.name + '.tmp')
		try:
			with open(tmp, 'w', encoding='utf-8') as f:
				json.dump(doc, f, indent=2, sort_keys=True)
				f.flush()
				os.fsync(f.fileno())
			os.replace(tmp, self.path)
		except OSError as e:
			try:
				tmp.unlink(missing_ok=True)
			except OSError:
				log.debug('Could not remove %s', tmp, exc_info=True)
			raise StorageError(f'Failed to write record file: {e}') from e

	def _begin(self, write: bool) -> None:
		self._pending = {k: dict(v) for k, v in self._load().items()}

	def _commit(self) -> None:
		pending, self._pending = self._pending, None
		if self._write:
			self._write_document(pending or {})

	def _rollback(self) -> None:
		self._pending = None

	def read_all(self) -> List[StoredProfile]:
		self._require_txn()
		try:
			records = [
				StoredProfile(v['id'], v['name'], v['connection_string']).validate()
				for v in self._pending.values()
			]
		except (KeyError, TypeError) as e:
			raise StorageError(f'Malformed record in {self.path}: {e}') from e
		return sorted(records, key=_sort_key)

	def upsert(self, record: StoredProfile) -> None:
		self._require_txn(write=True)
		record.validate()
		self._pending[record.id] = {
			"id": record.id,
			"name": record.name,
			"connection_string": record.connection_string_blob,
		}

	def delete(self, profile_id: str) -> None:
		self._require_txn(write=True)
		self._pending.pop(profile_id, None)

	def backup(self, dest: Path) -> Path:
		dest = Path(dest)
		with self._lock:
			try:
				dest.parent.mkdir(parents=True, exist_ok=True)
				shutil.copy2(self.path, dest)
			except OSError as e:
				raise StorageError(f'Backup failed: {e}') from e
		return dest

	def _close(self) -> None:
		self._pending = None


BACKENDS = {cls.kind: cls for cls in (SQLiteBackend, RecordFileBackend)}

def open_backend(kind: str, path: Path) -> StorageBackend:
	if kind not in BACKEND_KINDS or kind not in BACKENDS:
		raise StorageError(f"Unknown backend '{kind}' (expected one of: {', '.join(BACKEND_KINDS)})")
	return BACKENDS[kind](Path(path))
