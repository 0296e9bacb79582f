"""Profile store: CRUD over a storage backend with encrypted connection strings.

Connection strings are encrypted before they reach a backend and decrypted
after they leave it, whichever backend is selected. The store holds no key;
callers pass one to every call that touches a secret.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Union
from connvault.config import settings
from .crypto import encrypt_connection_string, decrypt_connection_string
from .backends import StorageBackend, StoredProfile, StorageError, InvalidRecord, open_backend

log = logging.getLogger(__name__)

@dataclass(frozen=True)
class ConnectionProfile:
	id: str
	name: str
	connection_string: str

	def __repr__(self) -> str:
		return f"ConnectionProfile(id={self.id!r}, name={self.name!r}, connection_string='***')"


class ProfileStore:
	"""Durable catalog of connection profiles.

	Every call is one backend transaction. After a successful save or
	delete the stored-form cache is reloaded in full; after a failed one it
	is dropped and reloaded on next use.
	"""

	def __init__(self, path: Union[str, Path, None] = None, backend: Union[str, StorageBackend, None] = None):
		if isinstance(backend, StorageBackend):
			self.backend = backend
		else:
			self.backend = open_backend(backend or settings.backend_kind(), Path(path) if path is not None else settings.db_path())
		self._cache: Optional[List[StoredProfile]] = None
		try:
			self.backend.initialize()
		except BaseException:
			self.backend.close()
			raise
		self._reload_cache()

	@property
	def path(self) -> Path:
		return self.backend.path

	def __enter__(self):
		return self

	def __exit__(self, *exc):
		self.close()

	@contextmanager
	def _transaction(self, write: bool = False) -> Iterator[StorageBackend]:
		self.backend.begin(write=write)
		try:
			yield self.backend
		except BaseException:
			self.backend.rollback()
			raise
		self.backend.commit()

	def _read_all(self) -> List[StoredProfile]:
		with self._transaction() as b:
			return b.read_all()

	def _reload_cache(self) -> None:
		self._cache = self._read_all()
		log.debug("Profile cache reloaded (%d profiles)", len(self._cache))

	def cached_profiles(self) -> List[StoredProfile]:
		"""Snapshot of the last committed catalog, in stored (encrypted) form."""
		if self._cache is None:
			self._reload_cache()
		return list(self._cache)

	def list_profiles(self, key: bytes) -> List[ConnectionProfile]:
		"""Return all profiles ordered by name, decrypted with `key`.

		Any row that fails to decrypt fails the whole call.
		"""
		records = self._read_all()
		self._cache = records
		return [self._decrypt(rec, key) for rec in records]

	def get_profile(self, profile_id: str, key: bytes) -> Optional[ConnectionProfile]:
		for rec in self._read_all():
			if rec.id == profile_id:
				return self._decrypt(rec, key)
		return None

	def save_profile(self, profile: ConnectionProfile, key: bytes) -> None:
		"""Encrypt and upsert `profile`; an existing id is overwritten."""
		blob = encrypt_connection_string(profile.connection_string, key)
		record = StoredProfile(profile.id, profile.name, blob).validate()
		self._mutate(lambda b: b.upsert(record))
		log.info("Saved connection profile with id: %s", profile.id)

	def delete_profile(self, profile_id: str) -> None:
		"""Remove `profile_id`. Unknown ids are ignored."""
		self._mutate(lambda b: b.delete(profile_id))
		log.info("Deleted connection profile with id: %s", profile_id)

	def _mutate(self, op) -> None:
		try:
			with self._transaction(write=True) as b:
				op(b)
		except BaseException:
			self._cache = None
			raise
		self._cache = None
		self._reload_cache()

	def backup(self, dest: Union[str, Path, None] = None) -> Path:
		"""Copy the catalog (encrypted form only) to `dest`."""
		if dest is None:
			stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
			dest = self.path.with_name(f"{self.path.stem}.{stamp}{self.path.suffix}{settings.BACKUP_SUFFIX}")
		out = self.backend.backup(Path(dest))
		log.info("Profile store backed up to: %s", out)
		return out

	def close(self) -> None:
		self.backend.close()

	@staticmethod
	def _decrypt(rec: StoredProfile, key: bytes) -> ConnectionProfile:
		return ConnectionProfile(rec.id, rec.name, decrypt_connection_string(rec.connection_string_blob, key))


__all__ = ['ConnectionProfile', 'ProfileStore', 'StoredProfile', 'StorageError', 'InvalidRecord']
