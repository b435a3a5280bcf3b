"""Tiered credential vault for querybox.

Secrets live in exactly one of three backends, chosen once when the vault is
constructed:

1. ``keyring``: the platform secret store, used when a sentinel
   write/read/delete round-trip succeeds.
2. ``sqlite``: an embedded SQLModel table, values encrypted at rest with a
   Fernet key from QUERYBOX_VAULT_KEY (or a generated key file next to the DB).
3. ``memory``: a process-local map, only when the embedded store cannot be
   opened. Lost on restart.

The choice never changes for the lifetime of the vault, so secrets written by
one process are never split between tiers.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import keyring
from cryptography.fernet import Fernet, InvalidToken
from keyring.errors import PasswordDeleteError
from sqlalchemy.engine import Engine
from sqlmodel import Session

import config
import db as _db
from errors import VaultEmptyKeyError, VaultError, VaultNotFoundError
from models import Credential, utcnow

logger = logging.getLogger(__name__)

PROBE_KEY = "__querybox_probe__"
_PROBE_VALUE = "ok"

BACKEND_KEYRING = "keyring"
BACKEND_SQLITE = "sqlite"
BACKEND_MEMORY = "memory"


def probe_keyring(service: str = config.KEYRING_SERVICE) -> bool:
    """Return True if the platform keyring survives a sentinel round-trip.

    The sentinel is always removed again, whatever the outcome.
    """
    try:
        keyring.set_password(service, PROBE_KEY, _PROBE_VALUE)
    except Exception as exc:
        logger.info("Keyring unavailable: %s", exc)
        return False
    try:
        ok = keyring.get_password(service, PROBE_KEY) == _PROBE_VALUE
    except Exception as exc:
        logger.info("Keyring read failed during probe: %s", exc)
        ok = False
    try:
        keyring.delete_password(service, PROBE_KEY)
    except Exception as exc:
        logger.info("Keyring delete failed during probe: %s", exc)
        ok = False
    return ok


def _check_round_trip(backend) -> None:
    """Write, read back and delete the sentinel; raises VaultError if the store cannot hold a secret."""
    backend.store(PROBE_KEY, _PROBE_VALUE)
    try:
        if backend.get(PROBE_KEY) != _PROBE_VALUE:
            raise VaultError(f"{backend.name} store did not return the sentinel")
    finally:
        backend.delete(PROBE_KEY)


def load_fernet(key_path: Path) -> Fernet:
    """Return the Fernet instance for the embedded store.

    QUERYBOX_VAULT_KEY wins. Otherwise the key is read from *key_path*, which is
    created (mode 0600) with Fernet.generate_key() on first use.
    """
    raw = os.environ.get(config.VAULT_KEY_ENV, "").strip()
    if raw:
        return Fernet(raw.encode("utf-8"))
    if key_path.exists():
        return Fernet(key_path.read_bytes().strip())
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    logger.info("Generated new vault key at %s", key_path)
    return Fernet(key)


class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class _KeyringBackend:
    name = BACKEND_KEYRING

    def __init__(self, service: str):
        self.service = service

    def store(self, key: str, secret: str) -> None:
        keyring.set_password(self.service, key, secret)

    def get(self, key: str) -> str | None:
        return keyring.get_password(self.service, key)

    def delete(self, key: str) -> None:
        try:
            keyring.delete_password(self.service, key)
        except PasswordDeleteError:
            pass  # already absent

    def close(self) -> None:
        pass


class _SQLiteBackend:
    """Encrypted key/secret table. All access goes through one lock and one pooled connection."""

    name = BACKEND_SQLITE

    def __init__(self, engine: Engine, fernet: Fernet):
        self._engine = engine
        self._fernet = fernet
        self._lock = threading.Lock()

    def store(self, key: str, secret: str) -> None:
        token = self._fernet.encrypt(secret.encode("utf-8")).decode("utf-8")
        with self._lock, Session(self._engine) as session:
            now = utcnow()
            row = session.get(Credential, key)
            if row is None:
                row = Credential(key=key, value_encrypted=token, created_at=now, updated_at=now)
            else:
                row.value_encrypted = token
                row.updated_at = now
            session.add(row)
            session.commit()

    def get(self, key: str) -> str | None:
        with self._lock, Session(self._engine) as session:
            row = session.get(Credential, key)
            if row is None:
                return None
            token = row.value_encrypted
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            # Corrupted row or rotated key: treat as missing
            logger.warning("Credential %r could not be decrypted; treating as missing", key)
            return None

    def delete(self, key: str) -> None:
        with self._lock, Session(self._engine) as session:
            row = session.get(Credential, key)
            if row is not None:
                session.delete(row)
                session.commit()

    def close(self) -> None:
        with self._lock:
            self._engine.dispose()


class _MemoryBackend:
    name = BACKEND_MEMORY

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._rw = _ReadWriteLock()

    def store(self, key: str, secret: str) -> None:
        with self._rw.write():
            self._data[key] = secret

    def get(self, key: str) -> str | None:
        with self._rw.read():
            return self._data.get(key)

    def delete(self, key: str) -> None:
        with self._rw.write():
            self._data.pop(key, None)

    def close(self) -> None:
        with self._rw.write():
            self._data.clear()


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


class CredentialVault:
    """Store, fetch and delete connection secrets by key.

    Args:
        db_path: location of the embedded store, used only when the keyring
            probe fails. Defaults to ``<data dir>/credentials.db``.
        service: keyring service name.
        key_path: Fernet key file for the embedded store. Defaults to
            ``vault.key`` next to *db_path*.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        service: str = config.KEYRING_SERVICE,
        key_path: str | Path | None = None,
    ):
        self.db_path = Path(db_path) if db_path is not None else config.data_dir() / "credentials.db"
        self.key_path = Path(key_path) if key_path is not None else self.db_path.parent / "vault.key"
        self._closed = False
        self._close_lock = threading.Lock()
        self._backend = self._select_backend(service)
        logger.info("Credential vault using %s backend", self._backend.name)

    def _select_backend(self, service: str):
        if probe_keyring(service):
            return _KeyringBackend(service)
        try:
            engine = _db.create_store_engine(self.db_path)
            try:
                _db.init_db(engine)
                backend = _SQLiteBackend(engine, load_fernet(self.key_path))
                _check_round_trip(backend)
            except Exception:
                engine.dispose()
                raise
            return backend
        except Exception as exc:
            logger.error(
                "Embedded credential store at %s unavailable (%s); secrets will not survive a restart",
                self.db_path,
                exc,
            )
            return _MemoryBackend()

    @property
    def backend(self) -> str:
        return self._backend.name

    def _check(self, key: str) -> None:
        if not key:
            raise VaultEmptyKeyError()
        if self._closed:
            raise VaultError("credential vault is closed")

    def store(self, key: str, secret: str) -> None:
        """Save *secret* under *key*, replacing any previous value."""
        self._check(key)
        try:
            self._backend.store(key, secret)
        except Exception as exc:
            raise VaultError(f"store {key!r} failed on {self.backend} backend: {exc}") from exc
        logger.debug("Stored credential %r (%s)", key, self.backend)

    def get(self, key: str) -> str:
        """Return the secret for *key* or raise VaultNotFoundError."""
        self._check(key)
        try:
            secret = self._backend.get(key)
        except Exception as exc:
            raise VaultError(f"get {key!r} failed on {self.backend} backend: {exc}") from exc
        if secret is None:
            raise VaultNotFoundError(key)
        return secret

    def delete(self, key: str) -> None:
        """Remove *key*. Deleting a missing key is not an error."""
        self._check(key)
        try:
            self._backend.delete(key)
        except Exception as exc:
            raise VaultError(f"delete {key!r} failed on {self.backend} backend: {exc}") from exc
        logger.debug("Deleted credential %r (%s)", key, self.backend)

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            self._backend.close()

    def __enter__(self) -> CredentialVault:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
