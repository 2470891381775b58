"""
Encrypted-at-rest persistence of calendar connections.

Connections live in one JSON document per logical store (default key
``calendar_connections``) inside a pluggable key-value backend. Access and
refresh tokens, and the client secret of a per-connection ``oauth_config``,
are encrypted with an injected :class:`TokenCipher` before they are written
and decrypted on read; everything else is stored as-is.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calbridge.models.kv_store import KeyValueEntry
from calbridge.schemas.calendar import CalendarConnection

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "calendar_connections"


class TokenCipher(Protocol):
    """Encryption collaborator used for token fields only."""

    async def encrypt(self, plaintext: str) -> str: ...

    async def decrypt(self, ciphertext: str) -> str: ...


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...


class FernetTokenCipher:
    """:class:`TokenCipher` backed by ``cryptography.fernet``."""

    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise ValueError("A Fernet key is required to encrypt calendar tokens")
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    async def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    async def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Stored token could not be decrypted with the configured key") from e


class InMemoryKeyValueStore:
    """Process-local backend, used for tests and single-process setups."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value


class SqlKeyValueStore:
    """Backend on the ``kv_store`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def get(self, key: str) -> str | None:
        async with self._session_maker() as session:
            result = await session.execute(select(KeyValueEntry).where(KeyValueEntry.key == key))
            entry = result.scalar_one_or_none()
            return entry.value if entry else None

    async def set(self, key: str, value: str) -> None:
        async with self._session_maker() as session:
            entry = await session.get(KeyValueEntry, key)
            if entry is None:
                session.add(KeyValueEntry(key=key, value=value))
            else:
                entry.value = value
            await session.commit()


class TokenStore:
    """Read-modify-write store of :class:`CalendarConnection` records."""

    def __init__(
        self,
        kv_store: KeyValueStore,
        cipher: TokenCipher,
        storage_key: str = DEFAULT_STORAGE_KEY,
    ) -> None:
        self._kv = kv_store
        self._cipher = cipher
        self._storage_key = storage_key
        self._write_lock = asyncio.Lock()

    async def store_connection(self, connection: CalendarConnection) -> None:
        """Insert or replace a connection by id."""
        async with self._write_lock:
            records = await self._load_records()
            encrypted = await self._encrypt_record(connection)
            for index, record in enumerate(records):
                if record.get("id") == connection.id:
                    records[index] = encrypted
                    break
            else:
                records.append(encrypted)
            await self._save_records(records)
        logger.debug("Stored calendar connection %s", connection.id)

    async def get_connection(self, connection_id: str) -> CalendarConnection | None:
        for record in await self._load_records():
            if record.get("id") == connection_id:
                return await self._decrypt_record(record)
        return None

    async def get_all_connections(self) -> list[CalendarConnection]:
        connections = []
        for record in await self._load_records():
            try:
                connections.append(await self._decrypt_record(record))
            except ValueError as e:
                logger.error("Skipping unreadable connection %s: %s", record.get("id"), e)
        return connections

    async def delete_connection(self, connection_id: str) -> bool:
        async with self._write_lock:
            records = await self._load_records()
            remaining = [r for r in records if r.get("id") != connection_id]
            if len(remaining) == len(records):
                return False
            await self._save_records(remaining)
        logger.debug("Deleted calendar connection %s", connection_id)
        return True

    # ── Helpers ──

    async def _load_records(self) -> list[dict]:
        raw = await self._kv.get(self._storage_key)
        if not raw:
            return []
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError(f"Store {self._storage_key!r} does not hold a list of connections")
        return data

    async def _save_records(self, records: list[dict]) -> None:
        await self._kv.set(self._storage_key, json.dumps(records))

    async def _encrypt_record(self, connection: CalendarConnection) -> dict:
        record = connection.model_dump(mode="json")
        tokens = record["tokens"]
        tokens["access_token"] = await self._cipher.encrypt(connection.tokens.access_token)
        if connection.tokens.refresh_token:
            tokens["refresh_token"] = await self._cipher.encrypt(connection.tokens.refresh_token)
        oauth_config = record["metadata"].get("oauth_config")
        if isinstance(oauth_config, dict) and oauth_config.get("client_secret"):
            oauth_config["client_secret"] = await self._cipher.encrypt(oauth_config["client_secret"])
        return record

    async def _decrypt_record(self, record: dict) -> CalendarConnection:
        tokens = dict(record["tokens"])
        tokens["access_token"] = await self._cipher.decrypt(tokens["access_token"])
        if tokens.get("refresh_token"):
            tokens["refresh_token"] = await self._cipher.decrypt(tokens["refresh_token"])
        metadata = dict(record.get("metadata") or {})
        oauth_config = metadata.get("oauth_config")
        if isinstance(oauth_config, dict) and oauth_config.get("client_secret"):
            metadata["oauth_config"] = {
                **oauth_config,
                "client_secret": await self._cipher.decrypt(oauth_config["client_secret"]),
            }
        return CalendarConnection.model_validate({**record, "tokens": tokens, "metadata": metadata})
