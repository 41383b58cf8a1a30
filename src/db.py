"""
Plugin Data Store - per-request bookkeeping with optimistic concurrency.

Each access request gets one small record owned by this plugin. Every
mutation is a compare-and-swap against the version last read, which makes
the store the only arbiter between concurrent writers (watcher-driven
reconciliation, parallel webhook handlers, other replicas).
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from errors import AlreadyExists, VersionConflict

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS plugin_data (
    plugin VARCHAR(255) NOT NULL,
    request_id VARCHAR(255) NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
    PRIMARY KEY (plugin, request_id)
)
"""


@dataclass
class PluginData:
    """
    Bookkeeping record for one access request.

    ``handle`` is the provider's opaque reference to the posted
    notification. ``user``, ``roles`` and ``reason`` are kept so the
    notification can be re-rendered when it is updated after the request
    itself is gone upstream.
    """

    request_id: str = ""
    handle: Dict[str, str] = field(default_factory=dict)
    user: str = ""
    roles: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    resolved: bool = False
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None

    def encode(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def decode(cls, raw: Any) -> "PluginData":
        """Decode a stored record, ignoring fields this version doesn't know."""
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw) if raw else {}
        known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def resolve(
        self, resolution: str, resolved_by: Optional[str] = None
    ) -> "PluginData":
        """Return a copy marked as resolved."""
        return replace(
            self, resolved=True, resolution=resolution, resolved_by=resolved_by
        )


# (record, version)
Versioned = Tuple[PluginData, int]


class PluginDataStore(ABC):
    """Keyed store of PluginData records with compare-and-swap updates."""

    @abstractmethod
    async def get(self, request_id: str) -> Optional[Versioned]:
        """Return ``(record, version)``, or None if no record exists."""

    @abstractmethod
    async def create(self, request_id: str, record: PluginData) -> int:
        """
        Create the record at version 1.

        Raises:
            AlreadyExists: If a record already exists for the request.
        """

    @abstractmethod
    async def compare_and_swap(
        self, request_id: str, expected_version: int, record: PluginData
    ) -> int:
        """
        Replace the record if its version is still ``expected_version``.

        Returns:
            The new version.

        Raises:
            VersionConflict: If the record changed or disappeared.
        """

    async def close(self) -> None:
        """Release any held resources."""


class MemoryPluginDataStore(PluginDataStore):
    """In-process store for single-replica deployments and tests."""

    def __init__(self):
        self._records: Dict[str, Tuple[str, int]] = {}
        self._lock = asyncio.Lock()

    async def get(self, request_id: str) -> Optional[Versioned]:
        async with self._lock:
            entry = self._records.get(request_id)
        if entry is None:
            return None
        raw, version = entry
        return PluginData.decode(raw), version

    async def create(self, request_id: str, record: PluginData) -> int:
        async with self._lock:
            if request_id in self._records:
                raise AlreadyExists(f"Plugin data for {request_id} already exists")
            self._records[request_id] = (record.encode(), 1)
        return 1

    async def compare_and_swap(
        self, request_id: str, expected_version: int, record: PluginData
    ) -> int:
        async with self._lock:
            entry = self._records.get(request_id)
            if entry is None or entry[1] != expected_version:
                raise VersionConflict(
                    f"Plugin data for {request_id} is not at version {expected_version}"
                )
            new_version = expected_version + 1
            self._records[request_id] = (record.encode(), new_version)
        return new_version


class DatabaseManager(PluginDataStore):
    """PostgreSQL-backed store shared by all replicas of one plugin."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        plugin: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.plugin = plugin
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=5,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Create the plugin_data table if it doesn't exist."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database schema initialized")

    async def get(self, request_id: str) -> Optional[Versioned]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT data, version FROM plugin_data
                WHERE plugin = $1 AND request_id = $2
                """,
                self.plugin,
                request_id,
            )
        if not row:
            return None
        return PluginData.decode(row["data"]), row["version"]

    async def create(self, request_id: str, record: PluginData) -> int:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            version = await conn.fetchval(
                """
                INSERT INTO plugin_data (plugin, request_id, data, version)
                VALUES ($1, $2, $3, 1)
                ON CONFLICT (plugin, request_id) DO NOTHING
                RETURNING version
                """,
                self.plugin,
                request_id,
                record.encode(),
            )
        if version is None:
            raise AlreadyExists(f"Plugin data for {request_id} already exists")
        logger.debug(f"Created plugin data for {request_id}")
        return version

    async def compare_and_swap(
        self, request_id: str, expected_version: int, record: PluginData
    ) -> int:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            version = await conn.fetchval(
                """
                UPDATE plugin_data
                SET data = $1, version = version + 1, updated_at = NOW()
                WHERE plugin = $2 AND request_id = $3 AND version = $4
                RETURNING version
                """,
                record.encode(),
                self.plugin,
                request_id,
                expected_version,
            )
        if version is None:
            raise VersionConflict(
                f"Plugin data for {request_id} is not at version {expected_version}"
            )
        logger.debug(f"Updated plugin data for {request_id} to version {version}")
        return version
