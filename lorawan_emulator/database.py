"""
Database connection pool and query functions

Backs the settings resolver (synced_users.ttn, ttn_settings) and the webhook
ingestion tables (lora_sensors, sensor_uplinks, unit_telemetry,
sensor_readings, door_events).
"""
import asyncpg
from typing import Optional, Dict, Any, AsyncGenerator
from contextlib import asynccontextmanager
import logging
import json

from .config import get_settings
from .exceptions import DatabaseError

logger = logging.getLogger(__name__)


class DatabasePool:
    """
    Async PostgreSQL connection pool
    Simplified but production-ready
    """

    def __init__(self, dsn: str = None):
        settings = get_settings()
        self.dsn = dsn or settings.database_url
        self.min_size = settings.db_pool_min_size
        self.max_size = settings.db_pool_max_size
        self.pool: Optional[asyncpg.Pool] = None
        self._initialized = False

    async def initialize(self):
        """Create connection pool"""
        if self._initialized:
            return

        try:
            logger.info("Creating database pool...")

            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                max_inactive_connection_lifetime=300,
                command_timeout=30,
                server_settings={
                    'application_name': 'lorawan_emulator',
                    'jit': 'off'
                }
            )

            async with self.pool.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                logger.info(f"Connected to PostgreSQL: {version[:30]}...")

            self._initialized = True
            logger.info(f"Database pool ready: {self.get_stats()}")

        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to initialize database pool: {e}")
            raise DatabaseError(f"Cannot connect to database: {e}", operation="initialize")

    async def close(self):
        """Close connection pool"""
        if self.pool:
            await self.pool.close()
            self._initialized = False
            logger.info("Database pool closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire connection from pool"""
        if not self.pool:
            raise DatabaseError("Database pool not initialized", operation="acquire")

        async with self.pool.acquire() as conn:
            yield conn

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics"""
        if not self.pool:
            return {"status": "not_initialized"}

        return {
            "size": self.pool.get_size(),
            "min_size": self.pool.get_min_size(),
            "max_size": self.pool.get_max_size(),
            "free_connections": self.pool.get_idle_size(),
        }


def _as_dict(value: Any) -> Optional[Dict[str, Any]]:
    """jsonb columns arrive as str unless a codec is registered"""
    if value is None:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class PostgresSettingsRepository:
    """User- and org-scoped TTN settings lookups"""

    def __init__(self, db: DatabasePool):
        self.db = db

    async def get_user_ttn(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT ttn FROM synced_users WHERE source_user_id = $1 LIMIT 1",
                user_id
            )
        if not row:
            return None
        return _as_dict(row["ttn"])

    async def get_org_ttn(self, org_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT api_key, application_id, cluster, enabled, webhook_secret
                FROM ttn_settings
                WHERE org_id = $1
                LIMIT 1
                """,
                org_id
            )
        return dict(row) if row else None


class PostgresWebhookRepository:
    """Lookups and writes for uplink ingestion"""

    def __init__(self, db: DatabasePool):
        self.db = db

    async def get_webhook_secret(self, application_id: str) -> Optional[str]:
        async with self.db.acquire() as conn:
            return await conn.fetchval(
                "SELECT webhook_secret FROM ttn_settings WHERE application_id = $1 LIMIT 1",
                application_id
            )

    async def find_active_sensor(self, dev_eui: str) -> Optional[Dict[str, Any]]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, org_id, site_id, unit_id, sensor_kind, status
                FROM lora_sensors
                WHERE dev_eui = $1 AND status <> 'disabled'
                LIMIT 1
                """,
                dev_eui
            )
        return dict(row) if row else None

    async def find_org_for_application(self, application_id: str) -> Optional[str]:
        async with self.db.acquire() as conn:
            value = await conn.fetchval(
                "SELECT org_id FROM ttn_settings WHERE application_id = $1 LIMIT 1",
                application_id
            )
        return str(value) if value is not None else None

    async def insert_uplink(self, record: Dict[str, Any]) -> None:
        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO sensor_uplinks (
                    org_id, unit_id, dev_eui, f_port, payload_json,
                    rssi_dbm, snr_db, battery_pct, received_at
                ) VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9)
                """,
                record["org_id"], record["unit_id"], record["dev_eui"],
                record["f_port"], json.dumps(record["payload_json"]),
                record["rssi_dbm"], record["snr_db"], record["battery_pct"],
                record["received_at"]
            )

    async def upsert_unit_telemetry(self, unit_id: str, fields: Dict[str, Any]) -> None:
        columns = ["unit_id"] + list(fields.keys())
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        updates = ", ".join(f"{col} = EXCLUDED.{col}" for col in fields.keys())
        query = f"""
            INSERT INTO unit_telemetry ({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT (unit_id) DO UPDATE SET {updates}
        """
        async with self.db.acquire() as conn:
            await conn.execute(query, unit_id, *fields.values())

    async def insert_sensor_reading(self, record: Dict[str, Any]) -> None:
        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO sensor_readings (
                    device_serial, temperature, humidity, battery_level,
                    signal_strength, unit_id, reading_type
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                record["device_serial"], record["temperature"], record["humidity"],
                record["battery_level"], record["signal_strength"],
                record["unit_id"], record["reading_type"]
            )

    async def insert_door_event(self, record: Dict[str, Any]) -> None:
        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO door_events (
                    device_serial, door_status, battery_level, signal_strength, unit_id
                ) VALUES ($1, $2, $3, $4, $5)
                """,
                record["device_serial"], record["door_status"], record["battery_level"],
                record["signal_strength"], record["unit_id"]
            )
