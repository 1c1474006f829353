"""Per-user key/value documents stored in user_kv_store."""

import json
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import structlog

from src.database import get_pool

logger = structlog.get_logger(__name__)


def _decode(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class KVStore:
    """get/set/append/delete of JSON values keyed by (user_id, key)."""

    async def get(self, user_id: str, key: str) -> Optional[Any]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT value FROM user_kv_store WHERE user_id = $1 AND key = $2",
                UUID(user_id),
                key,
            )

        return _decode(value) if value is not None else None

    async def set(self, user_id: str, key: str, value: Any) -> None:
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_kv_store (user_id, key, value, updated_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (user_id, key) DO UPDATE SET
                    value = EXCLUDED.value,
                    updated_at = EXCLUDED.updated_at
                """,
                UUID(user_id),
                key,
                json.dumps(value, default=str),
                datetime.now(timezone.utc),
            )
