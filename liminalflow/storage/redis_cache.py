from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for validation results and live execution progress."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _validation_key(flow_id: str, version: int, content_hash: str) -> str:
        return f"flow:validation:{flow_id}:{version}:{content_hash}"

    @staticmethod
    def _execution_key(execution_id: str) -> str:
        return f"flow:execution:{execution_id}"

    async def _get_json(self, key: str) -> Optional[dict]:
        cached = await self.client.get(key)
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            return None

    async def get_validation_result(
        self, flow_id: str, version: int, content_hash: str
    ) -> Optional[dict]:
        return await self._get_json(self._validation_key(flow_id, version, content_hash))

    async def set_validation_result(
        self,
        flow_id: str,
        version: int,
        content_hash: str,
        result: Dict[str, Any],
        ttl_seconds: int = 3600,
    ) -> None:
        await self.client.set(
            self._validation_key(flow_id, version, content_hash),
            json.dumps(result),
            ex=ttl_seconds,
        )

    async def get_execution_state(self, execution_id: str) -> Optional[dict]:
        return await self._get_json(self._execution_key(execution_id))

    async def set_execution_state(
        self, execution_id: str, state: Dict[str, Any], ttl_seconds: int = 1800
    ) -> None:
        await self.client.set(
            self._execution_key(execution_id), json.dumps(state, default=str), ex=ttl_seconds
        )

    async def close(self) -> None:
        """Close the Redis connection pool. Call when shutting down the runtime."""
        await self.client.aclose()
