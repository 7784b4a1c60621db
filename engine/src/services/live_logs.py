"""
Redis buffer of live step output.

Running steps append every output chunk here so an observer that connects
mid-run can fetch what it missed. The durable copy is result_text in the
state store; failures here are logged and otherwise ignored.
"""

import logging
from typing import Dict, List, Optional

import redis.asyncio as redis

from engine.src.config import get_settings

logger = logging.getLogger(__name__)

LIVE_LOG_KEY = "drillx:logs:{drill_id}:{step_id}"

def live_log_key(drill_id: str, step_id: str) -> str:
    return LIVE_LOG_KEY.format(drill_id=drill_id, step_id=step_id)

class LiveLogBuffer:
    def __init__(self, client: redis.Redis, ttl: Optional[int] = None):
        self._client = client
        self._ttl = ttl if ttl is not None else get_settings().live_log_ttl

    @classmethod
    def from_url(cls, redis_url: str, ttl: Optional[int] = None) -> "LiveLogBuffer":
        return cls(redis.from_url(redis_url, decode_responses=True), ttl)

    async def reset(self, drill_id: str, step_id: str):
        """Start an empty buffer for a step that is about to run."""
        key = live_log_key(drill_id, step_id)
        try:
            await self._client.set(key, "", ex=self._ttl)
        except redis.RedisError as e:
            logger.warning(f"Could not reset live log for step {step_id} of drill {drill_id}: {e}")

    async def append(self, drill_id: str, step_id: str, chunk: str):
        key = live_log_key(drill_id, step_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.append(key, chunk)
                pipe.expire(key, self._ttl)
                await pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Could not append live log for step {step_id} of drill {drill_id}: {e}")

    async def get_logs(self, drill_id: str, step_ids: List[str]) -> Dict[str, str]:
        """Return the buffered output of each step that has one."""
        if not step_ids:
            return {}
        keys = [live_log_key(drill_id, step_id) for step_id in step_ids]
        try:
            values = await self._client.mget(keys)
        except redis.RedisError as e:
            logger.warning(f"Could not read live logs of drill {drill_id}: {e}")
            return {}
        return {
            step_id: value
            for step_id, value in zip(step_ids, values)
            if value is not None
        }

    async def ping(self) -> bool:
        return await self._client.ping()

    async def close(self):
        await self._client.aclose()
