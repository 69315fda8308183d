import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import redis.asyncio as redis

from .config import REDIS_URL, TESTING

# KEYS: visibility zset, messages hash
# ARGV: now, count, visibility timeout, then one fresh pop receipt per slot
CLAIM_MESSAGES_LUA = """
local now = tonumber(ARGV[1])
local vt = tonumber(ARGV[3])
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
local claimed = {}
for i, id in ipairs(ids) do
  local raw = redis.call('HGET', KEYS[2], id)
  if not raw then
    redis.call('ZREM', KEYS[1], id)
  else
    local record = cjson.decode(raw)
    if tonumber(record['expiresOn']) <= now then
      redis.call('HDEL', KEYS[2], id)
      redis.call('ZREM', KEYS[1], id)
    else
      record['dequeueCount'] = record['dequeueCount'] + 1
      record['popReceipt'] = ARGV[3 + i]
      record['nextVisibleOn'] = now + vt
      raw = cjson.encode(record)
      redis.call('HSET', KEYS[2], id, raw)
      redis.call('ZADD', KEYS[1], record['nextVisibleOn'], id)
      table.insert(claimed, raw)
    end
  end
end
return claimed
"""


class AsyncInMemoryRedis:
    """Async stand-in for the subset of redis commands used by the queue and blob transports."""

    def __init__(self):
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._scripts: Dict[str, Callable[..., Awaitable[Any]]] = {
            CLAIM_MESSAGES_LUA: self._claim_messages,
        }

    async def ping(self) -> bool:
        return True

    async def aclose(self):
        return None

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self._hashes.pop(name, None) is not None:
                removed += 1
            if self._zsets.pop(name, None) is not None:
                removed += 1
        return removed

    # hash methods
    async def hset(self, name: str, key: str, value: str):
        h = self._hashes.setdefault(name, {})
        added = 0 if key in h else 1
        h[key] = value
        return added

    async def hget(self, name: str, key: str) -> Optional[str]:
        h = self._hashes.get(name, {})
        return h.get(key)

    async def hgetall(self, name: str) -> Dict[str, str]:
        return dict(self._hashes.get(name, {}))

    async def hkeys(self, name: str) -> List[str]:
        return list(self._hashes.get(name, {}))

    async def hdel(self, name: str, *keys: str) -> int:
        h = self._hashes.get(name, {})
        removed = 0
        for k in keys:
            if k in h:
                del h[k]
                removed += 1
        return removed

    async def hlen(self, name: str) -> int:
        return len(self._hashes.get(name, {}))

    # zset methods
    async def zadd(self, name: str, mapping: Dict[str, float], nx: bool = False):
        z = self._zsets.setdefault(name, {})
        added = 0
        for member, score in mapping.items():
            if member in z and nx:
                continue
            if member not in z:
                added += 1
            z[member] = float(score)
        return added

    async def zscore(self, name: str, member: str) -> Optional[float]:
        return self._zsets.get(name, {}).get(member)

    def _sorted(self, name: str) -> List[Tuple[str, float]]:
        z = self._zsets.get(name, {})
        return sorted(z.items(), key=lambda kv: (kv[1], kv[0]))

    async def zrange(
        self, name: str, start: int, end: int, withscores: bool = False
    ) -> Union[List[str], List[Tuple[str, float]]]:
        items = self._sorted(name)
        stop = None if end == -1 else end + 1
        window = items[start:stop]
        if withscores:
            return window
        return [m for m, _ in window]

    async def zrangebyscore(
        self,
        name: str,
        min_score: float,
        max_score: float,
        start: Optional[int] = None,
        num: Optional[int] = None,
        withscores: bool = False,
    ) -> Union[List[str], List[Tuple[str, float]]]:
        items = [(m, s) for m, s in self._sorted(name) if float(min_score) <= s <= float(max_score)]
        if start is not None and num is not None:
            items = items[start:start + num]
        if withscores:
            return items
        return [m for m, _ in items]

    async def zrem(self, name: str, *members: str) -> int:
        z = self._zsets.get(name, {})
        removed = 0
        for m in members:
            if m in z:
                del z[m]
                removed += 1
        return removed

    async def zcard(self, name: str) -> int:
        return len(self._zsets.get(name, {}))

    # scripting
    def register_script(self, script: str):
        handler = self._scripts.get(script)
        if handler is None:
            raise NotImplementedError("script has no in-memory equivalent")

        async def run(keys: Sequence[str] = (), args: Sequence[Any] = (), client=None):
            return await handler(list(keys), list(args))

        return run

    async def _claim_messages(self, keys: List[str], args: List[Any]) -> List[str]:
        # Same steps as CLAIM_MESSAGES_LUA; nothing awaits in between, so it is atomic here too
        visibility_key, messages_key = keys
        now, count, vt = float(args[0]), int(args[1]), float(args[2])
        receipts = args[3:]
        due = [m for m, s in self._sorted(visibility_key) if s <= now][:count]
        messages = self._hashes.setdefault(messages_key, {})
        scores = self._zsets.setdefault(visibility_key, {})
        claimed: List[str] = []
        for i, message_id in enumerate(due):
            raw = messages.get(message_id)
            if raw is None:
                del scores[message_id]
                continue
            record = json.loads(raw)
            if record["expiresOn"] <= now:
                del messages[message_id]
                del scores[message_id]
                continue
            record["dequeueCount"] += 1
            record["popReceipt"] = receipts[i]
            record["nextVisibleOn"] = now + vt
            raw = json.dumps(record)
            messages[message_id] = raw
            scores[message_id] = record["nextVisibleOn"]
            claimed.append(raw)
        return claimed


# Singleton in-memory client for testing
_inmemory_client: Optional[AsyncInMemoryRedis] = None


async def get_redis():
    global _inmemory_client
    if TESTING:
        if _inmemory_client is None:
            _inmemory_client = AsyncInMemoryRedis()
        return _inmemory_client
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)
