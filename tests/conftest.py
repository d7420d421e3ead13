import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError


class DummyPipeline:
    """Buffer commands and apply them in order on ``execute``.

    After ``watch`` commands run immediately until ``multi``; ``execute``
    raises ``WatchError`` when a watched key changed in between.
    """

    def __init__(self, redis):
        self.redis = redis
        self.commands = []
        self.watched = None
        self.buffering = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.reset()
        return False

    def reset(self):
        self.commands = []
        self.watched = None
        self.buffering = True

    async def watch(self, *keys):
        self.watched = {key: self.redis.versions.get(key, 0) for key in keys}
        self.buffering = False

    async def unwatch(self):
        self.watched = None
        self.buffering = True

    def multi(self):
        self.buffering = True

    def __getattr__(self, name):
        method = getattr(self.redis, name)
        if not self.buffering:
            return method

        def buffer(*args, **kwargs):
            self.commands.append((method, args, kwargs))
            return self

        return buffer

    async def execute(self):
        if self.watched is not None:
            changed = [k for k, v in self.watched.items() if self.redis.versions.get(k, 0) != v]
            if changed:
                self.reset()
                raise WatchError(f"watched keys changed: {changed}")
        results = []
        for method, args, kwargs in self.commands:
            results.append(await method(*args, **kwargs))
        self.reset()
        self.redis.executed_pipelines += 1
        return results


class DummyRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` with ``decode_responses=True``."""

    def __init__(self):
        self.strings = {}
        self.zsets = {}
        self.hashes = {}
        self.ttls = {}
        self.broken = set()
        self.executed_pipelines = 0
        self.closed = False
        self.versions = {}

    def _check(self, command):
        if command in self.broken or "*" in self.broken:
            raise RedisConnectionError(f"redis unavailable ({command})")

    def _touch(self, key):
        self.versions[key] = self.versions.get(key, 0) + 1

    def pipeline(self, transaction=True):
        return DummyPipeline(self)

    async def aclose(self):
        self.closed = True

    # strings
    async def get(self, key):
        self._check("get")
        return self.strings.get(key)

    async def set(self, key, value, nx=False, ex=None):
        self._check("set")
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def incr(self, key):
        self._check("incr")
        value = int(self.strings.get(key, 0)) + 1
        self.strings[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self._check("expire")
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys):
        self._check("delete")
        removed = 0
        for key in keys:
            for store in (self.strings, self.zsets, self.hashes):
                if store.pop(key, None) is not None:
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    # sorted sets
    def _sorted(self, key):
        members = self.zsets.get(key, {})
        return sorted(members, key=lambda member: (members[member], member))

    @staticmethod
    def _rank_slice(items, start, end):
        length = len(items)
        if start < 0:
            start += length
        if end < 0:
            end += length
        start = max(start, 0)
        end = min(end, length - 1)
        if start > end:
            return []
        return items[start:end + 1]

    async def zadd(self, key, mapping):
        self._check("zadd")
        zset = self.zsets.setdefault(key, {})
        self._touch(key)
        added = 0
        for member, score in mapping.items():
            if member not in zset:
                added += 1
            zset[member] = float(score)
        return added

    async def zrem(self, key, *members):
        self._check("zrem")
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        if removed:
            self._touch(key)
        return removed

    async def zrangebyscore(self, key, min, max, start=None, num=None):
        self._check("zrangebyscore")
        low = float(min)
        high = float(max)
        members = self.zsets.get(key, {})
        matched = [m for m in self._sorted(key) if low <= members[m] <= high]
        if start is not None and num is not None:
            matched = matched[start:start + num]
        return matched

    async def zrange(self, key, start, end):
        self._check("zrange")
        return self._rank_slice(self._sorted(key), start, end)

    async def zremrangebyrank(self, key, start, end):
        self._check("zremrangebyrank")
        doomed = self._rank_slice(self._sorted(key), start, end)
        for member in doomed:
            self.zsets[key].pop(member, None)
        if doomed:
            self._touch(key)
        return len(doomed)

    async def zscore(self, key, member):
        self._check("zscore")
        return self.zsets.get(key, {}).get(member)

    async def zcard(self, key):
        self._check("zcard")
        return len(self.zsets.get(key, {}))

    # hashes
    async def hset(self, key, field, value):
        self._check("hset")
        bucket = self.hashes.setdefault(key, {})
        created = field not in bucket
        bucket[field] = value
        return int(created)

    async def hget(self, key, field):
        self._check("hget")
        return self.hashes.get(key, {}).get(field)

    async def hdel(self, key, *fields):
        self._check("hdel")
        bucket = self.hashes.get(key, {})
        removed = 0
        for field in fields:
            if bucket.pop(field, None) is not None:
                removed += 1
        return removed


@pytest.fixture
def redis():
    return DummyRedis()
