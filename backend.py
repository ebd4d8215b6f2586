import json
import os
import tempfile
from datetime import datetime
from typing import Iterable, List

import redis

from constants import REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, SNAPSHOT_FILE, STORE_BACKEND
from logging_config import get_logger
from redis_keys import REDIS_EXPIRY_INDEX, REDIS_SNAPSHOT_KEY
from tzmath import parse_instant

logger = get_logger(__name__)


def _expiry_epoch(snapshot: dict) -> float:
    expires_at = snapshot.get("expiresAt")
    if not expires_at:
        return float("inf")
    return parse_instant(expires_at).timestamp()


class SnapshotBackend:
    """Durable home for room snapshots. Implementations are blocking."""

    name = "none"

    def load(self, now: datetime) -> List[dict]:
        raise NotImplementedError

    def upsert(self, snapshot: dict):
        raise NotImplementedError

    def delete(self, code: str):
        raise NotImplementedError

    def write_batch(self, upserts: Iterable[dict], deletes: Iterable[str]):
        for snapshot in upserts:
            self.upsert(snapshot)
        for code in deletes:
            self.delete(code)


class RedisBackend(SnapshotBackend):
    name = "redis"

    def __init__(self, client: redis.Redis = None):
        if client is None:
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
            try:
                client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
                client.ping()
                logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
            except Exception as e:
                logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
                raise
        self.redis_client = client

    def load(self, now: datetime) -> List[dict]:
        now_ts = now.timestamp()
        # Drop index rows whose documents have already lapsed.
        stale = self.redis_client.zrangebyscore(REDIS_EXPIRY_INDEX, "-inf", f"({now_ts}")
        if stale:
            self.redis_client.delete(*[REDIS_SNAPSHOT_KEY.format(code=code) for code in stale])
            self.redis_client.zrem(REDIS_EXPIRY_INDEX, *stale)
            logger.info(f"Pruned {len(stale)} expired room snapshot(s) from Redis")

        codes = self.redis_client.zrangebyscore(REDIS_EXPIRY_INDEX, now_ts, "+inf")
        if not codes:
            return []
        raw_docs = self.redis_client.mget([REDIS_SNAPSHOT_KEY.format(code=code) for code in codes])
        snapshots = []
        for code, raw in zip(codes, raw_docs):
            if raw is None:
                logger.debug(f"Snapshot for room {code} missing, removing from index")
                self.redis_client.zrem(REDIS_EXPIRY_INDEX, code)
                continue
            try:
                snapshots.append(json.loads(raw))
            except (json.JSONDecodeError, TypeError) as e:
                logger.error(f"Corrupt snapshot for room {code}: {e}")
        logger.info(f"Loaded {len(snapshots)} room snapshot(s) from Redis")
        return snapshots

    def upsert(self, snapshot: dict):
        code = snapshot["code"]
        key = REDIS_SNAPSHOT_KEY.format(code=code)
        expiry = _expiry_epoch(snapshot)
        pipe = self.redis_client.pipeline()
        pipe.set(key, json.dumps(snapshot))
        if expiry != float("inf"):
            pipe.expireat(key, int(expiry))
        pipe.zadd(REDIS_EXPIRY_INDEX, {code: expiry})
        pipe.execute()
        logger.debug(f"Room {code} snapshot written to {key}")

    def delete(self, code: str):
        pipe = self.redis_client.pipeline()
        pipe.delete(REDIS_SNAPSHOT_KEY.format(code=code))
        pipe.zrem(REDIS_EXPIRY_INDEX, code)
        pipe.execute()
        logger.debug(f"Room {code} snapshot deleted")


class FileBackend(SnapshotBackend):
    """Whole-state JSON file, rewritten atomically on every batch."""

    name = "file"

    def __init__(self, path: str = SNAPSHOT_FILE):
        self.path = path
        self._docs = {}

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        rooms = data.get("rooms", []) if isinstance(data, dict) else data
        return {doc["code"]: doc for doc in rooms if isinstance(doc, dict) and doc.get("code")}

    def _write(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".rooms-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"version": 2, "rooms": list(self._docs.values())}, fh, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def load(self, now: datetime) -> List[dict]:
        try:
            self._docs = self._read()
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read snapshot file {self.path}: {e}", exc_info=True)
            self._docs = {}
            return []
        now_ts = now.timestamp()
        live = {code: doc for code, doc in self._docs.items() if _expiry_epoch(doc) > now_ts}
        if len(live) != len(self._docs):
            logger.info(f"Dropped {len(self._docs) - len(live)} expired snapshot(s) from {self.path}")
        self._docs = live
        logger.info(f"Loaded {len(live)} room snapshot(s) from {self.path}")
        return list(live.values())

    def upsert(self, snapshot: dict):
        self.write_batch([snapshot], [])

    def delete(self, code: str):
        self.write_batch([], [code])

    def write_batch(self, upserts: Iterable[dict], deletes: Iterable[str]):
        for snapshot in upserts:
            self._docs[snapshot["code"]] = snapshot
        for code in deletes:
            self._docs.pop(code, None)
        self._write()


def get_backend(kind: str = STORE_BACKEND) -> SnapshotBackend:
    if kind == "redis":
        return RedisBackend()
    if kind == "file":
        return FileBackend(SNAPSHOT_FILE)
    raise ValueError(f"Unknown STORE_BACKEND {kind!r} (expected 'file' or 'redis')")
