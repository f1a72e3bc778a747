"""
Storage Backends for AI Collaboration Hub

Every backend implements the same put/get/query/delete contract and
advertises what it can do through capability flags. The adapter
composes them by capability, never by concrete type.
"""

import copy
import hashlib
import json
import re
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

import networkx as nx
import numpy as np
import redis

from ..core.errors import NotFound

ENTITIES = "entities"
RELATIONS = "relations"


class Capability(Enum):
    """Backend capability flags."""
    DURABLE = "durable"
    SEARCHABLE = "searchable"
    GRAPH = "graph_capable"
    CACHE = "cache"


def matches(record: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """
    Check a record against an equality filter.

    A field matches when it equals the filter value or, for list
    fields, when the list contains it.
    """
    if not filter:
        return True
    for field, expected in filter.items():
        actual = record.get(field)
        if isinstance(actual, list) and not isinstance(expected, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class StorageBackend(ABC):
    """Common interface for all storage backends."""

    capabilities: FrozenSet[Capability] = frozenset()

    # Collections this backend mirrors; None means all of them.
    mirrors: Optional[FrozenSet[str]] = None

    def __init__(self, name: str):
        self.name = name

    @property
    def durable(self) -> bool:
        return Capability.DURABLE in self.capabilities

    @property
    def searchable(self) -> bool:
        return Capability.SEARCHABLE in self.capabilities

    @property
    def graph_capable(self) -> bool:
        return Capability.GRAPH in self.capabilities

    @property
    def is_cache(self) -> bool:
        return Capability.CACHE in self.capabilities

    def accepts(self, collection: str) -> bool:
        return self.mirrors is None or collection in self.mirrors

    @abstractmethod
    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Dict[str, Any]:
        """Return the stored value or raise NotFound."""

    @abstractmethod
    def query(self, collection: str,
              filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return matching values in insertion order."""

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """Delete a value; returns True if something was removed."""

    def items(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Return (key, value) pairs in insertion order."""
        raise NotImplementedError

    def ping(self) -> bool:
        """Raise or return False when the backend cannot serve requests."""
        return True

    def clear(self) -> None:
        """Drop every stored value."""
        raise NotImplementedError

    def close(self) -> None:
        pass

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": type(self).__name__,
            "capabilities": sorted(c.value for c in self.capabilities),
        }


class SQLiteBackend(StorageBackend):
    """
    Durable primary store backed by SQLite.

    One table holds every collection; values are JSON documents. Upserts
    keep the original rowid so query results stay in insertion order.
    """

    capabilities = frozenset({Capability.DURABLE})

    def __init__(self, db_path: str = "hub.db", name: str = "sqlite"):
        super().__init__(name)
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=30)

    def _init_database(self):
        """Initialize database schema."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (collection, key)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection)
            """)

    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO records (collection, key, value, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(collection, key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                """, (collection, key, json.dumps(value), time.time()))

    def get(self, collection: str, key: str) -> Dict[str, Any]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM records WHERE collection = ? AND key = ?",
                    (collection, key)
                ).fetchone()
        if row is None:
            raise NotFound(f"No record in {collection}", collection=collection, key=key)
        return json.loads(row[0])

    def query(self, collection: str,
              filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT value FROM records WHERE collection = ? ORDER BY rowid",
                    (collection,)
                ).fetchall()
        records = (json.loads(row[0]) for row in rows)
        return [record for record in records if matches(record, filter)]

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM records WHERE collection = ? AND key = ?",
                    (collection, key)
                )
                return cursor.rowcount > 0

    def count(self, collection: str) -> int:
        with self._lock:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT COUNT(*) FROM records WHERE collection = ?", (collection,)
                ).fetchone()[0]

    def items(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT key, value FROM records WHERE collection = ? ORDER BY rowid",
                    (collection,)
                ).fetchall()
        return [(row[0], json.loads(row[1])) for row in rows]

    def collections(self) -> List[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT DISTINCT collection FROM records").fetchall()
        return [row[0] for row in rows]

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def clear(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM records")


class CacheBackend(StorageBackend):
    """A backend holding advisory entries with a time-to-live and tags."""

    capabilities = frozenset({Capability.CACHE})

    def __init__(self, name: str, default_ttl: int = 300):
        super().__init__(name)
        self.default_ttl = default_ttl

    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        self.put_entry(collection, key, value)

    @abstractmethod
    def put_entry(self, collection: str, key: str, value: Any,
                  ttl: Optional[int] = None, tags: Iterable[str] = ()) -> None:
        """Store a value with an expiry and a tag set."""

    @abstractmethod
    def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Drop every entry carrying any of the tags; returns the count."""


class MemoryCacheBackend(CacheBackend):
    """In-process TTL cache with tag-based invalidation."""

    def __init__(self, name: str = "memory", default_ttl: int = 300):
        super().__init__(name, default_ttl)
        self._lock = threading.RLock()
        self._entries: Dict[Tuple[str, str], Tuple[Any, float, FrozenSet[str]]] = {}
        self._tags: Dict[str, Set[Tuple[str, str]]] = {}

    def put_entry(self, collection: str, key: str, value: Any,
                  ttl: Optional[int] = None, tags: Iterable[str] = ()) -> None:
        expires_at = time.monotonic() + (ttl or self.default_ttl)
        tag_set = frozenset(tags)
        with self._lock:
            self._drop((collection, key))
            self._entries[(collection, key)] = (value, expires_at, tag_set)
            for tag in tag_set:
                self._tags.setdefault(tag, set()).add((collection, key))

    def get(self, collection: str, key: str) -> Any:
        with self._lock:
            entry = self._entries.get((collection, key))
            if entry is not None and entry[1] <= time.monotonic():
                self._drop((collection, key))
                entry = None
        if entry is None:
            raise NotFound(f"No cache entry in {collection}", collection=collection, key=key)
        return copy.deepcopy(entry[0])

    def query(self, collection: str,
              filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        now = time.monotonic()
        with self._lock:
            values = [
                value for (coll, _), (value, expires_at, _) in self._entries.items()
                if coll == collection and expires_at > now
            ]
        return [v for v in values if isinstance(v, dict) and matches(v, filter)]

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            return self._drop((collection, key))

    def _drop(self, entry_key: Tuple[str, str]) -> bool:
        entry = self._entries.pop(entry_key, None)
        if entry is None:
            return False
        for tag in entry[2]:
            keys = self._tags.get(tag)
            if keys is not None:
                keys.discard(entry_key)
                if not keys:
                    del self._tags[tag]
        return True

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        count = 0
        with self._lock:
            for tag in set(tags):
                for entry_key in list(self._tags.get(tag, ())):
                    if self._drop(entry_key):
                        count += 1
        return count

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tags.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """
    Redis cache with tag sets for invalidation.

    Entries live under ``<prefix>:<collection>:<key>``; each tag is a
    Redis set ``<prefix>:tag:<tag>`` listing the entry keys it covers.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", name: str = "redis",
                 default_ttl: int = 300, prefix: str = "ai_collab_hub",
                 client: Optional[redis.Redis] = None):
        super().__init__(name, default_ttl)
        self.prefix = prefix
        self.client = client or redis.Redis.from_url(
            url, decode_responses=True, socket_timeout=2, socket_connect_timeout=2
        )

    def _key(self, collection: str, key: str) -> str:
        return f"{self.prefix}:{collection}:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}:tag:{tag}"

    def put_entry(self, collection: str, key: str, value: Any,
                  ttl: Optional[int] = None, tags: Iterable[str] = ()) -> None:
        ttl = ttl or self.default_ttl
        redis_key = self._key(collection, key)
        pipe = self.client.pipeline()
        pipe.setex(redis_key, ttl, json.dumps(value))
        for tag in set(tags):
            tag_key = self._tag_key(tag)
            pipe.sadd(tag_key, redis_key)
            pipe.expire(tag_key, ttl)
        pipe.execute()

    def get(self, collection: str, key: str) -> Any:
        raw = self.client.get(self._key(collection, key))
        if raw is None:
            raise NotFound(f"No cache entry in {collection}", collection=collection, key=key)
        return json.loads(raw)

    def query(self, collection: str,
              filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        results = []
        for redis_key in self.client.scan_iter(match=f"{self.prefix}:{collection}:*"):
            raw = self.client.get(redis_key)
            if raw is None:
                continue
            value = json.loads(raw)
            if isinstance(value, dict) and matches(value, filter):
                results.append(value)
        return results

    def delete(self, collection: str, key: str) -> bool:
        return self.client.delete(self._key(collection, key)) > 0

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        count = 0
        for tag in set(tags):
            tag_key = self._tag_key(tag)
            members = self.client.smembers(tag_key)
            if members:
                count += self.client.delete(*members)
            self.client.delete(tag_key)
        return count

    def ping(self) -> bool:
        return bool(self.client.ping())

    def clear(self) -> None:
        keys = list(self.client.scan_iter(match=f"{self.prefix}:*"))
        if keys:
            self.client.delete(*keys)

    def close(self) -> None:
        self.client.close()


class GraphBackend(StorageBackend):
    """
    In-process graph mirror of entities and relations (NetworkX).

    Entities are nodes keyed by name; relations are edges keyed by
    relation type, so a (from, to, type) triple maps to exactly one edge.
    """

    capabilities = frozenset({Capability.GRAPH})
    mirrors = frozenset({ENTITIES, RELATIONS})

    def __init__(self, name: str = "graph"):
        super().__init__(name)
        self._lock = threading.RLock()
        self.graph = nx.MultiDiGraph()
        self._relation_index: Dict[str, Tuple[str, str, str]] = {}

    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            if collection == ENTITIES:
                self.graph.add_node(key, record=value)
            elif collection == RELATIONS:
                source, target = value["from"], value["to"]
                relation_type = value["relationType"]
                self.graph.add_edge(source, target, key=relation_type, record=value)
                self._relation_index[key] = (source, target, relation_type)

    def get(self, collection: str, key: str) -> Dict[str, Any]:
        with self._lock:
            if collection == ENTITIES and key in self.graph.nodes:
                record = self.graph.nodes[key].get("record")
                if record is not None:
                    return record
            elif collection == RELATIONS and key in self._relation_index:
                source, target, relation_type = self._relation_index[key]
                return self.graph.edges[source, target, relation_type]["record"]
        raise NotFound(f"No graph record in {collection}", collection=collection, key=key)

    def query(self, collection: str,
              filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if collection == ENTITIES:
                records = [data["record"] for _, data in self.graph.nodes(data=True)
                           if "record" in data]
            elif collection == RELATIONS:
                records = [data["record"] for _, _, data in self.graph.edges(data=True)]
            else:
                records = []
        return [r for r in records if matches(r, filter)]

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            if collection == ENTITIES and key in self.graph.nodes:
                for relation_key, (source, target, _) in list(self._relation_index.items()):
                    if key in (source, target):
                        del self._relation_index[relation_key]
                self.graph.remove_node(key)
                return True
            if collection == RELATIONS and key in self._relation_index:
                source, target, relation_type = self._relation_index.pop(key)
                self.graph.remove_edge(source, target, key=relation_type)
                return True
        return False

    def neighbors(self, name: str, depth: int = 1) -> Dict[str, int]:
        """Names reachable from ``name`` in either direction, with hop distance."""
        with self._lock:
            if name not in self.graph:
                raise NotFound("Entity not in graph", entityName=name)
            distances = nx.single_source_shortest_path_length(
                self.graph.to_undirected(as_view=True), name, cutoff=depth
            )
        distances.pop(name, None)
        return dict(distances)

    def clear(self) -> None:
        with self._lock:
            self.graph.clear()
            self._relation_index.clear()


_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


class VectorBackend(StorageBackend):
    """
    Semantic index over entity text.

    Texts are embedded with signed feature hashing into a fixed number
    of dimensions and compared by cosine similarity.
    """

    capabilities = frozenset({Capability.SEARCHABLE})
    mirrors = frozenset({ENTITIES})

    def __init__(self, name: str = "vector", dimensions: int = 256):
        super().__init__(name)
        self.dimensions = dimensions
        self._lock = threading.RLock()
        self._records: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._vectors: Dict[Tuple[str, str], np.ndarray] = {}

    def embed(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimensions, dtype=np.float32)
        for token in tokenize(text):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector

    @staticmethod
    def record_text(value: Dict[str, Any]) -> str:
        parts = [str(value.get("name", "")), str(value.get("entityType", ""))]
        parts.extend(str(o) for o in value.get("observations", []))
        return " ".join(parts)

    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        vector = self.embed(self.record_text(value))
        with self._lock:
            self._records[(collection, key)] = value
            self._vectors[(collection, key)] = vector

    def get(self, collection: str, key: str) -> Dict[str, Any]:
        with self._lock:
            record = self._records.get((collection, key))
        if record is None:
            raise NotFound(f"No indexed record in {collection}", collection=collection, key=key)
        return record

    def query(self, collection: str,
              filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = [r for (c, _), r in self._records.items() if c == collection]
        return [r for r in records if matches(r, filter)]

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            self._vectors.pop((collection, key), None)
            return self._records.pop((collection, key), None) is not None

    def search(self, collection: str, text: str, limit: int = 10,
               min_score: float = 0.05) -> List[Tuple[str, float]]:
        """Return (key, similarity) pairs, best first."""
        query_vector = self.embed(text)
        if not query_vector.any():
            return []
        with self._lock:
            keys = [k for (c, k) in self._vectors if c == collection]
            if not keys:
                return []
            matrix = np.stack([self._vectors[(collection, k)] for k in keys])
        scores = matrix @ query_vector
        order = np.argsort(-scores, kind="stable")
        results = []
        for index in order[:limit]:
            score = float(scores[index])
            if score < min_score:
                break
            results.append((keys[index], score))
        return results

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._vectors.clear()
