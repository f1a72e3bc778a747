"""
Knowledge Graph Store for AI Collaboration Hub

Shared memory of entities and relations that every agent can read and
extend. Observations are append-only; reads go through a short-lived
search cache that is invalidated by tag on every mutation.
"""

import json
import logging
from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from ..storage.adapter import StorageAdapter
from ..storage.backends import ENTITIES, RELATIONS, tokenize
from .errors import Conflict, DanglingReference, InvalidArgument, NotFound
from .locks import KeyedLock
from .models import Entity, Relation, utcnow

logger = logging.getLogger(__name__)

SEARCH_TAG = "search"

EntityInput = Union[Entity, Dict[str, Any]]
RelationInput = Union[Relation, Dict[str, Any]]


def _entity_tag(name: str) -> str:
    return f"entity:{name}"


class KnowledgeGraph:
    """
    Entity/relation store built on the storage adapter.

    Features:
    - Upsert of entities with observation merge and deduplication
    - Relations with referential checks and idempotent creation
    - Keyword search, upgraded to similarity search when a semantic
      backend is healthy
    - Cache-aside search results with tag-based invalidation
    - Per-entity locking so unrelated entities never contend
    """

    def __init__(self, storage: StorageAdapter, search_cache_ttl: int = 30,
                 default_search_limit: int = 10):
        """
        Initialize the knowledge graph.

        Args:
            storage: Storage adapter holding entities and relations
            search_cache_ttl: Seconds a cached search result stays valid
            default_search_limit: Result limit when the caller gives none
        """
        self.storage = storage
        self.search_cache_ttl = search_cache_ttl
        self.default_search_limit = default_search_limit
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_entity(data: EntityInput) -> Entity:
        if isinstance(data, Entity):
            return data.model_copy(deep=True)
        try:
            return Entity.model_validate(data)
        except ValidationError as e:
            name = data.get("name") if isinstance(data, dict) else None
            raise InvalidArgument(f"Invalid entity: {e.errors()[0]['msg']}",
                                  entityName=name) from e

    @staticmethod
    def _coerce_relation(data: RelationInput) -> Relation:
        if isinstance(data, Relation):
            return data.model_copy(deep=True)
        try:
            return Relation.model_validate(data)
        except ValidationError as e:
            raise InvalidArgument(f"Invalid relation: {e.errors()[0]['msg']}") from e

    def _load(self, name: str) -> Entity:
        return Entity.model_validate(self.storage.get(ENTITIES, name))

    def _save(self, entity: Entity):
        self.storage.put(ENTITIES, entity.name, entity.to_dict())

    def get_entity(self, name: str) -> Entity:
        """Return an entity or raise NotFound."""
        try:
            return self._load(name)
        except NotFound:
            raise NotFound("Entity does not exist", entityName=name) from None

    def entity_exists(self, name: str) -> bool:
        return self.storage.exists(ENTITIES, name)

    def _invalidate(self, names: Iterable[str], structural: bool = False):
        tags = [_entity_tag(name) for name in names]
        if structural:
            tags.append(SEARCH_TAG)
        self.storage.invalidate_tags(tags)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_entities(self, entities: Sequence[EntityInput]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Create entities, merging into existing ones by name.

        An existing entity keeps its type and gains any observations it
        did not already have.

        Names are unique across the whole graph, not per entity type:
        relations and deletions address entities by name alone, so a
        second entity with the same name under another type could not be
        told apart. Reusing a name with a different type is rejected.

        Returns:
            {"created": [...], "merged": [...]} with the stored entities

        Raises:
            Conflict: a name already exists with a different entity type
        """
        batch: Dict[str, Entity] = {}
        for item in entities:
            entity = self._coerce_entity(item)
            previous = batch.get(entity.name)
            if previous is None:
                fresh = entity.model_copy(update={"observations": []})
                fresh.merge_observations(entity.observations)
                batch[entity.name] = fresh
            elif previous.entity_type != entity.entity_type:
                raise Conflict("Entity listed twice with different types",
                               entityName=entity.name)
            else:
                previous.merge_observations(entity.observations)

        created: List[Entity] = []
        merged: List[Entity] = []
        changed = False
        now = utcnow()

        with self._locks.hold_many(batch):
            existing: Dict[str, Entity] = {}
            for name, entity in batch.items():
                try:
                    current = self._load(name)
                except NotFound:
                    continue
                if current.entity_type != entity.entity_type:
                    raise Conflict(
                        f"Entity exists with type {current.entity_type}",
                        entityName=name, entityType=entity.entity_type,
                    )
                existing[name] = current

            for name, entity in batch.items():
                current = existing.get(name)
                if current is None:
                    entity.created_at = now
                    entity.updated_at = now
                    self._save(entity)
                    created.append(entity)
                else:
                    if current.merge_observations(entity.observations):
                        self._save(current)
                        changed = True
                    merged.append(current)

        if created or merged:
            self._invalidate([e.name for e in created + merged],
                             structural=bool(created) or changed)
        logger.debug(f"create_entities: {len(created)} created, {len(merged)} merged")

        return {
            "created": [e.to_dict() for e in created],
            "merged": [e.to_dict() for e in merged],
        }

    def add_observations(self, entity_name: str,
                         observations: Sequence[str]) -> Dict[str, Any]:
        """
        Append observations to an existing entity.

        Duplicate strings, within the call or against what is stored,
        are ignored.

        Raises:
            NotFound: the entity does not exist
        """
        if not isinstance(observations, (list, tuple)) or \
                not all(isinstance(o, str) for o in observations):
            raise InvalidArgument("Observations must be a list of strings",
                                  entityName=entity_name)

        with self._locks.hold(entity_name):
            entity = self.get_entity(entity_name)
            added = entity.merge_observations(list(observations))
            if added:
                self._save(entity)

        if added:
            self._invalidate([entity_name], structural=True)
        return {"entityName": entity_name, "addedObservations": added}

    def add_observations_batch(self, items: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Apply several ``{entityName, contents}`` items.

        Every entity is checked before anything is written, so a
        missing name leaves the graph unchanged.
        """
        names = []
        for item in items:
            name = item.get("entityName")
            if not name:
                raise InvalidArgument("entityName is required")
            names.append(name)

        with self._locks.hold_many(names):
            for name in names:
                self.get_entity(name)
            return [
                self.add_observations(item["entityName"], item.get("contents", []))
                for item in items
            ]

    def remove_observations(self, entity_name: str,
                            observations: Sequence[str]) -> Dict[str, Any]:
        """Explicitly remove observations from an entity."""
        targets = set(observations)
        with self._locks.hold(entity_name):
            entity = self.get_entity(entity_name)
            removed = [o for o in entity.observations if o in targets]
            if removed:
                entity.observations = [o for o in entity.observations if o not in targets]
                entity.updated_at = utcnow()
                self._save(entity)

        if removed:
            self._invalidate([entity_name], structural=True)
        return {"entityName": entity_name, "removedObservations": removed}

    def create_relations(self, relations: Sequence[RelationInput]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Create relations between existing entities.

        Identical (from, to, relationType) triples are no-ops.

        Raises:
            DanglingReference: an endpoint does not exist
        """
        parsed = [self._coerce_relation(r) for r in relations]
        endpoints = {r.from_entity for r in parsed} | {r.to_entity for r in parsed}

        created: List[Relation] = []
        existing: List[Relation] = []

        with self._locks.hold_many(endpoints):
            for relation in parsed:
                missing = [name for name in (relation.from_entity, relation.to_entity)
                           if not self.entity_exists(name)]
                if missing:
                    raise DanglingReference(
                        "Relation endpoint does not exist",
                        fromEntity=relation.from_entity,
                        toEntity=relation.to_entity,
                        relationType=relation.relation_type,
                        missing=sorted(set(missing)),
                    )

            seen = set()
            for relation in parsed:
                key = relation.key
                if key in seen or self.storage.exists(RELATIONS, key):
                    existing.append(relation)
                    continue
                seen.add(key)
                self.storage.put(RELATIONS, key, relation.to_dict())
                created.append(relation)

        if created:
            self._invalidate(endpoints)
        return {
            "created": [r.to_dict() for r in created],
            "existing": [r.to_dict() for r in existing],
        }

    def delete_entity(self, entity_name: str) -> Dict[str, Any]:
        """Delete an entity and every relation touching it."""
        with self._locks.hold(entity_name):
            self.get_entity(entity_name)
            touching = self._relations_touching(entity_name)
            for relation in touching:
                self.storage.delete(RELATIONS, relation.key)
            self.storage.delete(ENTITIES, entity_name)

        affected = {entity_name}
        for relation in touching:
            affected.update((relation.from_entity, relation.to_entity))
        self._invalidate(affected, structural=True)
        logger.info(f"Deleted entity {entity_name} and {len(touching)} relations")
        return {"entityName": entity_name, "relationsRemoved": len(touching)}

    def record(self, name: str, entity_type: str, observations: Sequence[str]) -> Dict[str, Any]:
        """Append observations to an audit-style entity, creating it if needed."""
        result = self.create_entities([{
            "name": name,
            "entityType": entity_type,
            "observations": list(observations),
        }])
        return (result["created"] or result["merged"])[0]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _all_entities(self) -> List[Entity]:
        return [Entity.model_validate(v) for v in self.storage.query(ENTITIES)]

    def _all_relations(self) -> List[Relation]:
        return [Relation.model_validate(v) for v in self.storage.query(RELATIONS)]

    def _relations_touching(self, name: str) -> List[Relation]:
        outgoing = self.storage.query(RELATIONS, {"from": name})
        incoming = self.storage.query(RELATIONS, {"to": name})
        seen = {}
        for value in outgoing + incoming:
            relation = Relation.model_validate(value)
            seen[relation.key] = relation
        return list(seen.values())

    @staticmethod
    def _keyword_match(entity: Entity, query: str, tokens: List[str]) -> bool:
        if not query:
            return True
        fields = [entity.name, entity.entity_type] + entity.observations
        haystack = "\n".join(fields).lower()
        if query.lower() in haystack:
            return True
        entity_tokens = set(tokenize(haystack))
        return bool(tokens) and all(token in entity_tokens for token in tokens)

    def search_entities(self, query: str, entity_types: Optional[Sequence[str]] = None,
                        limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Search entities by keyword, and by similarity when available.

        Results are deduplicated by name and ranked by semantic score
        when present, else by recency; ties go to the smaller name.
        Each result carries a ``score`` (None for keyword-only hits).
        """
        limit = self.default_search_limit if limit is None else int(limit)
        if limit < 1:
            raise InvalidArgument("limit must be positive", limit=limit)
        query = (query or "").strip()
        types = sorted(set(entity_types)) if entity_types else []

        cache_key = json.dumps(["search", query, types, limit])
        cached = self.storage.cache_get(cache_key)
        if cached is not None:
            return cached
        generation = self.storage.cache_generation()

        entities = {e.name: e for e in self._all_entities()
                    if not types or e.entity_type in types}

        scores: Dict[str, float] = {}
        if query:
            semantic = self.storage.search(ENTITIES, query, limit=max(limit * 3, 20))
            if semantic is not None:
                scores = {name: score for name, score in semantic if name in entities}

        tokens = tokenize(query)
        hits: Dict[str, Tuple[Entity, Optional[float]]] = {}
        for name, entity in entities.items():
            if name in scores or self._keyword_match(entity, query, tokens):
                hits[name] = (entity, scores.get(name))

        def rank(item: Tuple[Entity, Optional[float]]):
            entity, score = item
            if score is not None:
                return (0, -score, 0.0, entity.name)
            return (1, 0.0, -entity.updated_at.timestamp(), entity.name)

        ordered = sorted(hits.values(), key=rank)[:limit]
        results = []
        for entity, score in ordered:
            data = entity.to_dict()
            data["score"] = score
            results.append(data)

        tags = [SEARCH_TAG] + [_entity_tag(r["name"]) for r in results]
        self.storage.cache_put(cache_key, results, ttl=self.search_cache_ttl,
                               tags=tags, generation=generation)
        return results

    def read_graph(self) -> Dict[str, List[Dict[str, Any]]]:
        """Return every entity and relation."""
        return {
            "entities": [e.to_dict() for e in self._all_entities()],
            "relations": [r.to_dict() for r in self._all_relations()],
        }

    def open_nodes(self, names: Sequence[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Return the named entities and the relations among them."""
        wanted = set(names)
        entities = []
        for name in sorted(wanted):
            try:
                entities.append(self._load(name).to_dict())
            except NotFound:
                continue
        found = {e["name"] for e in entities}
        relations = [
            r.to_dict() for r in self._all_relations()
            if r.from_entity in found and r.to_entity in found
        ]
        return {"entities": entities, "relations": relations}

    def related_entities(self, entity_name: str, depth: int = 1) -> Dict[str, Any]:
        """
        Entities within ``depth`` hops of ``entity_name``, either direction.

        Uses the graph backend when it is healthy and current, otherwise
        walks relations from the primary store.
        """
        if depth < 1:
            raise InvalidArgument("depth must be at least 1", depth=depth)
        self.get_entity(entity_name)

        distances = self.storage.neighbors(entity_name, depth)
        source = "graph"
        if distances is None:
            distances = self._walk(entity_name, depth)
            source = "primary"

        related = []
        for name, distance in sorted(distances.items(), key=lambda kv: (kv[1], kv[0])):
            try:
                data = self._load(name).to_dict()
            except NotFound:
                continue
            data["distance"] = distance
            related.append(data)
        return {"entityName": entity_name, "related": related, "source": source}

    def _walk(self, start: str, depth: int) -> Dict[str, int]:
        adjacency: Dict[str, set] = {}
        for relation in self._all_relations():
            adjacency.setdefault(relation.from_entity, set()).add(relation.to_entity)
            adjacency.setdefault(relation.to_entity, set()).add(relation.from_entity)

        distances = {start: 0}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            if distances[node] >= depth:
                continue
            for neighbor in adjacency.get(node, ()):
                if neighbor not in distances:
                    distances[neighbor] = distances[node] + 1
                    queue.append(neighbor)
        distances.pop(start)
        return distances

    def get_stats(self) -> Dict[str, Any]:
        """Counts for the health query."""
        return {
            "entities": self.storage.count(ENTITIES),
            "relations": self.storage.count(RELATIONS),
        }
