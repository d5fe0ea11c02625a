"""
Cluster Builder

Groups transitively linked duplicates into disjoint clusters using a
union-find over the pairwise match graph.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from config.logging import logger
from config.settings import settings
from processing.errors import ValidationError
from processing.models import ClusterStatus, DuplicateCluster, EntityKind, generate_uuid
from processing.entity_resolution.detector import DuplicateDetector, StrategySpec
from processing.entity_resolution.records import RECORD_TYPES, EntityRecord, load_records


def make_cluster_key(entity_ids: Iterable[str]) -> str:
    return "|".join(sorted(entity_ids))


@dataclass(frozen=True)
class Cluster:
    """An equivalence class of at least two duplicate entities."""
    cluster_id: str
    entity_type: EntityKind
    entity_ids: frozenset
    confidence_score: float
    status: ClusterStatus = ClusterStatus.PENDING
    # (id_a, id_b, confidence, strategy) for every edge inside the cluster
    edges: tuple = field(default=(), compare=False)

    @property
    def cluster_key(self) -> str:
        return make_cluster_key(self.entity_ids)

    @property
    def size(self) -> int:
        return len(self.entity_ids)

    @classmethod
    def from_model(cls, row: DuplicateCluster) -> "Cluster":
        return cls(
            cluster_id=row.id,
            entity_type=row.entity_type,
            entity_ids=frozenset(row.entity_ids),
            confidence_score=row.confidence_score,
            status=row.status,
        )


class UnionFind:
    """
    Disjoint sets over an index arena.

    ``parent[i]`` is the parent index of element i; roots point at
    themselves. Union by rank plus path compression keeps operations
    effectively constant time.
    """

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, i: int) -> int:
        root = i
        while self.parent[root] != root:
            root = self.parent[root]
        # Path compression
        while self.parent[i] != root:
            self.parent[i], i = root, self.parent[i]
        return root

    def union(self, a: int, b: int) -> bool:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self.rank[root_a] < self.rank[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        if self.rank[root_a] == self.rank[root_b]:
            self.rank[root_a] += 1
        return True

    def components(self) -> dict[int, list[int]]:
        groups: dict[int, list[int]] = {}
        for i in range(len(self.parent)):
            groups.setdefault(self.find(i), []).append(i)
        return groups


class ClusterBuilder:
    """
    Builds clusters from a batch of entities of one type.

    Every pair is scored once (O(n^2) detector calls); pairs at or above the
    edge threshold are unioned. A cluster's confidence is its weakest edge.

    Usage:
        builder = ClusterBuilder()
        for cluster in builder.build(records):
            print(cluster.entity_ids, cluster.confidence_score)
    """

    def __init__(
        self,
        detector: Optional[DuplicateDetector] = None,
        edge_threshold: Optional[float] = None,
    ):
        self.detector = detector or DuplicateDetector()
        self.edge_threshold = (
            settings.CLUSTER_EDGE_THRESHOLD if edge_threshold is None else edge_threshold
        )

    def _prepare(self, entities: Iterable[EntityRecord]) -> list[EntityRecord]:
        entities = list(entities)
        record_types = tuple(RECORD_TYPES.values())
        for entity in entities:
            if not isinstance(entity, record_types):
                raise ValidationError(f"Not an entity record: {type(entity).__name__}")
        types = {e.entity_type for e in entities}
        if len(types) > 1:
            raise ValidationError(
                "Cannot cluster mixed entity types",
                {"entity_types": sorted(t.value for t in types)},
            )

        unique: dict[str, EntityRecord] = {}
        for entity in entities:
            if entity.is_active:
                unique.setdefault(entity.id, entity)
        return [unique[entity_id] for entity_id in sorted(unique)]

    def build(
        self,
        entities: Iterable[EntityRecord],
        strategies: Optional[Sequence[StrategySpec]] = None,
    ) -> list[Cluster]:
        """Cluster a batch of records; singletons are dropped."""
        records = self._prepare(entities)
        if len(records) < 2:
            return []
        entity_type = records[0].entity_type

        edges = []
        for i in range(len(records)):
            for j in range(i + 1, len(records)):
                match = self.detector.score_pair(records[i], records[j], strategies)
                if match is not None and match.confidence >= self.edge_threshold:
                    edges.append((i, j, match.confidence, match.strategy.value))

        union_find = UnionFind(len(records))
        for i, j, _, _ in edges:
            union_find.union(i, j)

        edges_by_root: dict[int, list] = {}
        for edge in edges:
            edges_by_root.setdefault(union_find.find(edge[0]), []).append(edge)

        clusters = []
        for root, members in union_find.components().items():
            if len(members) < 2:
                continue
            component_edges = edges_by_root[root]
            clusters.append(
                Cluster(
                    cluster_id=generate_uuid(),
                    entity_type=entity_type,
                    entity_ids=frozenset(records[m].id for m in members),
                    confidence_score=min(e[2] for e in component_edges),
                    edges=tuple(
                        (records[i].id, records[j].id, confidence, strategy)
                        for i, j, confidence, strategy in component_edges
                    ),
                )
            )
        clusters.sort(key=lambda c: min(c.entity_ids))

        logger.info(
            f"Clustered {len(records)} {entity_type.value} records: "
            f"{len(edges)} edges, {len(clusters)} clusters"
        )
        return clusters


class ClusterStore:
    """
    Persists clusters while keeping pending clusters of one type disjoint.

    - An identical member set reuses the existing pending row
    - Pending rows overlapping a new cluster are superseded by it
    - Entities in a cluster that is currently merging are left alone
    """

    def __init__(self, db: Session, builder: Optional[ClusterBuilder] = None):
        self.db = db
        self.builder = builder

    def _open_clusters(self, entity_type: EntityKind) -> list[DuplicateCluster]:
        return (
            self.db.query(DuplicateCluster)
            .filter(
                DuplicateCluster.entity_type == entity_type,
                DuplicateCluster.status.in_([ClusterStatus.PENDING, ClusterStatus.MERGING]),
            )
            .all()
        )

    def save(self, clusters: Sequence[Cluster]) -> list[DuplicateCluster]:
        saved = []
        for cluster in clusters:
            members = set(cluster.entity_ids)
            open_rows = self._open_clusters(cluster.entity_type)

            if any(
                row.status == ClusterStatus.MERGING and members & set(row.entity_ids)
                for row in open_rows
            ):
                logger.warning(f"Skipping cluster {cluster.cluster_key}: members are being merged")
                continue

            existing = next((row for row in open_rows if row.cluster_key == cluster.cluster_key), None)
            if existing is not None:
                existing.confidence_score = cluster.confidence_score
                saved.append(existing)
                continue

            for row in open_rows:
                if members & set(row.entity_ids):
                    logger.info(f"Superseding pending cluster {row.id} ({row.cluster_key})")
                    self.db.delete(row)

            row = DuplicateCluster(
                id=cluster.cluster_id,
                cluster_key=cluster.cluster_key,
                entity_type=cluster.entity_type,
                entity_ids=sorted(members),
                cluster_size=len(members),
                confidence_score=cluster.confidence_score,
                status=ClusterStatus.PENDING,
            )
            self.db.add(row)
            self.db.flush()
            saved.append(row)

        self.db.commit()
        logger.info(f"Saved {len(saved)} clusters")
        return saved

    def cluster_entity_type(self, entity_type: EntityKind) -> list[DuplicateCluster]:
        """Build and persist clusters for every active entity of a type."""
        builder = self.builder or ClusterBuilder()
        merging = set()
        for row in self._open_clusters(entity_type):
            if row.status == ClusterStatus.MERGING:
                merging.update(row.entity_ids)
        records = [r for r in load_records(self.db, entity_type) if r.id not in merging]
        return self.save(builder.build(records))

    def list_pending(self, entity_type: Optional[EntityKind] = None) -> list[DuplicateCluster]:
        query = self.db.query(DuplicateCluster).filter(
            DuplicateCluster.status == ClusterStatus.PENDING
        )
        if entity_type is not None:
            query = query.filter(DuplicateCluster.entity_type == entity_type)
        return query.order_by(DuplicateCluster.confidence_score.desc(), DuplicateCluster.cluster_key).all()
