"""
Merge Engine

Collapses a duplicate cluster into one canonical record:

1. Claim the cluster (pending -> merging) with a compare-and-set
2. Choose the master record
3. In one transaction: resolve field conflicts, update the master, write
   the merge history row, retire the sources, resolve their pending
   detections, mark the cluster merged
4. On any failure roll everything back and return the cluster to pending

Unmerge flags the history row and reactivates the sources; history rows
are never deleted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from config.logging import logger
from config.settings import settings
from processing.errors import (
    ConflictError,
    DomainError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from processing.models import (
    ENTITY_MODELS,
    ClusterStatus,
    DetectionStatus,
    DuplicateCluster,
    DuplicateDetection,
    EntityKind,
    MergeHistory,
    MergeType,
    ValidationStatus,
    utcnow,
)
from processing.provenance import ProvenanceTracker, serialize_value
from processing.entity_resolution.detector import DuplicateDetector
from processing.entity_resolution.matchers import normalize_name
from processing.entity_resolution.records import ENTITY_FIELDS, REQUIRED_FIELDS, record_from_model


class MergeStrategy(Enum):
    """How the master record is chosen."""
    KEEP_HIGHEST_QUALITY = "keep_highest_quality"
    KEEP_NEWEST = "keep_newest"
    KEEP_FIRST = "keep_first"
    WEIGHTED = "weighted"
    MANUAL = "manual"


class ConflictResolution(Enum):
    """How differing field values across members are reconciled."""
    PREFER_TARGET = "prefer_target"
    PREFER_SOURCE = "prefer_source"
    PREFER_COMPLETE = "prefer_complete"
    PREFER_HIGHEST_CONFIDENCE = "prefer_highest_confidence"
    PREFER_VALIDATED = "prefer_validated"
    MERGE_ARRAYS = "merge_arrays"
    MANUAL = "manual"


# Quality score weights
COMPLETENESS_WEIGHT = 0.4
CONFIDENCE_WEIGHT = 0.3
VALIDATION_WEIGHT = 0.2
RECENCY_WEIGHT = 0.1

VALIDATION_SCORES = {
    ValidationStatus.PASSED: 1.0,
    ValidationStatus.FAILED: 0.0,
    ValidationStatus.PENDING: 0.5,
}


@dataclass
class MergeOptions:
    merge_strategy: MergeStrategy = MergeStrategy.KEEP_HIGHEST_QUALITY
    conflict_resolution: ConflictResolution = ConflictResolution.MERGE_ARRAYS
    merged_by: str = "system"
    merge_type: MergeType = MergeType.MANUAL
    # field name -> value, applied whatever the conflict policy
    field_overrides: dict = field(default_factory=dict)
    notes: Optional[str] = None

    def validate(self, entity_type: Optional[EntityKind] = None):
        if not isinstance(self.merge_strategy, MergeStrategy):
            raise ValidationError(f"Unknown merge strategy: {self.merge_strategy!r}")
        if not isinstance(self.conflict_resolution, ConflictResolution):
            raise ValidationError(f"Unknown conflict resolution: {self.conflict_resolution!r}")
        if not isinstance(self.merge_type, MergeType):
            raise ValidationError(f"Unknown merge type: {self.merge_type!r}")
        if not self.merged_by or not str(self.merged_by).strip():
            raise ValidationError("merged_by is required")
        if entity_type is not None:
            unknown = set(self.field_overrides) - set(ENTITY_FIELDS[entity_type])
            if unknown:
                raise ValidationError(
                    f"Unknown fields for {entity_type.value}: {sorted(unknown)}",
                    {"fields": sorted(unknown)},
                )


@dataclass(frozen=True)
class FieldConflict:
    field_name: str
    # (entity_id, value) per member holding a non-empty value
    values: tuple
    resolved_value: Any
    resolution: str

    def to_dict(self) -> dict:
        return {
            "field": self.field_name,
            "values": {entity_id: serialize_value(v) for entity_id, v in self.values},
            "resolved_value": serialize_value(self.resolved_value),
            "resolution": self.resolution,
        }


@dataclass
class MergeResult:
    success: bool
    merged_entity_id: str
    source_entity_ids: list[str]
    merge_history_id: str
    cluster_id: Optional[str] = None
    conflicts: list[FieldConflict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "merged_entity_id": self.merged_entity_id,
            "source_entity_ids": self.source_entity_ids,
            "merge_history_id": self.merge_history_id,
            "cluster_id": self.cluster_id,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


@dataclass
class UnmergeResult:
    success: bool
    merge_history_id: str
    target_entity_id: str
    restored_entity_ids: list[str]


@dataclass
class MergePreview:
    entity_type: EntityKind
    entity_ids: list[str]
    suggested_master_id: str
    quality_scores: dict[str, float]
    conflicts: list[FieldConflict]
    confidence: float
    warnings: list[str] = field(default_factory=list)


@dataclass
class BatchMergeResult:
    dry_run: bool
    attempted: int = 0
    merged: int = 0
    failed: int = 0
    results: list[dict] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Master selection and field resolution (no I/O)
# ---------------------------------------------------------------------------

def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


def completeness(row, entity_type: EntityKind) -> float:
    required = REQUIRED_FIELDS[entity_type]
    filled = sum(1 for name in required if not _is_empty(getattr(row, name, None)))
    return filled / len(required)


def quality_scores(rows: list, entity_type: EntityKind) -> dict[str, float]:
    """
    Quality per member: 0.4 completeness + 0.3 extraction confidence
    + 0.2 validation + 0.1 relative recency.

    Recency places each member's created_at between the oldest (0.0) and
    newest (1.0) member, so scores do not drift with wall-clock time.
    Rounded to 6 places so float noise cannot break ties.
    """
    created = [r.created_at for r in rows if r.created_at is not None]
    oldest = min(created) if created else None
    span = (max(created) - oldest).total_seconds() if created else 0.0

    scores = {}
    for row in rows:
        if span > 0 and row.created_at is not None:
            recency = (row.created_at - oldest).total_seconds() / span
        else:
            recency = 1.0
        confidence = min(1.0, max(0.0, float(row.ai_confidence_score or 0.0)))
        validation = VALIDATION_SCORES.get(row.validation_status, 0.5)
        scores[row.id] = round(
            COMPLETENESS_WEIGHT * completeness(row, entity_type)
            + CONFIDENCE_WEIGHT * confidence
            + VALIDATION_WEIGHT * validation
            + RECENCY_WEIGHT * recency,
            6,
        )
    return scores


def select_master(
    rows: list,
    entity_type: EntityKind,
    strategy: MergeStrategy,
    target_entity_id: Optional[str] = None,
):
    """Pick the surviving record. Every tie goes to the lowest id."""
    rows = sorted(rows, key=lambda r: r.id)
    if target_entity_id is not None:
        for row in rows:
            if row.id == target_entity_id:
                return row
        raise ValidationError(
            f"Target {target_entity_id} is not a member of the cluster",
            {"target_entity_id": target_entity_id},
        )
    if strategy == MergeStrategy.MANUAL:
        raise ValidationError("MANUAL merge strategy requires a target entity id")

    if strategy in (MergeStrategy.KEEP_HIGHEST_QUALITY, MergeStrategy.WEIGHTED):
        scores = quality_scores(rows, entity_type)
        return min(rows, key=lambda r: (-scores[r.id], r.id))

    if strategy == MergeStrategy.KEEP_NEWEST:
        stamp = lambda r: r.updated_at or r.created_at
        latest = max(stamp(r) for r in rows)
        return next(r for r in rows if stamp(r) == latest)

    # KEEP_FIRST
    earliest = min(r.created_at for r in rows)
    return next(r for r in rows if r.created_at == earliest)


def _union(lists) -> list:
    """Order-preserving union of list values."""
    merged, seen = [], set()
    for values in lists:
        for value in values or []:
            key = serialize_value(value)
            if key not in seen:
                seen.add(key)
                merged.append(value)
    return merged


def _best_value(candidates: list):
    """
    Validated members first, then the most confident member if it clears
    MERGE_CONFIDENCE_THRESHOLD, then the most recently updated member.
    Ties keep candidate order, so the target wins them.
    """
    pool = [c for c in candidates if c[0].validation_status == ValidationStatus.PASSED] or candidates
    if len(pool) == 1:
        return pool[0][1]

    confidence = lambda c: float(c[1][0].ai_confidence_score or 0.0)
    best = max(enumerate(pool), key=lambda c: (confidence(c), -c[0]))
    if confidence(best) >= settings.MERGE_CONFIDENCE_THRESHOLD:
        return best[1][1]

    stamp = lambda c: c[1][0].updated_at or c[1][0].created_at or datetime.min
    return max(enumerate(pool), key=lambda c: (stamp(c), -c[0]))[1][1]


def _pick_scalar(candidates: list, target, resolution: ConflictResolution):
    """
    candidates: (row, value) for members with a non-empty value, target first.
    """
    if resolution == ConflictResolution.PREFER_SOURCE:
        sources = [c for c in candidates if c[0] is not target]
        return (sources or candidates)[0][1]
    if resolution in (ConflictResolution.PREFER_COMPLETE, ConflictResolution.MERGE_ARRAYS):
        return _best_value(candidates)
    if resolution == ConflictResolution.PREFER_HIGHEST_CONFIDENCE:
        return max(
            enumerate(candidates),
            key=lambda c: (float(c[1][0].ai_confidence_score or 0.0), -c[0]),
        )[1][1]
    if resolution == ConflictResolution.PREFER_VALIDATED:
        validated = [c for c in candidates if c[0].validation_status == ValidationStatus.PASSED]
        return (validated or candidates)[0][1]
    # PREFER_TARGET and MANUAL: target value, filled from others when empty
    return candidates[0][1]


def resolve_fields(
    target,
    sources: list,
    entity_type: EntityKind,
    resolution: ConflictResolution,
    overrides: Optional[dict] = None,
) -> tuple[dict, list[FieldConflict]]:
    """
    Resolve every business field across the members.

    Semantics per field type:
    - scalar: chosen by the policy; an empty target is always filled
    - array: unioned under MERGE_ARRAYS, otherwise treated like a scalar
    - object: shallow-merged under MERGE_ARRAYS and PREFER_COMPLETE with the
      target's keys winning, otherwise treated like a scalar
    - overrides win over every policy

    source_file_ids is not a business field; the caller always unions it.
    """
    overrides = overrides or {}
    members = [target] + sorted(sources, key=lambda r: r.id)
    resolved: dict[str, Any] = {}
    conflicts: list[FieldConflict] = []

    for name in ENTITY_FIELDS[entity_type]:
        if name == "normalized_name":
            continue
        candidates = [(row, getattr(row, name)) for row in members if not _is_empty(getattr(row, name))]
        distinct = {serialize_value(v) for _, v in candidates}

        if name in overrides:
            value, how = overrides[name], "override"
        elif not candidates:
            continue
        elif isinstance(candidates[0][1], list) and resolution == ConflictResolution.MERGE_ARRAYS:
            value, how = _union(v for _, v in candidates), "union"
        elif isinstance(candidates[0][1], dict) and resolution in (
            ConflictResolution.MERGE_ARRAYS, ConflictResolution.PREFER_COMPLETE
        ):
            value = {}
            for _, v in reversed(candidates):
                value.update(v)
            how = "shallow_merge"
        else:
            value, how = _pick_scalar(candidates, target, resolution), resolution.value

        resolved[name] = value
        if len(distinct) > 1 or name in overrides:
            conflicts.append(
                FieldConflict(
                    field_name=name,
                    values=tuple((row.id, v) for row, v in candidates),
                    resolved_value=value,
                    resolution=how,
                )
            )

    if entity_type == EntityKind.VENDOR and "name" in resolved:
        resolved["normalized_name"] = normalize_name(resolved["name"])
    return resolved, conflicts


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class MergeEngine:
    """
    Transactional merge / unmerge over one session.

    Usage:
        engine = MergeEngine(db)
        result = engine.merge_cluster(cluster_id, options=MergeOptions(merged_by="analyst"))
        engine.unmerge(result.merge_history_id, reason="wrong vendor")
    """

    def __init__(self, db: Session, detector: Optional[DuplicateDetector] = None):
        self.db = db
        self.detector = detector
        self.provenance = ProvenanceTracker(db)

    def _claim_cluster(self, cluster_id: str) -> DuplicateCluster:
        cluster = self.db.get(DuplicateCluster, cluster_id)
        if cluster is None:
            raise NotFoundError("cluster", cluster_id)
        if cluster.status == ClusterStatus.MERGED:
            raise ConflictError(
                f"Cluster {cluster_id} is already merged",
                {"cluster_id": cluster_id, "merge_history_id": cluster.merge_history_id},
            )

        claimed = self.db.execute(
            update(DuplicateCluster)
            .where(
                DuplicateCluster.id == cluster_id,
                DuplicateCluster.status == ClusterStatus.PENDING,
            )
            .values(status=ClusterStatus.MERGING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        if claimed != 1:
            raise ConflictError(
                f"Cluster {cluster_id} is being merged by another caller",
                {"cluster_id": cluster_id},
            )
        return self.db.get(DuplicateCluster, cluster_id)

    def _release_cluster(self, cluster_id: str):
        """Return a claimed cluster to pending after a failed merge."""
        try:
            self.db.execute(
                update(DuplicateCluster)
                .where(
                    DuplicateCluster.id == cluster_id,
                    DuplicateCluster.status == ClusterStatus.MERGING,
                )
                .values(status=ClusterStatus.PENDING, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Could not release cluster {cluster_id}, it stays merging: {e}")
            raise PersistenceError(
                f"Failed to release cluster {cluster_id}", {"cluster_id": cluster_id}
            ) from e

    def _load_members(self, entity_type: EntityKind, entity_ids: list[str]) -> list:
        model = ENTITY_MODELS[entity_type]
        rows = (
            self.db.query(model)
            .filter(model.id.in_(list(entity_ids)))
            .with_for_update()
            .order_by(model.id)
            .all()
        )
        found = {r.id for r in rows}
        missing = sorted(set(entity_ids) - found)
        if missing:
            raise NotFoundError(entity_type.value, missing[0])
        return rows

    def _has_active_history(self, entity_type: EntityKind, target_id: str, source_ids: list[str]) -> Optional[str]:
        rows = (
            self.db.query(MergeHistory)
            .filter(
                MergeHistory.entity_type == entity_type,
                MergeHistory.target_entity_id == target_id,
                MergeHistory.unmerged.is_(False),
            )
            .all()
        )
        for row in rows:
            if sorted(row.source_entity_ids or []) == source_ids:
                return row.id
        return None

    def _merge_members(
        self,
        entity_type: EntityKind,
        entity_ids: list[str],
        target_entity_id: Optional[str],
        options: MergeOptions,
        cluster: Optional[DuplicateCluster] = None,
    ) -> MergeResult:
        """
        Transaction body shared by cluster and direct merges.

        Writes everything but does not commit; the caller commits or rolls back.
        """
        cluster_id = cluster.id if cluster is not None else None
        members = self._load_members(entity_type, entity_ids)
        inactive = [m.id for m in members if not m.is_active]
        if inactive:
            raise ConflictError(
                f"Entities already merged elsewhere: {', '.join(inactive)}",
                {"cluster_id": cluster_id, "entity_ids": inactive},
            )

        target = select_master(members, entity_type, options.merge_strategy, target_entity_id)
        sources = [m for m in members if m.id != target.id]
        source_ids = sorted(s.id for s in sources)

        existing = self._has_active_history(entity_type, target.id, source_ids)
        if existing:
            raise ConflictError(
                f"Entities already merged into {target.id}",
                {"cluster_id": cluster_id, "merge_history_id": existing},
            )

        resolved, conflicts = resolve_fields(
            target, sources, entity_type, options.conflict_resolution, options.field_overrides
        )
        before = {name: serialize_value(getattr(target, name)) for name in resolved}

        for name, value in resolved.items():
            setattr(target, name, value)
        target.source_file_ids = _union(m.source_file_ids for m in [target] + sources)

        changed = {
            name: value for name, value in resolved.items()
            if serialize_value(value) != before[name]
        }
        for name, value in changed.items():
            self.provenance.track_field(
                entity_type,
                target.id,
                name,
                value,
                extraction_method="merge",
                source_type="merge",
                confidence=cluster.confidence_score if cluster is not None else None,
                extraction_context={"cluster_id": cluster_id, "source_entity_ids": source_ids},
                extracted_by=options.merged_by,
            )

        detections = (
            self.db.query(DuplicateDetection)
            .filter(
                DuplicateDetection.entity_type == entity_type,
                DuplicateDetection.status == DetectionStatus.PENDING,
                or_(
                    DuplicateDetection.entity_id_1.in_(source_ids),
                    DuplicateDetection.entity_id_2.in_(source_ids),
                ),
            )
            .all()
        )

        history = MergeHistory(
            merge_type=options.merge_type,
            entity_type=entity_type,
            merge_strategy=options.merge_strategy.value,
            conflict_resolution=options.conflict_resolution.value,
            target_entity_id=target.id,
            source_entity_ids=source_ids,
            cluster_id=cluster_id,
            merged_data={
                "before": before,
                "after": {name: serialize_value(v) for name, v in resolved.items()},
                "source_file_ids": list(target.source_file_ids),
                "detection_ids": sorted(d.id for d in detections),
            },
            resolved_fields={c.field_name: c.to_dict() for c in conflicts},
            merged_by=options.merged_by,
            notes=options.notes,
        )
        self.db.add(history)
        self.db.flush()

        now = utcnow()
        for source in sources:
            source.is_active = False
            source.merged_into_id = target.id

        for detection in detections:
            detection.status = DetectionStatus.AUTO_MERGED
            detection.resolved_at = now
            detection.resolved_by = options.merged_by

        if cluster is not None:
            cluster.status = ClusterStatus.MERGED
            cluster.master_entity_id = target.id
            cluster.merge_history_id = history.id

        return MergeResult(
            success=True,
            merged_entity_id=target.id,
            source_entity_ids=source_ids,
            merge_history_id=history.id,
            cluster_id=cluster_id,
            conflicts=conflicts,
        )

    def merge_cluster(
        self,
        cluster_id: str,
        target_entity_id: Optional[str] = None,
        options: Optional[MergeOptions] = None,
    ) -> MergeResult:
        """
        Merge every member of a cluster into one master record.

        Args:
            cluster_id: Pending cluster to merge
            target_entity_id: Force the master record (manual override)
            options: Strategy, conflict policy and audit fields

        Returns:
            MergeResult with the surviving id and the history row id

        Raises:
            NotFoundError: cluster or member missing
            ConflictError: cluster merged or being merged, or the same
                partition already has an active history row
            PersistenceError: the transaction failed; the cluster is pending again
        """
        options = options or MergeOptions()
        options.validate()
        cluster = self._claim_cluster(cluster_id)
        entity_type = cluster.entity_type

        try:
            options.validate(entity_type)
            result = self._merge_members(
                entity_type, cluster.entity_ids, target_entity_id, options, cluster=cluster
            )
            self.db.commit()

        except DomainError:
            self.db.rollback()
            self._release_cluster(cluster_id)
            raise
        except Exception as e:
            logger.error(f"[MERGE FAILED] cluster {cluster_id}, rolling back: {e}")
            self.db.rollback()
            self._release_cluster(cluster_id)
            raise PersistenceError(
                f"Merge of cluster {cluster_id} failed and was rolled back",
                {"cluster_id": cluster_id, "cause": type(e).__name__},
            ) from e

        logger.info(
            f"[MERGE] {entity_type.value} cluster {cluster_id}: {len(result.source_entity_ids)} sources "
            f"-> {result.merged_entity_id} "
            f"({options.merge_strategy.value}/{options.conflict_resolution.value}, by {options.merged_by})"
        )
        return result

    def merge_entities(
        self,
        entity_ids: list[str],
        entity_type: EntityKind,
        target_entity_id: Optional[str] = None,
        options: Optional[MergeOptions] = None,
    ) -> MergeResult:
        """
        Merge an explicit set of entities that is not tied to a cluster.

        Same transaction and conflict rules as merge_cluster; the history
        row carries no cluster id.
        """
        options = options or MergeOptions()
        options.validate(entity_type)
        ids = sorted(set(entity_ids))
        if len(ids) < 2:
            raise ValidationError("A merge needs at least two entities", {"entity_ids": list(entity_ids)})

        try:
            result = self._merge_members(entity_type, ids, target_entity_id, options)
            self.db.commit()
        except DomainError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"[MERGE FAILED] {entity_type.value} {ids}, rolling back: {e}")
            self.db.rollback()
            raise PersistenceError(
                f"Merge of {entity_type.value} entities failed and was rolled back",
                {"entity_ids": ids, "cause": type(e).__name__},
            ) from e

        logger.info(
            f"[MERGE] {entity_type.value} {len(result.source_entity_ids)} sources -> {result.merged_entity_id} "
            f"({options.merge_strategy.value}/{options.conflict_resolution.value}, by {options.merged_by})"
        )
        return result

    def unmerge(
        self,
        merge_history_id: str,
        reason: Optional[str] = None,
        unmerged_by: str = "system",
    ) -> UnmergeResult:
        """
        Reverse a merge: reactivate the sources and flag the history row.

        The target keeps its merged field values; resolved detections go
        back to pending and the cluster can be merged again.
        """
        history = self.db.get(MergeHistory, merge_history_id)
        if history is None:
            raise NotFoundError("merge_history", merge_history_id)
        if history.unmerged:
            raise ConflictError(
                f"Merge {merge_history_id} was already unmerged",
                {"merge_history_id": merge_history_id, "unmerged_at": str(history.unmerged_at)},
            )
        if not history.can_unmerge:
            raise ConflictError(
                f"Merge {merge_history_id} cannot be reversed", {"merge_history_id": merge_history_id}
            )
        window = settings.UNMERGE_WINDOW_HOURS
        if window > 0 and utcnow() - history.created_at > timedelta(hours=window):
            raise ConflictError(
                f"Merge {merge_history_id} is older than the {window}h unmerge window",
                {"merge_history_id": merge_history_id},
            )

        try:
            model = ENTITY_MODELS[history.entity_type]
            sources = (
                self.db.query(model)
                .filter(model.id.in_(list(history.source_entity_ids)))
                .order_by(model.id)
                .all()
            )
            for source in sources:
                source.is_active = True
                source.merged_into_id = None

            history.unmerged = True
            history.unmerged_at = utcnow()
            history.unmerged_by = unmerged_by
            history.unmerge_reason = reason

            detection_ids = (history.merged_data or {}).get("detection_ids") or []
            if detection_ids:
                detections = (
                    self.db.query(DuplicateDetection)
                    .filter(
                        DuplicateDetection.id.in_(detection_ids),
                        DuplicateDetection.status == DetectionStatus.AUTO_MERGED,
                    )
                    .all()
                )
                for detection in detections:
                    detection.status = DetectionStatus.PENDING
                    detection.resolved_at = None
                    detection.resolved_by = None

            if history.cluster_id:
                cluster = self.db.get(DuplicateCluster, history.cluster_id)
                if cluster is not None:
                    cluster.status = ClusterStatus.PENDING
                    cluster.master_entity_id = None
                    cluster.merge_history_id = None

            self.db.commit()
        except DomainError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"[UNMERGE FAILED] {merge_history_id}, rolling back: {e}")
            self.db.rollback()
            raise PersistenceError(
                f"Unmerge of {merge_history_id} failed and was rolled back",
                {"merge_history_id": merge_history_id, "cause": type(e).__name__},
            ) from e

        restored = sorted(s.id for s in sources)
        logger.info(
            f"[UNMERGE] {merge_history_id}: restored {len(restored)} entities "
            f"from {history.target_entity_id} (reason: {reason or 'n/a'})"
        )
        return UnmergeResult(
            success=True,
            merge_history_id=merge_history_id,
            target_entity_id=history.target_entity_id,
            restored_entity_ids=restored,
        )

    def preview_merge(
        self,
        entity_ids: list[str],
        entity_type: EntityKind,
        options: Optional[MergeOptions] = None,
        target_entity_id: Optional[str] = None,
    ) -> MergePreview:
        """What merging these entities would do. Writes nothing."""
        options = options or MergeOptions()
        options.validate(entity_type)
        if len(set(entity_ids)) < 2:
            raise ValidationError("A merge needs at least two entities", {"entity_ids": entity_ids})

        model = ENTITY_MODELS[entity_type]
        rows = self.db.query(model).filter(model.id.in_(list(entity_ids))).order_by(model.id).all()
        missing = sorted(set(entity_ids) - {r.id for r in rows})
        if missing:
            raise NotFoundError(entity_type.value, missing[0])

        target = select_master(rows, entity_type, options.merge_strategy, target_entity_id)
        sources = [r for r in rows if r.id != target.id]
        _, conflicts = resolve_fields(
            target, sources, entity_type, options.conflict_resolution, options.field_overrides
        )

        warnings = []
        inactive = [r.id for r in rows if not r.is_active]
        if inactive:
            warnings.append(f"Already merged: {', '.join(inactive)}")
        if entity_type != EntityKind.VENDOR:
            vendors = {r.vendor_id for r in rows if r.vendor_id}
            if len(vendors) > 1:
                warnings.append(f"Members reference {len(vendors)} different vendors")

        detector = self.detector or DuplicateDetector()
        master_record = record_from_model(target)
        scores = []
        for source in sources:
            match = detector.score_pair(master_record, record_from_model(source))
            scores.append(match.confidence if match else 0.0)
        confidence = min(scores) if scores else 0.0
        if confidence < detector.duplicate_threshold:
            warnings.append(f"Low match confidence ({confidence:.2f})")

        return MergePreview(
            entity_type=entity_type,
            entity_ids=sorted(r.id for r in rows),
            suggested_master_id=target.id,
            quality_scores=quality_scores(rows, entity_type),
            conflicts=conflicts,
            confidence=confidence,
            warnings=warnings,
        )

    def auto_merge_high_confidence(
        self,
        threshold: Optional[float] = None,
        entity_type: Optional[EntityKind] = None,
        dry_run: bool = False,
        merged_by: str = "system",
    ) -> BatchMergeResult:
        """
        Merge every pending cluster at or above the confidence threshold.

        A failing cluster is reported as ``{success: False, error}`` and the
        batch carries on.
        """
        threshold = settings.AUTO_MERGE_THRESHOLD if threshold is None else threshold
        query = self.db.query(DuplicateCluster).filter(
            DuplicateCluster.status == ClusterStatus.PENDING,
            DuplicateCluster.confidence_score >= threshold,
        )
        if entity_type is not None:
            query = query.filter(DuplicateCluster.entity_type == entity_type)
        cluster_ids = [
            c.id for c in query.order_by(DuplicateCluster.confidence_score.desc(), DuplicateCluster.cluster_key)
        ]

        batch = BatchMergeResult(dry_run=dry_run)
        options = MergeOptions(merged_by=merged_by, merge_type=MergeType.AUTOMATIC)
        for cluster_id in cluster_ids:
            batch.attempted += 1
            if dry_run:
                batch.results.append({"cluster_id": cluster_id, "success": True, "dry_run": True})
                continue
            try:
                result = self.merge_cluster(cluster_id, options=options)
                batch.merged += 1
                batch.results.append({"cluster_id": cluster_id, **result.to_dict()})
            except DomainError as e:
                batch.failed += 1
                logger.warning(f"Auto-merge skipped cluster {cluster_id}: {e.message}")
                batch.results.append({"cluster_id": cluster_id, **e.to_dict()})

        logger.info(
            f"Auto-merge (>= {threshold:.2f}{', dry run' if dry_run else ''}): "
            f"{batch.attempted} clusters, {batch.merged} merged, {batch.failed} failed"
        )
        return batch
