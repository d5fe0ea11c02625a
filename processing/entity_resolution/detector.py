"""
Duplicate Detector

Runs a set of matching strategies for one candidate against a pool of
existing entities and ranks the results.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Union

from sqlalchemy.orm import Session

from config.logging import logger
from config.settings import settings
from processing.errors import StrategyError, ValidationError
from processing.models import DetectionStatus, DuplicateDetection, EntityKind
from processing.entity_resolution.aliases import AliasRegistry
from processing.entity_resolution.matchers import (
    BaseMatcher,
    MatchConfig,
    MatchResult,
    MatchType,
    default_strategies,
    reliability_rank,
)
from processing.entity_resolution.records import RECORD_TYPES, EntityRecord, load_records

AUTO_MERGE = "auto_merge"
MANUAL_REVIEW = "manual_review"
NO_ACTION = "no_action"


@dataclass
class DetectionResult:
    """Outcome of checking one candidate against a pool."""
    candidate_id: str
    entity_type: EntityKind
    is_duplicate: bool = False
    matches: list[MatchResult] = field(default_factory=list)
    confidence: float = 0.0
    suggested_action: str = NO_ACTION
    strategy_errors: list[StrategyError] = field(default_factory=list)

    @property
    def best_match(self) -> Optional[MatchResult]:
        return self.matches[0] if self.matches else None

    def to_dict(self) -> dict:
        return {
            "candidate_id": self.candidate_id,
            "entity_type": self.entity_type.value,
            "is_duplicate": self.is_duplicate,
            "confidence": round(self.confidence, 4),
            "suggested_action": self.suggested_action,
            "matches": [m.to_dict() for m in self.matches],
            "strategy_errors": [e.to_dict()["error"] for e in self.strategy_errors],
        }


StrategySpec = Union[BaseMatcher, MatchType]


class DuplicateDetector:
    """
    Pure duplicate detection over in-memory records.

    Every requested strategy runs independently; one that raises is logged,
    recorded in ``strategy_errors`` and skipped. Results below the minimum
    match threshold are dropped, each matched entity keeps only its best
    result, and the list is ranked by confidence with the strategy
    reliability order breaking ties.

    Usage:
        detector = DuplicateDetector()
        result = detector.detect(candidate, pool)
        if result.is_duplicate:
            print(result.best_match)
    """

    def __init__(
        self,
        config: Optional[MatchConfig] = None,
        duplicate_threshold: Optional[float] = None,
        auto_merge_threshold: Optional[float] = None,
        alias_index: Optional[dict] = None,
    ):
        self.config = config or MatchConfig.from_settings()
        self.duplicate_threshold = (
            settings.DUPLICATE_THRESHOLD if duplicate_threshold is None else duplicate_threshold
        )
        self.auto_merge_threshold = (
            settings.AUTO_MERGE_THRESHOLD if auto_merge_threshold is None else auto_merge_threshold
        )
        self.alias_index = alias_index or {}

    def resolve_strategies(
        self,
        entity_type: EntityKind,
        strategies: Optional[Sequence[StrategySpec]] = None,
    ) -> list[BaseMatcher]:
        """Turn a strategy list (instances or MatchType values) into matchers."""
        available = default_strategies(entity_type, self.config, self.alias_index)
        if strategies is None:
            return available

        by_type = {s.match_type: s for s in available}
        resolved = []
        for requested in strategies:
            if isinstance(requested, BaseMatcher):
                resolved.append(requested)
            elif isinstance(requested, MatchType):
                if requested not in by_type:
                    raise ValidationError(
                        f"Strategy {requested.value} does not apply to {entity_type.value} records",
                        {"strategy": requested.value, "entity_type": entity_type.value},
                    )
                resolved.append(by_type[requested])
            else:
                raise ValidationError(f"Unknown strategy: {requested!r}")
        return resolved

    def _validate(self, candidate, pool: list) -> EntityKind:
        if not isinstance(candidate, tuple(RECORD_TYPES.values())):
            raise ValidationError(
                f"Candidate is not an entity record: {type(candidate).__name__}"
            )
        entity_type = candidate.entity_type
        for other in pool:
            if not isinstance(other, tuple(RECORD_TYPES.values())) or other.entity_type != entity_type:
                raise ValidationError(
                    f"Pool mixes entity types with {entity_type.value} candidate",
                    {"candidate_id": candidate.id, "pool_member": getattr(other, "id", None)},
                )
        return entity_type

    def detect(
        self,
        candidate: EntityRecord,
        pool: Iterable[EntityRecord],
        strategies: Optional[Sequence[StrategySpec]] = None,
    ) -> DetectionResult:
        """
        Check whether a candidate duplicates any pool member.

        Args:
            candidate: Record being checked
            pool: Existing records of the same type (inactive ones are ignored)
            strategies: Ordered strategies to run; defaults to all applicable

        Returns:
            DetectionResult; an empty pool is simply not a duplicate
        """
        pool = list(pool)
        entity_type = self._validate(candidate, pool)
        result = DetectionResult(candidate_id=candidate.id, entity_type=entity_type)

        resolved = self.resolve_strategies(entity_type, strategies)
        pool = [p for p in pool if p.id != candidate.id and p.is_active]
        if not pool:
            return result

        collected: list[MatchResult] = []
        for strategy in resolved:
            try:
                collected.extend(strategy.match_all(candidate, pool))
            except Exception as e:
                error = StrategyError(strategy.name, e)
                logger.warning(f"[STRATEGY FAILED] {strategy.name} on {candidate.id}: {e}")
                result.strategy_errors.append(error)

        best_per_entity: dict[str, MatchResult] = {}
        for match in collected:
            if match.confidence < self.config.minimum_match_threshold:
                continue
            current = best_per_entity.get(match.matched_id)
            if current is None or self._rank_key(match) < self._rank_key(current):
                best_per_entity[match.matched_id] = match

        result.matches = sorted(best_per_entity.values(), key=self._rank_key)
        if result.matches:
            result.confidence = result.matches[0].confidence
            result.is_duplicate = result.confidence >= self.duplicate_threshold
            if result.confidence >= self.auto_merge_threshold:
                result.suggested_action = AUTO_MERGE
            elif result.is_duplicate:
                result.suggested_action = MANUAL_REVIEW

        logger.debug(
            f"Detection for {candidate.id}: {len(result.matches)} matches, "
            f"best={result.confidence:.2f}, duplicate={result.is_duplicate}"
        )
        return result

    def score_pair(
        self,
        first: EntityRecord,
        second: EntityRecord,
        strategies: Optional[Sequence[StrategySpec]] = None,
    ) -> Optional[MatchResult]:
        """Best match between two records, or None below the threshold."""
        return self.detect(first, [second], strategies).best_match

    @staticmethod
    def _rank_key(match: MatchResult) -> tuple:
        return (-match.confidence, reliability_rank(match.strategy), match.matched_id)


class DuplicateDetectionService:
    """
    Storage-backed detection: loads pools, records detected pairs.

    Detected pairs are stored once per unordered pair in
    ``duplicate_detections``; re-detection only raises the stored score.
    """

    def __init__(self, db: Session, detector: Optional[DuplicateDetector] = None):
        self.db = db
        if detector is None:
            detector = DuplicateDetector(alias_index=AliasRegistry(db).load_index())
        self.detector = detector

    def detect(
        self,
        candidate: EntityRecord,
        pool: Optional[Iterable[EntityRecord]] = None,
        strategies: Optional[Sequence[StrategySpec]] = None,
        record: bool = True,
    ) -> DetectionResult:
        """Detect against the given pool, or every active entity of the candidate's type."""
        if pool is None:
            pool = load_records(self.db, candidate.entity_type)
        result = self.detector.detect(candidate, pool, strategies)
        if record and result.is_duplicate:
            for match in result.matches:
                if match.confidence >= self.detector.duplicate_threshold:
                    self.record_detection(result.entity_type, match)
            self.db.commit()
        return result

    def record_detection(self, entity_type: EntityKind, match: MatchResult) -> DuplicateDetection:
        """Upsert one detected pair (ids stored in sorted order)."""
        id_1, id_2 = sorted([match.candidate_id, match.matched_id])
        row = (
            self.db.query(DuplicateDetection)
            .filter(
                DuplicateDetection.entity_type == entity_type,
                DuplicateDetection.entity_id_1 == id_1,
                DuplicateDetection.entity_id_2 == id_2,
            )
            .first()
        )
        if row is None:
            row = DuplicateDetection(
                entity_type=entity_type,
                entity_id_1=id_1,
                entity_id_2=id_2,
                similarity_score=match.confidence,
                confidence_level=match.confidence,
                detection_strategy=match.strategy.value,
                similarity_factors=dict(match.details),
                status=DetectionStatus.PENDING,
            )
            self.db.add(row)
        elif match.confidence > row.confidence_level:
            row.similarity_score = match.confidence
            row.confidence_level = match.confidence
            row.detection_strategy = match.strategy.value
            row.similarity_factors = dict(match.details)
        self.db.flush()
        return row

    def detect_batch(self, entity_type: EntityKind, batch_size: Optional[int] = None) -> dict:
        """
        Check every active entity of a type against the rest.

        Commits per chunk; a candidate that fails is counted, not fatal.
        """
        batch_size = batch_size or settings.BATCH_SIZE
        records = load_records(self.db, entity_type)
        stats = {"checked": 0, "duplicates": 0, "errors": 0}

        for start in range(0, len(records), batch_size):
            for candidate in records[start:start + batch_size]:
                try:
                    with self.db.begin_nested():
                        result = self.detector.detect(candidate, records)
                        if result.is_duplicate:
                            stats["duplicates"] += 1
                            for match in result.matches:
                                if match.confidence >= self.detector.duplicate_threshold:
                                    self.record_detection(entity_type, match)
                except Exception as e:
                    stats["errors"] += 1
                    logger.warning(f"Detection failed for {entity_type.value} {candidate.id}: {e}")
                stats["checked"] += 1
            self.db.commit()

        logger.info(
            f"Batch detection ({entity_type.value}): {stats['checked']} checked, "
            f"{stats['duplicates']} duplicates, {stats['errors']} errors"
        )
        return stats
