"""
Tests for the merge engine: master selection, conflict resolution, merge and unmerge.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from processing.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from processing.models import (
    ClusterStatus,
    Deal,
    DetectionStatus,
    DuplicateCluster,
    DuplicateDetection,
    EntityKind,
    FieldProvenance,
    MergeHistory,
    MergeType,
    ValidationStatus,
    utcnow,
)
from processing.entity_resolution.merge import (
    ConflictResolution,
    MergeEngine,
    MergeOptions,
    MergeStrategy,
    quality_scores,
    resolve_fields,
    select_master,
)


@pytest.fixture
def acme_cluster(db, acme_deals, make_cluster):
    # Only the later registration names the partner program
    db.get(Deal, "deal-2").attributes = {"partner_program": "CSP"}
    db.commit()
    return make_cluster(EntityKind.DEAL, ["deal-1", "deal-2"], confidence=0.9)


# ---------------------------------------------------------------------------
# Master selection and field resolution
# ---------------------------------------------------------------------------

def _deal(id, created_at=datetime(2024, 1, 1), **fields):
    fields.setdefault("deal_name", "Renewal")
    return Deal(id=id, created_at=created_at, **fields)


def test_highest_quality_prefers_complete_confident_records():
    sparse = _deal("a", ai_confidence_score=0.5)
    rich = _deal("b", customer_name="Acme", vendor_id="v-1", deal_value=100, ai_confidence_score=0.9,
                 validation_status=ValidationStatus.PASSED)

    master = select_master([sparse, rich], EntityKind.DEAL, MergeStrategy.KEEP_HIGHEST_QUALITY)

    assert master.id == "b"


def test_quality_tie_goes_to_lowest_id():
    rows = [_deal("b"), _deal("a")]

    scores = quality_scores(rows, EntityKind.DEAL)

    assert scores["a"] == scores["b"]
    assert select_master(rows, EntityKind.DEAL, MergeStrategy.KEEP_HIGHEST_QUALITY).id == "a"


def test_keep_newest_and_keep_first():
    old = _deal("b", created_at=datetime(2024, 1, 1), updated_at=datetime(2024, 3, 1))
    new = _deal("a", created_at=datetime(2024, 2, 1), updated_at=datetime(2024, 2, 1))

    assert select_master([old, new], EntityKind.DEAL, MergeStrategy.KEEP_NEWEST).id == "b"
    assert select_master([old, new], EntityKind.DEAL, MergeStrategy.KEEP_FIRST).id == "b"


def test_manual_strategy_requires_target():
    rows = [_deal("a"), _deal("b")]

    with pytest.raises(ValidationError):
        select_master(rows, EntityKind.DEAL, MergeStrategy.MANUAL)
    with pytest.raises(ValidationError):
        select_master(rows, EntityKind.DEAL, MergeStrategy.MANUAL, target_entity_id="c")
    assert select_master(rows, EntityKind.DEAL, MergeStrategy.MANUAL, target_entity_id="b").id == "b"


@pytest.fixture
def conflicting_pair():
    target = _deal(
        "t",
        customer_name="Acme",
        products=["a"],
        attributes={"x": 1},
        ai_confidence_score=0.5,
    )
    source = _deal(
        "s",
        customer_name="Acme Corporation",
        currency="USD",
        products=["b", "a"],
        attributes={"x": 2, "y": 3},
        ai_confidence_score=0.9,
        validation_status=ValidationStatus.PASSED,
    )
    return target, source


def test_merge_arrays_unions_lists_and_objects(conflicting_pair):
    target, source = conflicting_pair

    resolved, conflicts = resolve_fields(target, [source], EntityKind.DEAL, ConflictResolution.MERGE_ARRAYS)

    assert resolved["products"] == ["a", "b"]
    assert resolved["attributes"] == {"x": 1, "y": 3}
    assert resolved["customer_name"] == "Acme Corporation"
    assert {c.field_name for c in conflicts} == {"customer_name", "products", "attributes"}


def test_prefer_target_fills_only_empty_fields(conflicting_pair):
    target, source = conflicting_pair

    resolved, _ = resolve_fields(target, [source], EntityKind.DEAL, ConflictResolution.PREFER_TARGET)

    assert resolved["customer_name"] == "Acme"
    assert resolved["products"] == ["a"]
    assert resolved["attributes"] == {"x": 1}
    assert resolved["currency"] == "USD"


@pytest.mark.parametrize(
    "resolution",
    [
        ConflictResolution.PREFER_SOURCE,
        ConflictResolution.PREFER_HIGHEST_CONFIDENCE,
        ConflictResolution.PREFER_VALIDATED,
    ],
)
def test_source_preferring_policies(conflicting_pair, resolution):
    target, source = conflicting_pair

    resolved, _ = resolve_fields(target, [source], EntityKind.DEAL, resolution)

    assert resolved["customer_name"] == "Acme Corporation"
    assert resolved["products"] == ["b", "a"]


def test_overrides_win(conflicting_pair):
    target, source = conflicting_pair

    resolved, conflicts = resolve_fields(
        target, [source], EntityKind.DEAL, ConflictResolution.MERGE_ARRAYS,
        overrides={"customer_name": "ACME Holdings"},
    )

    assert resolved["customer_name"] == "ACME Holdings"
    assert next(c for c in conflicts if c.field_name == "customer_name").resolution == "override"


def test_merge_arrays_keeps_validated_scalars_over_failed_source():
    master = _deal(
        "m",
        deal_name="Acme renewal",
        deal_value=Decimal("99000.00"),
        ai_confidence_score=0.95,
        validation_status=ValidationStatus.PASSED,
    )
    draft = _deal(
        "s",
        deal_name="Acme renewal (draft, unverified OCR)",
        deal_value=Decimal("1000000.00"),
        products=["Azure"],
        ai_confidence_score=0.2,
        validation_status=ValidationStatus.FAILED,
    )

    for resolution in (ConflictResolution.MERGE_ARRAYS, ConflictResolution.PREFER_COMPLETE):
        resolved, _ = resolve_fields(master, [draft], EntityKind.DEAL, resolution)

        assert resolved["deal_name"] == "Acme renewal"
        assert resolved["deal_value"] == Decimal("99000.00")
        assert resolved["products"] == ["Azure"]


def test_merge_arrays_scalars_prefer_confident_member():
    target = _deal("t", deal_name="Renewal", ai_confidence_score=0.5)
    source = _deal("s", deal_name="Renewal FY25", ai_confidence_score=0.9)

    resolved, _ = resolve_fields(target, [source], EntityKind.DEAL, ConflictResolution.MERGE_ARRAYS)

    assert resolved["deal_name"] == "Renewal FY25"


def test_merge_arrays_scalars_fall_back_to_most_recent():
    target = _deal("t", deal_name="Renewal", ai_confidence_score=0.6, updated_at=datetime(2024, 1, 1))
    newer = _deal("s", deal_name="Renewal FY25", ai_confidence_score=0.5, updated_at=datetime(2024, 3, 1))
    older = _deal("s", deal_name="Renewal FY25", ai_confidence_score=0.5, updated_at=datetime(2023, 12, 1))
    same_time = _deal("s", deal_name="Renewal FY25", ai_confidence_score=0.5, updated_at=datetime(2024, 1, 1))

    def deal_name(source):
        resolved, _ = resolve_fields(target, [source], EntityKind.DEAL, ConflictResolution.MERGE_ARRAYS)
        return resolved["deal_name"]

    assert deal_name(newer) == "Renewal FY25"
    assert deal_name(older) == "Renewal"
    assert deal_name(same_time) == "Renewal"


def test_unknown_override_field_rejected():
    with pytest.raises(ValidationError):
        MergeOptions(field_overrides={"nope": 1}).validate(EntityKind.DEAL)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def test_merge_cluster(db, acme_cluster):
    result = MergeEngine(db).merge_cluster(acme_cluster.id, options=MergeOptions(merged_by="analyst"))

    assert result.success
    assert result.merged_entity_id == "deal-1"
    assert result.source_entity_ids == ["deal-2"]

    history = db.get(MergeHistory, result.merge_history_id)
    assert history.target_entity_id == "deal-1"
    assert history.source_entity_ids == ["deal-2"]
    assert history.merged_by == "analyst"
    assert history.merge_type == MergeType.MANUAL
    assert history.merged_data["before"]["deal_name"] == "Azure Migration for Acme"

    target = db.get(Deal, "deal-1")
    source = db.get(Deal, "deal-2")
    assert sorted(target.source_file_ids) == ["file-1", "file-2"]
    assert target.deal_name == "Azure Migration for Acme"
    assert target.customer_name == "Acme Corporation"
    assert target.attributes == {"partner_program": "CSP"}
    assert not source.is_active
    assert source.merged_into_id == "deal-1"

    cluster = db.get(DuplicateCluster, acme_cluster.id)
    assert cluster.status == ClusterStatus.MERGED
    assert cluster.master_entity_id == "deal-1"
    assert cluster.merge_history_id == history.id

    provenance = db.query(FieldProvenance).filter_by(entity_id="deal-1").one()
    assert provenance.field_name == "attributes"
    assert provenance.extraction_method == "merge"
    assert provenance.extracted_by == "analyst"


def test_second_merge_conflicts_without_new_history(db, acme_cluster):
    engine = MergeEngine(db)
    engine.merge_cluster(acme_cluster.id)

    with pytest.raises(ConflictError):
        engine.merge_cluster(acme_cluster.id)
    assert db.query(MergeHistory).count() == 1


def test_overlapping_cluster_with_retired_member_conflicts(db, acme_cluster, make_cluster):
    engine = MergeEngine(db)
    engine.merge_cluster(acme_cluster.id)
    other = make_cluster(EntityKind.DEAL, ["deal-2", "deal-3"], id="cluster-late")

    with pytest.raises(ConflictError):
        engine.merge_cluster(other.id)
    assert db.get(DuplicateCluster, "cluster-late").status == ClusterStatus.PENDING


def test_merge_unknown_cluster(db):
    with pytest.raises(NotFoundError):
        MergeEngine(db).merge_cluster("missing")


def test_merge_missing_member(db, acme_deals, make_cluster):
    cluster = make_cluster(EntityKind.DEAL, ["deal-1", "ghost"])

    with pytest.raises(NotFoundError):
        MergeEngine(db).merge_cluster(cluster.id)
    assert db.get(DuplicateCluster, cluster.id).status == ClusterStatus.PENDING


def test_cluster_claimed_by_another_caller(db, acme_cluster):
    acme_cluster.status = ClusterStatus.MERGING
    db.commit()

    with pytest.raises(ConflictError):
        MergeEngine(db).merge_cluster(acme_cluster.id)
    assert db.get(DuplicateCluster, acme_cluster.id).status == ClusterStatus.MERGING


def test_failed_merge_rolls_back(db, acme_cluster, monkeypatch):
    engine = MergeEngine(db)

    def fail(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(engine.provenance, "track_field", fail)

    with pytest.raises(PersistenceError) as exc_info:
        engine.merge_cluster(acme_cluster.id)

    assert exc_info.value.retryable
    assert db.query(MergeHistory).count() == 0
    assert db.get(DuplicateCluster, acme_cluster.id).status == ClusterStatus.PENDING
    assert db.get(Deal, "deal-2").is_active
    assert db.get(Deal, "deal-1").deal_name == "Azure Migration for Acme"
    assert db.get(Deal, "deal-1").source_file_ids == ["file-1"]


def test_manual_target(db, acme_cluster):
    result = MergeEngine(db).merge_cluster(acme_cluster.id, target_entity_id="deal-2")

    assert result.merged_entity_id == "deal-2"
    assert not db.get(Deal, "deal-1").is_active


def test_target_outside_cluster_rejected(db, acme_cluster):
    with pytest.raises(ValidationError):
        MergeEngine(db).merge_cluster(acme_cluster.id, target_entity_id="deal-3")
    assert db.get(DuplicateCluster, acme_cluster.id).status == ClusterStatus.PENDING


def test_invalid_override_releases_cluster(db, acme_cluster):
    options = MergeOptions(field_overrides={"not_a_field": "x"})

    with pytest.raises(ValidationError):
        MergeEngine(db).merge_cluster(acme_cluster.id, options=options)
    assert db.get(DuplicateCluster, acme_cluster.id).status == ClusterStatus.PENDING


def test_merge_resolves_pending_detections(db, acme_cluster):
    db.add(DuplicateDetection(
        entity_type=EntityKind.DEAL,
        entity_id_1="deal-1",
        entity_id_2="deal-2",
        similarity_score=0.9,
        confidence_level=0.9,
        detection_strategy="vendor_customer",
    ))
    db.commit()
    engine = MergeEngine(db)

    result = engine.merge_cluster(acme_cluster.id, options=MergeOptions(merged_by="analyst"))
    detection = db.query(DuplicateDetection).one()
    assert detection.status == DetectionStatus.AUTO_MERGED
    assert detection.resolved_by == "analyst"

    engine.unmerge(result.merge_history_id)
    detection = db.query(DuplicateDetection).one()
    assert detection.status == DetectionStatus.PENDING
    assert detection.resolved_at is None


def test_merge_entities(db, acme_deals, make_cluster):
    cluster = make_cluster(EntityKind.DEAL, ["deal-1", "deal-2"])

    result = MergeEngine(db).merge_entities(
        ["deal-2", "deal-1"], EntityKind.DEAL, options=MergeOptions(merged_by="analyst")
    )

    assert result.merged_entity_id == "deal-1"
    assert result.source_entity_ids == ["deal-2"]
    assert result.cluster_id is None
    history = db.get(MergeHistory, result.merge_history_id)
    assert history.cluster_id is None
    assert history.merged_by == "analyst"
    assert not db.get(Deal, "deal-2").is_active
    assert sorted(db.get(Deal, "deal-1").source_file_ids) == ["file-1", "file-2"]
    assert db.get(DuplicateCluster, cluster.id).status == ClusterStatus.PENDING


def test_merge_entities_keeps_validated_master_values(db, make_deal):
    make_deal(
        "m", "Acme renewal", deal_value=Decimal("99000.00"),
        ai_confidence_score=0.95, validation_status=ValidationStatus.PASSED,
    )
    make_deal(
        "s", "Acme renewal (draft, unverified OCR)", deal_value=Decimal("1000000.00"),
        ai_confidence_score=0.2, validation_status=ValidationStatus.FAILED,
    )

    result = MergeEngine(db).merge_entities(["m", "s"], EntityKind.DEAL)

    master = db.get(Deal, "m")
    assert result.merged_entity_id == "m"
    assert master.deal_name == "Acme renewal"
    assert master.deal_value == Decimal("99000.00")


def test_merge_entities_already_merged_conflicts(db, acme_deals):
    engine = MergeEngine(db)
    engine.merge_entities(["deal-1", "deal-2"], EntityKind.DEAL)

    with pytest.raises(ConflictError):
        engine.merge_entities(["deal-1", "deal-2"], EntityKind.DEAL)
    assert db.query(MergeHistory).count() == 1


def test_merge_entities_validation(db, acme_deals):
    engine = MergeEngine(db)

    with pytest.raises(ValidationError):
        engine.merge_entities(["deal-1", "deal-1"], EntityKind.DEAL)
    with pytest.raises(ValidationError):
        engine.merge_entities(["deal-1", "deal-2"], EntityKind.DEAL, target_entity_id="deal-3")
    with pytest.raises(NotFoundError):
        engine.merge_entities(["deal-1", "ghost"], EntityKind.DEAL)
    assert db.query(MergeHistory).count() == 0
    assert db.get(Deal, "deal-2").is_active


def test_merge_entities_rolls_back_on_failure(db, acme_deals, monkeypatch):
    engine = MergeEngine(db)

    def fail(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(engine.provenance, "track_field", fail)
    options = MergeOptions(field_overrides={"deal_name": "Acme Azure Migration"})

    with pytest.raises(PersistenceError):
        engine.merge_entities(["deal-1", "deal-2"], EntityKind.DEAL, options=options)

    assert db.query(MergeHistory).count() == 0
    assert db.get(Deal, "deal-1").deal_name == "Azure Migration for Acme"
    assert db.get(Deal, "deal-2").is_active


def test_unmerge_direct_merge(db, acme_deals):
    engine = MergeEngine(db)
    merged = engine.merge_entities(["deal-1", "deal-2"], EntityKind.DEAL)

    result = engine.unmerge(merged.merge_history_id)

    assert result.restored_entity_ids == ["deal-2"]
    assert db.get(Deal, "deal-2").is_active


# ---------------------------------------------------------------------------
# Unmerge
# ---------------------------------------------------------------------------

def test_unmerge_restores_sources(db, acme_cluster):
    engine = MergeEngine(db)
    merged = engine.merge_cluster(acme_cluster.id)

    result = engine.unmerge(merged.merge_history_id, reason="different projects", unmerged_by="analyst")

    assert result.restored_entity_ids == ["deal-2"]
    source = db.get(Deal, "deal-2")
    assert source.is_active
    assert source.merged_into_id is None

    history = db.get(MergeHistory, merged.merge_history_id)
    assert history.unmerged
    assert history.unmerge_reason == "different projects"
    assert history.unmerged_by == "analyst"
    assert history.unmerged_at is not None
    assert db.query(MergeHistory).count() == 1

    assert db.get(DuplicateCluster, acme_cluster.id).status == ClusterStatus.PENDING
    # Target keeps the merged values
    assert db.get(Deal, "deal-1").attributes == {"partner_program": "CSP"}


def test_unmerge_twice_conflicts(db, acme_cluster):
    engine = MergeEngine(db)
    merged = engine.merge_cluster(acme_cluster.id)
    engine.unmerge(merged.merge_history_id)

    with pytest.raises(ConflictError):
        engine.unmerge(merged.merge_history_id)


def test_unmerge_unknown_history(db):
    with pytest.raises(NotFoundError):
        MergeEngine(db).unmerge("missing")


def test_unmerge_outside_window(db, acme_cluster):
    engine = MergeEngine(db)
    merged = engine.merge_cluster(acme_cluster.id)
    history = db.get(MergeHistory, merged.merge_history_id)
    history.created_at = utcnow() - timedelta(hours=25)
    db.commit()

    with pytest.raises(ConflictError):
        engine.unmerge(merged.merge_history_id)
    assert not db.get(Deal, "deal-2").is_active


def test_merge_unmerge_merge_round_trip(db, acme_cluster):
    engine = MergeEngine(db)

    first = engine.merge_cluster(acme_cluster.id)
    engine.unmerge(first.merge_history_id)
    second = engine.merge_cluster(acme_cluster.id)

    assert second.merged_entity_id == first.merged_entity_id
    assert second.source_entity_ids == first.source_entity_ids
    histories = db.query(MergeHistory).all()
    assert len(histories) == 2
    assert sorted(h.unmerged for h in histories) == [False, True]


# ---------------------------------------------------------------------------
# Preview and batch
# ---------------------------------------------------------------------------

def test_preview_writes_nothing(db, acme_deals):
    preview = MergeEngine(db).preview_merge(["deal-2", "deal-1"], EntityKind.DEAL)

    assert preview.suggested_master_id == "deal-1"
    assert preview.entity_ids == ["deal-1", "deal-2"]
    assert preview.quality_scores["deal-1"] > preview.quality_scores["deal-2"]
    assert "deal_name" in {c.field_name for c in preview.conflicts}
    assert preview.confidence >= 0.8
    assert preview.warnings == []
    assert db.query(MergeHistory).count() == 0
    assert db.get(Deal, "deal-2").is_active


def test_preview_warns_on_weak_match(db, acme_deals):
    preview = MergeEngine(db).preview_merge(["deal-1", "deal-3"], EntityKind.DEAL)

    assert any("Low match confidence" in w for w in preview.warnings)


def test_preview_needs_two_entities(db, acme_deals):
    with pytest.raises(ValidationError):
        MergeEngine(db).preview_merge(["deal-1"], EntityKind.DEAL)


def test_auto_merge_high_confidence(db, acme_deals, make_cluster):
    make_cluster(EntityKind.DEAL, ["deal-1", "deal-2"], confidence=0.97)
    make_cluster(EntityKind.DEAL, ["deal-3", "ghost"], confidence=0.99)
    make_cluster(EntityKind.DEAL, ["deal-3", "deal-4"], confidence=0.5)

    batch = MergeEngine(db).auto_merge_high_confidence(threshold=0.95, merged_by="nightly")

    assert (batch.attempted, batch.merged, batch.failed) == (2, 1, 1)
    assert batch.results[0]["cluster_id"] == "cluster-deal-3-ghost"
    assert batch.results[0]["error"]["code"] == "NOT_FOUND"
    assert batch.results[1]["success"]

    history = db.query(MergeHistory).one()
    assert history.merge_type == MergeType.AUTOMATIC
    assert history.merged_by == "nightly"
    assert db.get(DuplicateCluster, "cluster-deal-3-ghost").status == ClusterStatus.PENDING


def test_auto_merge_dry_run(db, acme_deals, make_cluster):
    make_cluster(EntityKind.DEAL, ["deal-1", "deal-2"], confidence=0.97)

    batch = MergeEngine(db).auto_merge_high_confidence(threshold=0.95, dry_run=True)

    assert batch.dry_run
    assert (batch.attempted, batch.merged) == (1, 0)
    assert db.query(MergeHistory).count() == 0
    assert db.get(Deal, "deal-2").is_active
