"""
Tests for duplicate detection over in-memory records and the storage-backed service.
"""

import pytest

from processing.errors import ValidationError
from processing.models import DetectionStatus, DuplicateDetection, EntityKind
from processing.entity_resolution.detector import (
    AUTO_MERGE,
    MANUAL_REVIEW,
    NO_ACTION,
    DuplicateDetectionService,
    DuplicateDetector,
)
from processing.entity_resolution.matchers import BaseMatcher, CombinedMatcher, MatchType
from processing.entity_resolution.records import DealRecord, VendorRecord, load_records


class FixedMatcher(BaseMatcher):
    """Returns preset confidences keyed by the other record's id."""

    def __init__(self, match_type, scores):
        super().__init__()
        self.match_type = match_type
        self.scores = scores

    def score(self, candidate, other):
        confidence = self.scores.get(other.id)
        if confidence is None:
            return None
        return self._result(candidate, other, confidence)


class ExplodingMatcher(BaseMatcher):
    match_type = MatchType.PRODUCT

    def score(self, candidate, other):
        raise RuntimeError("boom")


ACME_1 = DealRecord("deal-1", "Azure Migration for Acme", customer_name="Acme Corporation", vendor_id="vendor-ms")
ACME_2 = DealRecord("deal-2", "Microsoft Azure Cloud Migration", customer_name="Acme Corp", vendor_id="vendor-ms")
GLOBEX = DealRecord("deal-3", "AWS Expansion Initiative", customer_name="Globex Corporation")


def test_same_customer_and_vendor_is_duplicate():
    result = DuplicateDetector().detect(ACME_1, [ACME_2, GLOBEX])

    assert result.is_duplicate
    assert result.best_match.matched_id == "deal-2"
    assert result.confidence >= 0.8
    assert "deal-3" not in [m.matched_id for m in result.matches]


def test_empty_pool_is_not_duplicate():
    result = DuplicateDetector().detect(ACME_1, [])

    assert not result.is_duplicate
    assert result.matches == []
    assert result.suggested_action == NO_ACTION


def test_candidate_and_inactive_records_are_skipped():
    retired = DealRecord("deal-9", ACME_2.deal_name, customer_name="Acme Corp", vendor_id="vendor-ms", is_active=False)

    result = DuplicateDetector().detect(ACME_1, [ACME_1, retired])

    assert result.matches == []


def test_mixed_entity_types_rejected():
    with pytest.raises(ValidationError):
        DuplicateDetector().detect(ACME_1, [VendorRecord("vendor-ms", "Microsoft")])


def test_non_record_candidate_rejected():
    with pytest.raises(ValidationError):
        DuplicateDetector().detect({"id": "deal-1"}, [ACME_2])


def test_strategy_not_applicable_to_type_rejected():
    with pytest.raises(ValidationError):
        DuplicateDetector().detect(VendorRecord("a", "Acme"), [], strategies=[MatchType.VENDOR_CUSTOMER])
    with pytest.raises(ValidationError):
        DuplicateDetector().detect(
            VendorRecord("a", "Acme"), [VendorRecord("b", "Acme", is_active=False)],
            strategies=[MatchType.VENDOR_CUSTOMER],
        )


def test_empty_pool_with_valid_strategies_is_not_duplicate():
    result = DuplicateDetector().detect(ACME_1, [ACME_1], strategies=[MatchType.VENDOR_CUSTOMER])

    assert not result.is_duplicate
    assert result.matches == []


def test_failing_strategy_is_isolated():
    candidate = VendorRecord("c", "Contoso")
    pool = [VendorRecord("a", "Contoso Inc")]

    result = DuplicateDetector().detect(candidate, pool, strategies=[ExplodingMatcher(), MatchType.EXACT_NAME])

    assert result.is_duplicate
    assert result.best_match.strategy == MatchType.EXACT_NAME
    assert len(result.strategy_errors) == 1
    assert result.strategy_errors[0].details == {"strategy": "product", "cause": "RuntimeError"}


def test_ties_broken_by_reliability():
    candidate = VendorRecord("c", "Candidate")
    pool = [VendorRecord("a", "A"), VendorRecord("b", "B")]
    strategies = [
        FixedMatcher(MatchType.COMBINED, {"a": 0.9}),
        FixedMatcher(MatchType.FUZZY_NAME, {"b": 0.9}),
    ]

    result = DuplicateDetector().detect(candidate, pool, strategies=strategies)

    assert [m.matched_id for m in result.matches] == ["b", "a"]


def test_one_result_per_matched_entity():
    candidate = VendorRecord("c", "Candidate")
    strategies = [
        FixedMatcher(MatchType.COMBINED, {"a": 0.9}),
        FixedMatcher(MatchType.EXACT_NAME, {"a": 0.9}),
        FixedMatcher(MatchType.PRODUCT, {"a": 0.6}),
    ]

    result = DuplicateDetector().detect(candidate, [VendorRecord("a", "A")], strategies=strategies)

    assert len(result.matches) == 1
    assert result.best_match.strategy == MatchType.EXACT_NAME


def test_results_below_minimum_threshold_dropped():
    candidate = VendorRecord("c", "Candidate")
    strategies = [FixedMatcher(MatchType.COMBINED, {"a": 0.2})]

    result = DuplicateDetector().detect(candidate, [VendorRecord("a", "A")], strategies=strategies)

    assert result.matches == []


@pytest.mark.parametrize(
    "confidence, is_duplicate, action",
    [(0.97, True, AUTO_MERGE), (0.85, True, MANUAL_REVIEW), (0.5, False, NO_ACTION)],
)
def test_suggested_action(confidence, is_duplicate, action):
    detector = DuplicateDetector(duplicate_threshold=0.8, auto_merge_threshold=0.95)
    strategies = [FixedMatcher(MatchType.FUZZY_NAME, {"a": confidence})]

    result = detector.detect(VendorRecord("c", "C"), [VendorRecord("a", "A")], strategies=strategies)

    assert result.is_duplicate is is_duplicate
    assert result.suggested_action == action
    assert result.to_dict()["matches"][0]["matched_entity_id"] == "a"


def test_score_pair():
    detector = DuplicateDetector()

    assert detector.score_pair(ACME_1, ACME_2).matched_id == "deal-2"
    assert detector.score_pair(ACME_1, GLOBEX) is None


def test_service_records_detected_pair_once(db, acme_deals):
    service = DuplicateDetectionService(db)
    candidate = load_records(db, EntityKind.DEAL, ids=["deal-2"])[0]

    first = service.detect(candidate)
    second = service.detect(candidate)

    assert first.is_duplicate and second.is_duplicate
    rows = db.query(DuplicateDetection).all()
    assert len(rows) == 1
    assert (rows[0].entity_id_1, rows[0].entity_id_2) == ("deal-1", "deal-2")
    assert rows[0].status == DetectionStatus.PENDING


def test_service_record_false_skips_storage(db, acme_deals):
    service = DuplicateDetectionService(db)
    candidate = load_records(db, EntityKind.DEAL, ids=["deal-1"])[0]

    service.detect(candidate, record=False)

    assert db.query(DuplicateDetection).count() == 0


def test_detect_batch(db, acme_deals):
    stats = DuplicateDetectionService(db).detect_batch(EntityKind.DEAL, batch_size=2)

    assert stats == {"checked": 3, "duplicates": 2, "errors": 0}
    assert db.query(DuplicateDetection).count() == 1


def test_stored_vendor_keywords_feed_combined_score(db, make_vendor):
    make_vendor("vendor-a", "Contoso", attributes={"keywords": ["Dynamics 365"]})
    make_vendor("vendor-b", "Contoso Ltd", product_keywords=["Dynamics 365"])

    first, second = load_records(db, EntityKind.VENDOR)

    assert first.keywords == ("Dynamics 365",)
    assert CombinedMatcher().factors(first, second)["keyword"] == 1.0
