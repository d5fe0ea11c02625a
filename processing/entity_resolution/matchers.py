"""
Entity matching strategies for resolution.

Every strategy implements the same scorer interface: ``score`` compares one
candidate against one other record, ``match`` returns the best result over a
pool. Strategies are pure: no database access, no shared mutable state.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Iterable, Optional

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from config.settings import settings
from processing.models import EntityKind
from processing.entity_resolution.records import EntityRecord


class MatchType(Enum):
    """Strategy that produced a match."""
    EXACT_NAME = "exact_name"            # Names identical after normalization
    ALIAS = "alias"                      # Known alias of the other vendor
    EMAIL_DOMAIN = "email_domain"        # Shared email domain
    CORRELATION_KEY = "correlation_key"  # Same derived cross-source key
    FUZZY_NAME = "fuzzy_name"            # Name similarity bands
    VENDOR_CUSTOMER = "vendor_customer"  # Same vendor, similar customer
    CUSTOMER_VALUE = "customer_value"    # Similar customer and deal value
    CUSTOMER_DATE = "customer_date"      # Similar customer and close date
    PRODUCT = "product"                  # Product / keyword overlap
    COMBINED = "combined"                # Weighted multi-factor score


# Most reliable first; used to break confidence ties
RELIABILITY_ORDER = [
    MatchType.EXACT_NAME,
    MatchType.ALIAS,
    MatchType.EMAIL_DOMAIN,
    MatchType.CORRELATION_KEY,
    MatchType.FUZZY_NAME,
    MatchType.VENDOR_CUSTOMER,
    MatchType.CUSTOMER_VALUE,
    MatchType.CUSTOMER_DATE,
    MatchType.PRODUCT,
    MatchType.COMBINED,
]


def reliability_rank(match_type: MatchType) -> int:
    return RELIABILITY_ORDER.index(match_type)


@dataclass(frozen=True)
class MatchConfig:
    """
    Static weights and thresholds shared by all strategies.

    Built once and never mutated, so detectors on different threads can
    share one instance.
    """
    minimum_match_threshold: float = 0.3
    # (minimum fuzzy score 0-100, confidence) from strongest to weakest
    fuzzy_bands: tuple = ((95, 0.98), (85, 0.85), (70, 0.70), (50, 0.50))
    product_fuzzy_threshold: int = 85
    alias_default_confidence: float = 0.95
    domain_confidence: float = 0.90
    correlation_key_confidence: float = 0.85

    name_weight: float = 0.40
    domain_weight: float = 0.25
    product_weight: float = 0.20
    keyword_weight: float = 0.10
    contact_weight: float = 0.05
    combined_cap: float = 0.95

    value_tolerance_percent: float = 10.0
    date_tolerance_days: int = 7

    @classmethod
    def from_settings(cls) -> "MatchConfig":
        return cls(
            minimum_match_threshold=settings.MINIMUM_MATCH_THRESHOLD,
            product_fuzzy_threshold=settings.FUZZY_MATCH_THRESHOLD,
            alias_default_confidence=settings.ALIAS_DEFAULT_CONFIDENCE,
            value_tolerance_percent=settings.VALUE_TOLERANCE_PERCENT,
            date_tolerance_days=settings.DATE_TOLERANCE_DAYS,
        )


@dataclass
class MatchResult:
    """Result of comparing a candidate with one existing entity."""
    candidate_id: str
    matched_id: str
    confidence: float
    strategy: MatchType
    details: dict = field(default_factory=dict)

    @property
    def is_match(self) -> bool:
        return self.confidence > 0

    def to_dict(self) -> dict:
        return {
            "candidate_id": self.candidate_id,
            "matched_entity_id": self.matched_id,
            "confidence": round(self.confidence, 4),
            "strategy": self.strategy.value,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"<MatchResult({self.candidate_id} ~ {self.matched_id}, {self.strategy.value}, conf={self.confidence:.2f})>"


# ---------------------------------------------------------------------------
# Normalization and similarity helpers
# ---------------------------------------------------------------------------

LEGAL_SUFFIX_PATTERN = re.compile(r"\s+(?:inc|llc|ltd|corp|corporation|company|co)$")
DOMAIN_PATTERN = re.compile(r"@([a-z0-9.-]+\.[a-z]{2,})$", re.IGNORECASE)


def normalize_name(name: Optional[str]) -> str:
    """
    Normalize a company or person name for comparison.

    - Casefold
    - Remove punctuation
    - Collapse whitespace
    - Strip trailing legal suffixes (repeatedly, "Foo Corp Inc" -> "foo")
    """
    if not name:
        return ""

    normalized = name.casefold()
    normalized = re.sub(r"[^\w\s]|_", "", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()

    while True:
        stripped = LEGAL_SUFFIX_PATTERN.sub("", normalized)
        if stripped == normalized:
            break
        normalized = stripped

    return normalized


def extract_domain(email: Optional[str]) -> Optional[str]:
    """Domain part of an email address, lowercased, or None."""
    if not email:
        return None
    match = DOMAIN_PATTERN.search(email.strip())
    return match.group(1).lower() if match else None


def normalize_domain(domain: str) -> str:
    domain = domain.strip().lower().lstrip("@")
    return domain[4:] if domain.startswith("www.") else domain


def declared_domains(record: EntityRecord) -> set[str]:
    return {normalize_domain(d) for d in getattr(record, "email_domains", ()) if d}


def known_domains(record: EntityRecord) -> set[str]:
    """Declared email domains plus the domains of any attached contact emails."""
    domains = declared_domains(record)
    for email in record.contact_emails:
        domain = extract_domain(email)
        if domain:
            domains.add(domain)
    return domains


def shared_domains(record1: EntityRecord, record2: EntityRecord) -> set[str]:
    """
    Domains one record is seen using that the other declares as its own.

    Contact-email domains alone are never compared with each other, so two
    vendors whose contacts share a webmail provider do not match.
    """
    return (known_domains(record1) & declared_domains(record2)) | (
        declared_domains(record1) & known_domains(record2)
    )


def name_similarity(name1: str, name2: str) -> float:
    """
    Fuzzy name score on a 0-100 scale.

    Averages rapidfuzz's token sort ratio (handles word reordering) with the
    normalized Levenshtein similarity coefficient scaled to 100.
    """
    if not name1 or not name2:
        return 0.0
    token_score = fuzz.token_sort_ratio(name1, name2)
    coefficient = Levenshtein.normalized_similarity(name1, name2)
    return (token_score + coefficient * 100) / 2


def text_similarity(text1: Optional[str], text2: Optional[str]) -> float:
    """Best of several rapidfuzz ratios on normalized text, on a 0-1 scale."""
    norm1 = normalize_name(text1)
    norm2 = normalize_name(text2)
    if not norm1 or not norm2:
        return 0.0
    if norm1 == norm2:
        return 1.0
    score = max(
        fuzz.ratio(norm1, norm2),
        fuzz.partial_ratio(norm1, norm2),
        fuzz.token_sort_ratio(norm1, norm2),
        fuzz.token_set_ratio(norm1, norm2),
    )
    return score / 100.0


def value_similarity(value1: Optional[float], value2: Optional[float], tolerance_percent: float) -> float:
    """
    Similarity of two deal values.

    Within the tolerance the score falls from 1.0 to 0.7; it reaches 0 at
    three times the tolerance.
    """
    if not value1 or not value2:
        return 0.0
    if value1 == value2:
        return 1.0

    average = (value1 + value2) / 2
    percent_diff = abs(value1 - value2) / average * 100

    if percent_diff <= tolerance_percent:
        return 1.0 - (percent_diff / tolerance_percent) * 0.3

    max_diff = tolerance_percent * 3
    if percent_diff > max_diff:
        return 0.0
    return 0.7 - ((percent_diff - tolerance_percent) / (max_diff - tolerance_percent)) * 0.7


def date_similarity(date1: Optional[date], date2: Optional[date], tolerance_days: int) -> float:
    """Same shape as value_similarity, reaching 0 at four times the tolerance."""
    if not date1 or not date2:
        return 0.0
    day_diff = abs((date1 - date2).days)
    if day_diff == 0:
        return 1.0
    if day_diff <= tolerance_days:
        return 1.0 - (day_diff / tolerance_days) * 0.3

    max_days = tolerance_days * 4
    if day_diff > max_days:
        return 0.0
    return 0.7 - ((day_diff - tolerance_days) / (max_days - tolerance_days)) * 0.7


def product_overlap(mentions: Iterable[str], keywords: Iterable[str], fuzzy_threshold: int = 85) -> tuple[int, int]:
    """
    Count mentions matching any keyword.

    A mention matches when it contains or is contained in a keyword, or when
    their fuzzy ratio reaches the threshold. Returns (match_count, mention_count).
    """
    normalized_mentions = [m for m in (normalize_name(x) for x in mentions) if m]
    normalized_keywords = [k for k in (normalize_name(x) for x in keywords) if k]
    if not normalized_mentions or not normalized_keywords:
        return 0, len(normalized_mentions)

    count = 0
    for mention in normalized_mentions:
        for keyword in normalized_keywords:
            if mention in keyword or keyword in mention:
                count += 1
                break
            if fuzz.ratio(mention, keyword) >= fuzzy_threshold:
                count += 1
                break
    return count, len(normalized_mentions)


def _product_terms(record: EntityRecord) -> tuple:
    if record.entity_type == EntityKind.DEAL:
        return tuple(record.products)
    if record.entity_type == EntityKind.VENDOR:
        return tuple(record.product_keywords)
    return ()


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class BaseMatcher:
    """
    Scorer interface shared by all strategies.

    Subclasses implement ``score``; ``match`` and ``match_all`` evaluate a
    whole pool.
    """

    match_type: MatchType
    entity_types: frozenset = frozenset(EntityKind)

    def __init__(self, config: Optional[MatchConfig] = None):
        self.config = config or MatchConfig()

    @property
    def name(self) -> str:
        return self.match_type.value

    def applies_to(self, entity_type: EntityKind) -> bool:
        return entity_type in self.entity_types

    def score(self, candidate: EntityRecord, other: EntityRecord) -> Optional[MatchResult]:
        raise NotImplementedError

    def match_all(self, candidate: EntityRecord, pool: Iterable[EntityRecord]) -> list[MatchResult]:
        """Score the candidate against every other pool member."""
        if not self.applies_to(candidate.entity_type):
            return []
        results = []
        for other in pool:
            if other.id == candidate.id:
                continue
            result = self.score(candidate, other)
            if result is not None and result.is_match:
                results.append(result)
        return results

    def match(self, candidate: EntityRecord, pool: Iterable[EntityRecord]) -> Optional[MatchResult]:
        """Best match in the pool, highest confidence first then lowest id."""
        results = self.match_all(candidate, pool)
        if not results:
            return None
        return min(results, key=lambda r: (-r.confidence, r.matched_id))

    def _result(self, candidate, other, confidence: float, **details) -> MatchResult:
        return MatchResult(
            candidate_id=candidate.id,
            matched_id=other.id,
            confidence=confidence,
            strategy=self.match_type,
            details=details,
        )


class ExactNameMatcher(BaseMatcher):
    """Names equal after normalization score 1.0."""

    match_type = MatchType.EXACT_NAME

    def score(self, candidate, other):
        normalized = normalize_name(candidate.display_name)
        if normalized and normalized == normalize_name(other.display_name):
            return self._result(candidate, other, 1.0, normalized_name=normalized)
        return None


class AliasMatcher(BaseMatcher):
    """
    Matches vendors through the persisted alias table.

    The alias index maps a normalized alias to ``(vendor_id, confidence)``
    pairs; it is loaded once by the caller (see AliasRegistry.load_index).
    """

    match_type = MatchType.ALIAS
    entity_types = frozenset([EntityKind.VENDOR])

    def __init__(self, alias_index: Optional[dict] = None, config: Optional[MatchConfig] = None):
        super().__init__(config)
        self.alias_index = alias_index or {}

    def _lookup(self, name: str, vendor_id: str) -> Optional[float]:
        for aliased_vendor_id, confidence in self.alias_index.get(normalize_name(name), ()):
            if aliased_vendor_id == vendor_id:
                return confidence if confidence is not None else self.config.alias_default_confidence
        return None

    def score(self, candidate, other):
        confidence = self._lookup(candidate.display_name, other.id)
        alias = candidate.display_name
        if confidence is None:
            # Symmetric: the other record may carry the alias of the candidate
            confidence = self._lookup(other.display_name, candidate.id)
            alias = other.display_name
        if confidence is None:
            return None
        return self._result(candidate, other, float(confidence), alias=alias)


class DomainMatcher(BaseMatcher):
    """Shared email domain between two vendors scores 0.90."""

    match_type = MatchType.EMAIL_DOMAIN
    entity_types = frozenset([EntityKind.VENDOR])

    def score(self, candidate, other):
        shared = shared_domains(candidate, other)
        if not shared:
            return None
        return self._result(
            candidate, other, self.config.domain_confidence, domains=sorted(shared)
        )


class CorrelationKeyMatcher(BaseMatcher):
    """Identical non-empty correlation keys."""

    match_type = MatchType.CORRELATION_KEY

    def score(self, candidate, other):
        if candidate.correlation_key and candidate.correlation_key == other.correlation_key:
            return self._result(
                candidate,
                other,
                self.config.correlation_key_confidence,
                correlation_key=candidate.correlation_key,
            )
        return None


class FuzzyNameMatcher(BaseMatcher):
    """
    Fuzzy name matching mapped into confidence bands.

    >= 95 -> 0.98, >= 85 -> 0.85, >= 70 -> 0.70, >= 50 -> 0.50, else no match.
    """

    match_type = MatchType.FUZZY_NAME

    def band(self, raw_score: float) -> Optional[float]:
        for minimum, confidence in self.config.fuzzy_bands:
            if raw_score >= minimum:
                return confidence
        return None

    def score(self, candidate, other):
        name1 = normalize_name(candidate.display_name)
        name2 = normalize_name(other.display_name)
        raw_score = name_similarity(name1, name2)
        confidence = self.band(raw_score)
        if confidence is None:
            return None
        return self._result(
            candidate, other, confidence, raw_score=round(raw_score, 2), matched_name=other.display_name
        )


class VendorCustomerMatcher(BaseMatcher):
    """Deals registered for the same vendor with a similar customer."""

    match_type = MatchType.VENDOR_CUSTOMER
    entity_types = frozenset([EntityKind.DEAL])
    customer_threshold = 0.80

    def score(self, candidate, other):
        if not candidate.vendor_id or candidate.vendor_id != other.vendor_id:
            return None
        customer_sim = text_similarity(candidate.customer_name, other.customer_name)
        if customer_sim < self.customer_threshold:
            return None
        deal_name_sim = text_similarity(candidate.deal_name, other.deal_name)
        confidence = min(1.0, 0.3 + customer_sim * 0.5 + deal_name_sim * 0.2)
        return self._result(
            candidate,
            other,
            confidence,
            vendor_match=1.0,
            customer_name=round(customer_sim, 4),
            deal_name=round(deal_name_sim, 4),
        )


class CustomerValueMatcher(BaseMatcher):
    """Deals with a similar customer and a deal value within tolerance."""

    match_type = MatchType.CUSTOMER_VALUE
    entity_types = frozenset([EntityKind.DEAL])
    threshold = 0.85

    def score(self, candidate, other):
        if not candidate.deal_value or not other.deal_value:
            return None
        customer_sim = text_similarity(candidate.customer_name, other.customer_name)
        value_sim = value_similarity(
            candidate.deal_value, other.deal_value, self.config.value_tolerance_percent
        )
        if customer_sim < self.threshold or value_sim < self.threshold:
            return None
        return self._result(
            candidate,
            other,
            customer_sim * 0.6 + value_sim * 0.4,
            customer_name=round(customer_sim, 4),
            deal_value=round(value_sim, 4),
        )


class CustomerDateMatcher(BaseMatcher):
    """Deals with a similar customer closing within the date tolerance."""

    match_type = MatchType.CUSTOMER_DATE
    entity_types = frozenset([EntityKind.DEAL])
    threshold = 0.85

    def score(self, candidate, other):
        if not candidate.close_date or not other.close_date:
            return None
        customer_sim = text_similarity(candidate.customer_name, other.customer_name)
        date_sim = date_similarity(
            candidate.close_date, other.close_date, self.config.date_tolerance_days
        )
        if customer_sim < self.threshold or date_sim < self.threshold:
            return None
        return self._result(
            candidate,
            other,
            customer_sim * 0.6 + date_sim * 0.4,
            customer_name=round(customer_sim, 4),
            close_date=round(date_sim, 4),
        )


class ProductMatcher(BaseMatcher):
    """Overlap between the candidate's product mentions and the other's keywords."""

    match_type = MatchType.PRODUCT
    entity_types = frozenset([EntityKind.VENDOR, EntityKind.DEAL])

    def score(self, candidate, other):
        mentions = _product_terms(candidate)
        if candidate.entity_type == EntityKind.VENDOR:
            mentions = mentions + tuple(candidate.keywords)
        count, total = product_overlap(
            mentions, _product_terms(other), self.config.product_fuzzy_threshold
        )
        if count == 0:
            return None
        confidence = min(0.85, 0.5 + (count / total) * 0.35)
        return self._result(candidate, other, confidence, match_count=count, mention_count=total)


class CombinedMatcher(BaseMatcher):
    """
    Weighted multi-factor score.

    Factors: name similarity (0.40), domain match (0.25), product match
    (0.20), keyword match (0.10), contact email match (0.05). A factor with
    no data on either side contributes nothing. Capped at 0.95.
    """

    match_type = MatchType.COMBINED

    def factors(self, candidate, other) -> dict[str, float]:
        factors: dict[str, float] = {}

        name1 = normalize_name(candidate.display_name)
        name2 = normalize_name(other.display_name)
        if name1 and name2:
            factors["name"] = name_similarity(name1, name2) / 100.0

        if declared_domains(candidate) or declared_domains(other):
            if known_domains(candidate) and known_domains(other):
                factors["domain"] = 1.0 if shared_domains(candidate, other) else 0.0

        products1, products2 = _product_terms(candidate), _product_terms(other)
        if products1 and products2:
            count, total = product_overlap(products1, products2, self.config.product_fuzzy_threshold)
            factors["product"] = count / total if total else 0.0

        keywords = getattr(candidate, "keywords", ())
        if keywords and products2:
            count, total = product_overlap(keywords, products2, self.config.product_fuzzy_threshold)
            factors["keyword"] = count / total if total else 0.0

        if candidate.contact_emails and other.contact_emails:
            factors["contact"] = 1.0 if candidate.contact_emails & other.contact_emails else 0.0

        return factors

    def score(self, candidate, other):
        weights = {
            "name": self.config.name_weight,
            "domain": self.config.domain_weight,
            "product": self.config.product_weight,
            "keyword": self.config.keyword_weight,
            "contact": self.config.contact_weight,
        }
        factors = self.factors(candidate, other)
        total = sum(weights[name] * value for name, value in factors.items())
        if total <= 0:
            return None
        rounded = {name: round(value, 4) for name, value in factors.items()}
        return self._result(candidate, other, min(self.config.combined_cap, total), factors=rounded)


def default_strategies(
    entity_type: EntityKind,
    config: Optional[MatchConfig] = None,
    alias_index: Optional[dict] = None,
) -> list[BaseMatcher]:
    """All strategies applicable to an entity type, most reliable first."""
    config = config or MatchConfig()
    strategies = [
        ExactNameMatcher(config),
        AliasMatcher(alias_index, config),
        DomainMatcher(config),
        CorrelationKeyMatcher(config),
        FuzzyNameMatcher(config),
        VendorCustomerMatcher(config),
        CustomerValueMatcher(config),
        CustomerDateMatcher(config),
        ProductMatcher(config),
        CombinedMatcher(config),
    ]
    return [s for s in strategies if s.applies_to(entity_type)]
