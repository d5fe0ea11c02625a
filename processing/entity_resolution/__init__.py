"""
Entity Resolution Module

Duplicate detection and merging for vendors, deals and contacts:
- Matching strategies (exact, alias, domain, fuzzy, deal, product, combined)
- Duplicate detector and union-find cluster builder
- Correlation keys, relationships and field lineage
- Transactional merge / unmerge with audit history
"""

from processing.entity_resolution.aliases import AliasRegistry
from processing.entity_resolution.clustering import Cluster, ClusterBuilder, ClusterStore
from processing.entity_resolution.correlation import CorrelationEngine
from processing.entity_resolution.detector import (
    DetectionResult,
    DuplicateDetectionService,
    DuplicateDetector,
)
from processing.entity_resolution.matchers import MatchConfig, MatchResult, MatchType
from processing.entity_resolution.merge import (
    ConflictResolution,
    MergeEngine,
    MergeOptions,
    MergeStrategy,
)
from processing.entity_resolution.records import (
    ContactRecord,
    DealRecord,
    EntityRecord,
    VendorRecord,
)

__all__ = [
    "AliasRegistry",
    "Cluster",
    "ClusterBuilder",
    "ClusterStore",
    "ConflictResolution",
    "ContactRecord",
    "CorrelationEngine",
    "DealRecord",
    "DetectionResult",
    "DuplicateDetectionService",
    "DuplicateDetector",
    "EntityRecord",
    "MatchConfig",
    "MatchResult",
    "MatchType",
    "MergeEngine",
    "MergeOptions",
    "MergeStrategy",
    "VendorRecord",
]
