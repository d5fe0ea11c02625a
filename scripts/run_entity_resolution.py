#!/usr/bin/env python3
"""
Run entity resolution over the registry.

Usage:
    python scripts/run_entity_resolution.py --entity-type deal
    python scripts/run_entity_resolution.py --entity-type vendor --auto-merge
    python scripts/run_entity_resolution.py --entity-type deal --auto-merge --dry-run
    python scripts/run_entity_resolution.py --export-audit data/merge_audit.csv
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import settings
from processing.database import init_db, make_engine, make_session_factory, session_scope
from processing.entity_resolution import (
    AliasRegistry,
    ClusterBuilder,
    ClusterStore,
    CorrelationEngine,
    DuplicateDetector,
    MergeEngine,
)
from processing.entity_resolution.records import load_records
from processing.merge_audit import MergeAuditExporter, MergeAuditFilter
from processing.models import ENTITY_MODELS, EntityKind


def main():
    parser = argparse.ArgumentParser(
        description="Detect, cluster and merge duplicate vendors, deals and contacts"
    )
    parser.add_argument(
        "--entity-type",
        choices=[k.value for k in EntityKind],
        default=EntityKind.DEAL.value,
        help="Entity type to resolve (default: deal)",
    )
    parser.add_argument(
        "--auto-merge",
        action="store_true",
        help="Merge pending clusters at or above the auto-merge threshold",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=settings.AUTO_MERGE_THRESHOLD,
        help=f"Auto-merge confidence threshold (default: {settings.AUTO_MERGE_THRESHOLD})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be clustered and merged without writing anything",
    )
    parser.add_argument(
        "--learn-aliases",
        action="store_true",
        help="Learn vendor aliases from extraction history first",
    )
    parser.add_argument(
        "--export-audit",
        type=Path,
        metavar="PATH",
        help="Only export merge history to CSV",
    )

    args = parser.parse_args()
    entity_type = EntityKind(args.entity_type)

    engine = make_engine()
    init_db(engine)
    factory = make_session_factory(engine)

    with session_scope(factory) as db:
        if args.export_audit:
            path = MergeAuditExporter(db).export_to_file(args.export_audit, MergeAuditFilter())
            print(f"Merge audit exported to: {path}")
            return

        model = ENTITY_MODELS[entity_type]
        active_count = db.query(model).filter(model.is_active.is_(True)).count()

        print("=" * 60)
        print(f"ENTITY RESOLUTION - {entity_type.value.upper()}")
        print("=" * 60)
        print(f"Active records: {active_count}")
        print(f"Mode: {'DRY RUN' if args.dry_run else 'LIVE'}")
        print("=" * 60)

        if args.learn_aliases and not args.dry_run:
            learned = AliasRegistry(db).learn_from_provenance()
            print(f"\nAliases learned: {learned['created']} ({learned['errors']} errors)")

        detector = DuplicateDetector(alias_index=AliasRegistry(db).load_index())
        builder = ClusterBuilder(detector)

        if args.dry_run:
            clusters = builder.build(load_records(db, entity_type))
            print(f"\nClusters found: {len(clusters)}")
            for cluster in clusters:
                flag = " (would merge)" if args.auto_merge and cluster.confidence_score >= args.threshold else ""
                print(f"  [{cluster.confidence_score:.2f}] {cluster.cluster_key}{flag}")
            return

        keys = CorrelationEngine(db).update_correlation_keys(entity_type)
        print(f"Correlation keys updated: {keys['updated']} ({keys['errors']} errors)")

        clusters = ClusterStore(db, builder).cluster_entity_type(entity_type)
        print(f"\nPending clusters: {len(clusters)}")
        for cluster in clusters:
            print(f"  [{cluster.confidence_score:.2f}] {cluster.cluster_key}")

        if args.auto_merge:
            batch = MergeEngine(db, detector).auto_merge_high_confidence(
                threshold=args.threshold,
                entity_type=entity_type,
                merged_by="run_entity_resolution",
            )
            print(f"\nClusters merged: {batch.merged}/{batch.attempted} ({batch.failed} failed)")
            for result in batch.results:
                if not result.get("success"):
                    print(f"  FAILED {result['cluster_id']}: {result['error']['message']}")

        final_count = db.query(model).filter(model.is_active.is_(True)).count()
        print(f"\nFinal active records: {final_count}")
        print(f"Records merged: {active_count - final_count}")


if __name__ == "__main__":
    main()
