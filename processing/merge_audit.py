"""
Merge audit export.

Read-only projection of merge_history to CSV for compliance review.
"""

import csv
import io
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy.orm import Session

from config.logging import logger
from processing.models import EntityKind, MergeHistory

AUDIT_COLUMNS = [
    "id",
    "mergeDate",
    "mergedBy",
    "entityType",
    "mergeType",
    "strategy",
    "targetId",
    "sourceCount",
    "isUnmerged",
    "unmergedDate",
    "unmergeReason",
]


@dataclass
class MergeAuditFilter:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    merged_by: Optional[str] = None
    entity_type: Optional[EntityKind] = None


def _format_date(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


class MergeAuditExporter:
    """Exports merge history rows, newest first."""

    def __init__(self, db: Session):
        self.db = db

    def query(self, filters: Optional[MergeAuditFilter] = None) -> list[MergeHistory]:
        filters = filters or MergeAuditFilter()
        query = self.db.query(MergeHistory)
        if filters.start_date:
            query = query.filter(MergeHistory.created_at >= filters.start_date)
        if filters.end_date:
            query = query.filter(MergeHistory.created_at <= filters.end_date)
        if filters.merged_by:
            query = query.filter(MergeHistory.merged_by == filters.merged_by)
        if filters.entity_type:
            query = query.filter(MergeHistory.entity_type == filters.entity_type)
        return query.order_by(MergeHistory.created_at.desc(), MergeHistory.id).all()

    def to_rows(self, filters: Optional[MergeAuditFilter] = None) -> list[dict]:
        return [
            {
                "id": h.id,
                "mergeDate": _format_date(h.created_at),
                "mergedBy": h.merged_by,
                "entityType": h.entity_type.value,
                "mergeType": h.merge_type.value,
                "strategy": h.merge_strategy,
                "targetId": h.target_entity_id,
                "sourceCount": len(h.source_entity_ids or []),
                "isUnmerged": "true" if h.unmerged else "false",
                "unmergedDate": _format_date(h.unmerged_at),
                "unmergeReason": h.unmerge_reason or "",
            }
            for h in self.query(filters)
        ]

    def export(self, filters: Optional[MergeAuditFilter] = None) -> str:
        """CSV text with a header row; an empty result gives an empty string."""
        rows = self.to_rows(filters)
        if not rows:
            return ""

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=AUDIT_COLUMNS, lineterminator="\n")
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue()

    def export_to_file(self, path: Path, filters: Optional[MergeAuditFilter] = None) -> Path:
        content = self.export(filters)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="", encoding="utf-8") as f:
            f.write(content)
        logger.info(f"Exported merge audit to {path}")
        return path
