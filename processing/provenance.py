"""
Field provenance tracking.

Append-only log of where every extracted field value came from. Rows are
never updated or deleted; the merge engine adds rows for the values it
writes onto a surviving record.
"""

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from config.logging import logger
from processing.models import EntityKind, FieldProvenance, utcnow


def serialize_value(value: Any) -> Optional[str]:
    """Store values as text; containers as JSON, dates as ISO strings."""
    if value is None:
        return None
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        if isinstance(value, (set, frozenset)):
            value = sorted(value)
        return json.dumps(value, default=str, sort_keys=True)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (
        isinstance(value, (list, tuple, set, frozenset, dict)) and not value
    )


class ProvenanceTracker:
    """Writes and reads the field_provenance log for one session."""

    def __init__(self, db: Session):
        self.db = db

    def track_field(
        self,
        entity_type: EntityKind,
        entity_id: str,
        field_name: str,
        value: Any,
        extraction_method: str,
        source_file_id: Optional[str] = None,
        source_type: Optional[str] = None,
        confidence: Optional[float] = None,
        extraction_context: Optional[dict] = None,
        extracted_by: Optional[str] = None,
        extracted_at: Optional[datetime] = None,
    ) -> FieldProvenance:
        """
        Append one provenance row. Flushes but does not commit, so callers
        can write provenance inside their own transaction.
        """
        row = FieldProvenance(
            entity_type=entity_type,
            entity_id=entity_id,
            field_name=field_name,
            raw_value=serialize_value(value),
            source_file_id=source_file_id,
            source_type=source_type,
            extraction_method=extraction_method,
            confidence=confidence,
            extraction_context=extraction_context,
            extracted_by=extracted_by,
            extracted_at=extracted_at or utcnow(),
        )
        self.db.add(row)
        self.db.flush()
        return row

    def track_fields(
        self,
        entity_type: EntityKind,
        entity_id: str,
        values: dict[str, Any],
        extraction_method: str,
        **kwargs,
    ) -> list[FieldProvenance]:
        """Track several fields from one extraction; empty values are skipped."""
        rows = [
            self.track_field(entity_type, entity_id, name, value, extraction_method, **kwargs)
            for name, value in values.items()
            if not _is_empty(value)
        ]
        logger.debug(f"Tracked {len(rows)} fields for {entity_type.value} {entity_id}")
        return rows

    def field_history(
        self,
        entity_type: EntityKind,
        entity_ids: list[str],
        field_name: Optional[str] = None,
    ) -> list[FieldProvenance]:
        """Provenance rows for the given entities, oldest first (id breaks ties)."""
        query = self.db.query(FieldProvenance).filter(
            FieldProvenance.entity_type == entity_type,
            FieldProvenance.entity_id.in_(entity_ids),
        )
        if field_name:
            query = query.filter(FieldProvenance.field_name == field_name)
        return query.order_by(FieldProvenance.extracted_at, FieldProvenance.id).all()
