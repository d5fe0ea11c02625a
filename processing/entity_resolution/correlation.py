"""
Correlation Engine

Cross-entity view of the registry: one-hop relationships between vendors,
deals, contacts and source files, field-level lineage, and the derived
correlation keys used to line records up across independent sources.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.orm import Session

from config.logging import logger
from config.settings import settings
from processing.errors import NotFoundError
from processing.models import (
    ENTITY_MODELS,
    Contact,
    Deal,
    DealContact,
    EntityKind,
    FieldProvenance,
    SourceFile,
    Vendor,
)
from processing.provenance import ProvenanceTracker, serialize_value
from processing.entity_resolution.matchers import normalize_name
from processing.entity_resolution.records import ENTITY_FIELDS

# Relationship strengths reported by find_related_entities
VENDOR_STRENGTH = 0.9
CONTACT_STRENGTH = 0.8
DEAL_STRENGTH = 0.7


@dataclass
class RelatedEntities:
    """One-hop neighbourhood of a primary entity."""
    primary: Union[Vendor, Deal, Contact]
    entity_type: EntityKind
    vendors: list[Vendor] = field(default_factory=list)
    deals: list[Deal] = field(default_factory=list)
    contacts: list[Contact] = field(default_factory=list)
    source_files: list[SourceFile] = field(default_factory=list)
    relationships: list[dict] = field(default_factory=list)

    def _link(self, target_type: str, target_id: str, relationship: str, strength: float):
        self.relationships.append({
            "from_type": self.entity_type.value,
            "from_id": self.primary.id,
            "to_type": target_type,
            "to_id": target_id,
            "relationship": relationship,
            "strength": strength,
        })


@dataclass(frozen=True)
class LineageEntry:
    entity_id: str
    field_name: str
    raw_value: Optional[str]
    source_file_id: Optional[str]
    source_type: Optional[str]
    extraction_method: str
    confidence: Optional[float]
    extracted_at: datetime
    extracted_by: Optional[str]

    @classmethod
    def from_model(cls, row: FieldProvenance) -> "LineageEntry":
        return cls(
            entity_id=row.entity_id,
            field_name=row.field_name,
            raw_value=row.raw_value,
            source_file_id=row.source_file_id,
            source_type=row.source_type,
            extraction_method=row.extraction_method,
            confidence=row.confidence,
            extracted_at=row.extracted_at,
            extracted_by=row.extracted_by,
        )

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "raw_value": self.raw_value,
            "source_file_id": self.source_file_id,
            "source_type": self.source_type,
            "extraction_method": self.extraction_method,
            "confidence": self.confidence,
            "extracted_at": self.extracted_at.isoformat(),
            "extracted_by": self.extracted_by,
        }


@dataclass(frozen=True)
class FieldLineage:
    """Oldest-first provenance history of one field."""
    field_name: str
    current_value: Optional[str]
    history: tuple

    @property
    def source_count(self) -> int:
        return len({e.source_file_id for e in self.history if e.source_file_id})


@dataclass(frozen=True)
class CrossSourceGroup:
    correlation_key: str
    entity_ids: tuple
    source_file_ids: frozenset


def derive_correlation_key(entity_type: EntityKind, row) -> str:
    """
    Deterministic cross-source key for a registry row.

    deal:<customer>[:<first product>], vendor:<name>,
    contact:email:<email> or contact:name:<name>. Raises ValueError when the
    row has nothing to key on.
    """
    if entity_type == EntityKind.DEAL:
        customer = normalize_name(row.customer_name) or normalize_name(row.deal_name)
        if not customer:
            raise ValueError(f"Deal {row.id} has no customer or deal name")
        products = sorted(p for p in (normalize_name(x) for x in (row.products or [])) if p)
        return f"deal:{customer}:{products[0]}" if products else f"deal:{customer}"

    if entity_type == EntityKind.VENDOR:
        name = normalize_name(row.name)
        if not name:
            raise ValueError(f"Vendor {row.id} has no usable name")
        return f"vendor:{name}"

    if row.email and row.email.strip():
        return f"contact:email:{row.email.strip().lower()}"
    name = normalize_name(row.name)
    if not name:
        raise ValueError(f"Contact {row.id} has no email or usable name")
    return f"contact:name:{name}"


class CorrelationEngine:
    """
    Read-mostly correlation and lineage queries over one session.

    Only update_correlation_keys writes, and it isolates every row in its
    own savepoint.
    """

    def __init__(self, db: Session):
        self.db = db
        self.provenance = ProvenanceTracker(db)

    def _get(self, entity_type: EntityKind, entity_id: str):
        row = self.db.get(ENTITY_MODELS[entity_type], entity_id)
        if row is None:
            raise NotFoundError(entity_type.value, entity_id)
        return row

    def _source_files(self, file_ids) -> list[SourceFile]:
        file_ids = sorted(set(file_ids or []))
        if not file_ids:
            return []
        return self.db.query(SourceFile).filter(SourceFile.id.in_(file_ids)).order_by(SourceFile.id).all()

    def _deal_contacts(self, deal_ids: list[str]) -> list[Contact]:
        if not deal_ids:
            return []
        return (
            self.db.query(Contact)
            .join(DealContact, DealContact.contact_id == Contact.id)
            .filter(DealContact.deal_id.in_(deal_ids), Contact.is_active.is_(True))
            .all()
        )

    def _sibling_deals(self, deal: Deal) -> list[Deal]:
        customer = normalize_name(deal.customer_name)
        if not customer:
            return []
        candidates = (
            self.db.query(Deal)
            .filter(Deal.id != deal.id, Deal.is_active.is_(True), Deal.customer_name.isnot(None))
            .order_by(Deal.id)
            .all()
        )
        return [d for d in candidates if normalize_name(d.customer_name) == customer]

    def find_related_entities(self, entity_id: str, entity_type: EntityKind) -> RelatedEntities:
        """
        One-hop traversal from a vendor, deal or contact.

        Deals reach their vendor, their contacts (direct links plus the
        vendor's contacts), their source files, and sibling deals sharing the
        normalized customer name.
        """
        primary = self._get(entity_type, entity_id)
        related = RelatedEntities(primary=primary, entity_type=entity_type)
        related.source_files = self._source_files(primary.source_file_ids)

        vendor_id = primary.id if entity_type == EntityKind.VENDOR else primary.vendor_id
        if entity_type != EntityKind.VENDOR and vendor_id:
            vendor = self.db.get(Vendor, vendor_id)
            if vendor is not None and vendor.is_active:
                related.vendors.append(vendor)
                related._link("vendor", vendor.id, "vendor", VENDOR_STRENGTH)

        contacts: dict[str, Contact] = {}
        if entity_type == EntityKind.DEAL:
            for contact in self._deal_contacts([primary.id]):
                contacts[contact.id] = contact
        if entity_type != EntityKind.CONTACT and vendor_id:
            vendor_contacts = (
                self.db.query(Contact)
                .filter(Contact.vendor_id == vendor_id, Contact.is_active.is_(True))
                .all()
            )
            for contact in vendor_contacts:
                contacts.setdefault(contact.id, contact)
        related.contacts = [contacts[k] for k in sorted(contacts)]
        for contact in related.contacts:
            related._link("contact", contact.id, "contact", CONTACT_STRENGTH)

        if entity_type == EntityKind.DEAL:
            related.deals = self._sibling_deals(primary)
            relationship = "same_customer"
        elif entity_type == EntityKind.VENDOR:
            related.deals = (
                self.db.query(Deal)
                .filter(Deal.vendor_id == primary.id, Deal.is_active.is_(True))
                .order_by(Deal.id)
                .all()
            )
            relationship = "vendor_deal"
        else:
            related.deals = (
                self.db.query(Deal)
                .join(DealContact, DealContact.deal_id == Deal.id)
                .filter(DealContact.contact_id == primary.id, Deal.is_active.is_(True))
                .order_by(Deal.id)
                .all()
            )
            relationship = "contact_deal"
        for deal in related.deals:
            related._link("deal", deal.id, relationship, DEAL_STRENGTH)

        logger.debug(
            f"Related to {entity_type.value} {entity_id}: {len(related.vendors)} vendors, "
            f"{len(related.deals)} deals, {len(related.contacts)} contacts, "
            f"{len(related.source_files)} files"
        )
        return related

    def build_deal_correlation_map(self, deal_id: str) -> dict:
        """Vendor, contact and source-file correlations plus per-field provenance."""
        related = self.find_related_entities(deal_id, EntityKind.DEAL)
        deal = related.primary

        field_provenance: dict[str, list[dict]] = {}
        for row in self.provenance.field_history(EntityKind.DEAL, [deal.id]):
            field_provenance.setdefault(row.field_name, []).append(
                LineageEntry.from_model(row).to_dict()
            )

        return {
            "deal_id": deal.id,
            "correlation_key": deal.correlation_key,
            "source_files": [
                {"id": f.id, "filename": f.filename, "file_type": f.file_type}
                for f in related.source_files
            ],
            "vendor_correlations": [
                {"vendor_id": v.id, "name": v.name, "strength": VENDOR_STRENGTH}
                for v in related.vendors
            ],
            "contact_correlations": [
                {"contact_id": c.id, "name": c.name, "email": c.email, "role": c.role,
                 "strength": CONTACT_STRENGTH}
                for c in related.contacts
            ],
            "related_deals": [d.id for d in related.deals],
            "field_provenance": field_provenance,
        }

    def _merged_source_ids(self, entity_type: EntityKind, entity_id: str) -> list[str]:
        """Every entity merged (directly or transitively) into entity_id."""
        model = ENTITY_MODELS[entity_type]
        found: list[str] = []
        frontier = [entity_id]
        while frontier:
            children = [
                row_id for (row_id,) in
                self.db.query(model.id).filter(model.merged_into_id.in_(frontier)).all()
                if row_id not in found and row_id != entity_id
            ]
            found.extend(children)
            frontier = children
        return sorted(found)

    def get_data_lineage(
        self,
        entity_id: str,
        field_name: Optional[str] = None,
        entity_type: EntityKind = EntityKind.DEAL,
        include_merged_sources: bool = False,
    ) -> dict[str, FieldLineage]:
        """
        Field lineage for an entity, oldest entry first.

        Omitting ``field_name`` returns every field with provenance. With
        ``include_merged_sources`` the history of entities merged into this
        one is included; those entries keep their own entity_id.
        """
        entity = self._get(entity_type, entity_id)
        entity_ids = [entity_id]
        if include_merged_sources:
            entity_ids += self._merged_source_ids(entity_type, entity_id)

        histories: dict[str, list[LineageEntry]] = {}
        for row in self.provenance.field_history(entity_type, entity_ids, field_name):
            histories.setdefault(row.field_name, []).append(LineageEntry.from_model(row))

        return {
            name: FieldLineage(
                field_name=name,
                current_value=serialize_value(getattr(entity, name, None)),
                history=tuple(entries),
            )
            for name, entries in sorted(histories.items())
        }

    def update_correlation_keys(self, entity_type: EntityKind, batch_size: Optional[int] = None) -> dict:
        """
        Derive and store correlation keys for rows that lack one.

        Per-row failures are counted, never fatal. Commits once per chunk.
        """
        batch_size = batch_size or settings.BATCH_SIZE
        model = ENTITY_MODELS[entity_type]
        ids = [
            row_id for (row_id,) in
            self.db.query(model.id).filter(model.correlation_key.is_(None)).order_by(model.id).all()
        ]
        stats = {"updated": 0, "errors": 0}

        for start in range(0, len(ids), batch_size):
            rows = self.db.query(model).filter(model.id.in_(ids[start:start + batch_size])).order_by(model.id).all()
            for row in rows:
                try:
                    with self.db.begin_nested():
                        row.correlation_key = derive_correlation_key(entity_type, row)
                        self.db.flush()
                    stats["updated"] += 1
                except Exception as e:
                    stats["errors"] += 1
                    logger.warning(f"Correlation key failed for {entity_type.value} {row.id}: {e}")
            self.db.commit()

        logger.info(
            f"Correlation keys ({entity_type.value}): {stats['updated']} updated, {stats['errors']} errors"
        )
        return stats

    def find_cross_source_duplicates(self, source_file_ids: list[str], entity_type: EntityKind) -> list[CrossSourceGroup]:
        """
        Active entities sharing a correlation key, restricted to members whose
        own source files intersect ``source_file_ids``; groups of two or more.
        """
        files = set(source_file_ids)
        if not files:
            return []
        model = ENTITY_MODELS[entity_type]
        rows = (
            self.db.query(model)
            .filter(model.correlation_key.isnot(None), model.is_active.is_(True))
            .order_by(model.id)
            .all()
        )

        groups: dict[str, list] = {}
        for row in rows:
            if files & set(row.source_file_ids or []):
                groups.setdefault(row.correlation_key, []).append(row)

        result = [
            CrossSourceGroup(
                correlation_key=key,
                entity_ids=tuple(r.id for r in members),
                source_file_ids=frozenset(f for r in members for f in (r.source_file_ids or [])),
            )
            for key, members in sorted(groups.items())
            if len(members) >= 2
        ]
        logger.info(f"Cross-source duplicates ({entity_type.value}): {len(result)} groups")
        return result

    def reconcile_across_sources(
        self,
        entity_type: EntityKind,
        correlation_key: str,
        source_file_ids: Optional[list[str]] = None,
    ) -> dict:
        """
        Reconciled view of all records sharing a correlation key.

        The most recently updated record is primary; its empty fields are
        filled from the others, newest first. Nothing is written.
        """
        model = ENTITY_MODELS[entity_type]
        rows = (
            self.db.query(model)
            .filter(model.correlation_key == correlation_key, model.is_active.is_(True))
            .all()
        )
        if source_file_ids:
            files = set(source_file_ids)
            rows = [r for r in rows if files & set(r.source_file_ids or [])]
        if not rows:
            raise NotFoundError(f"{entity_type.value} correlation key", correlation_key)

        rows.sort(key=lambda r: (-(r.updated_at or r.created_at).timestamp(), r.id))
        primary = rows[0]
        merged = {name: getattr(primary, name) for name in ENTITY_FIELDS[entity_type]}
        for other in rows[1:]:
            for name in ENTITY_FIELDS[entity_type]:
                if merged[name] in (None, "", [], {}) and getattr(other, name) not in (None, "", [], {}):
                    merged[name] = getattr(other, name)

        return {
            "correlation_key": correlation_key,
            "primary_entity_id": primary.id,
            "entity_ids": sorted(r.id for r in rows),
            "merged_data": merged,
            "source_file_ids": sorted({f for r in rows for f in (r.source_file_ids or [])}),
            "confidence": 0.9 if len(rows) >= 2 else 0.7,
        }
