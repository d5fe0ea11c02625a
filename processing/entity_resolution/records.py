"""
Normalized entity records handed to the matching and clustering code.

Each record type carries its own field set plus the bookkeeping fields
every registry entity shares. Records are immutable snapshots; storage
rows are converted with ``record_from_model``.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import ClassVar, Iterable, Optional, Union

from sqlalchemy.orm import Session

from processing.models import ENTITY_MODELS, Contact, Deal, DealContact, EntityKind, Vendor


@dataclass(frozen=True)
class VendorRecord:
    entity_type: ClassVar[EntityKind] = EntityKind.VENDOR

    id: str
    name: str
    email_domains: frozenset = frozenset()
    product_keywords: tuple = ()
    # Free-text keywords seen next to the vendor mention; stored rows keep
    # them under attributes["keywords"]
    keywords: tuple = ()
    contact_emails: frozenset = frozenset()

    correlation_key: Optional[str] = None
    source_file_ids: frozenset = frozenset()
    is_active: bool = True
    confidence: float = 0.0
    validation_status: str = "pending"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.name


@dataclass(frozen=True)
class DealRecord:
    entity_type: ClassVar[EntityKind] = EntityKind.DEAL

    id: str
    deal_name: str
    customer_name: Optional[str] = None
    vendor_id: Optional[str] = None
    deal_value: Optional[float] = None
    currency: Optional[str] = None
    close_date: Optional[date] = None
    products: tuple = ()
    contact_emails: frozenset = frozenset()

    correlation_key: Optional[str] = None
    source_file_ids: frozenset = frozenset()
    is_active: bool = True
    confidence: float = 0.0
    validation_status: str = "pending"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.deal_name


@dataclass(frozen=True)
class ContactRecord:
    entity_type: ClassVar[EntityKind] = EntityKind.CONTACT

    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    vendor_id: Optional[str] = None

    correlation_key: Optional[str] = None
    source_file_ids: frozenset = frozenset()
    is_active: bool = True
    confidence: float = 0.0
    validation_status: str = "pending"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def contact_emails(self) -> frozenset:
        return frozenset([self.email.lower()]) if self.email else frozenset()


EntityRecord = Union[VendorRecord, DealRecord, ContactRecord]

RECORD_TYPES = {
    EntityKind.VENDOR: VendorRecord,
    EntityKind.DEAL: DealRecord,
    EntityKind.CONTACT: ContactRecord,
}

# Business fields per type, as named on the ORM rows
ENTITY_FIELDS = {
    EntityKind.VENDOR: (
        "name", "normalized_name", "email_domains", "product_keywords",
        "website", "status", "tier", "attributes",
    ),
    EntityKind.DEAL: (
        "deal_name", "customer_name", "vendor_id", "deal_value", "currency",
        "close_date", "products", "status", "attributes",
    ),
    EntityKind.CONTACT: ("name", "email", "phone", "role", "company", "vendor_id"),
}

# Fields counted for record completeness
REQUIRED_FIELDS = {
    EntityKind.VENDOR: ("name", "email_domains", "product_keywords", "website"),
    EntityKind.DEAL: ("deal_name", "customer_name", "vendor_id", "deal_value", "close_date", "products"),
    EntityKind.CONTACT: ("name", "email", "phone", "role", "company"),
}


def _common_fields(row) -> dict:
    return {
        "id": row.id,
        "correlation_key": row.correlation_key,
        "source_file_ids": frozenset(row.source_file_ids or []),
        "is_active": bool(row.is_active),
        "confidence": float(row.ai_confidence_score or 0.0),
        "validation_status": row.validation_status.value if row.validation_status else "pending",
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


def record_from_model(row: Union[Vendor, Deal, Contact], contact_emails=()) -> EntityRecord:
    """Snapshot an ORM row into its immutable record type."""
    if isinstance(row, Vendor):
        return VendorRecord(
            name=row.name,
            email_domains=frozenset(d.lower() for d in (row.email_domains or [])),
            product_keywords=tuple(row.product_keywords or []),
            keywords=tuple((row.attributes or {}).get("keywords") or []),
            contact_emails=frozenset(e.lower() for e in contact_emails),
            **_common_fields(row),
        )
    if isinstance(row, Deal):
        return DealRecord(
            deal_name=row.deal_name,
            customer_name=row.customer_name,
            vendor_id=row.vendor_id,
            deal_value=float(row.deal_value) if row.deal_value is not None else None,
            currency=row.currency,
            close_date=row.close_date,
            products=tuple(row.products or []),
            contact_emails=frozenset(e.lower() for e in contact_emails),
            **_common_fields(row),
        )
    if isinstance(row, Contact):
        return ContactRecord(
            name=row.name,
            email=row.email,
            phone=row.phone,
            company=row.company,
            vendor_id=row.vendor_id,
            **_common_fields(row),
        )
    raise TypeError(f"Not a registry entity: {row!r}")


def load_records(
    db: Session,
    entity_type: EntityKind,
    ids: Optional[Iterable[str]] = None,
    active_only: bool = True,
) -> list[EntityRecord]:
    """
    Load registry rows of one type as records, ordered by id.

    Vendor and deal records get the emails of their linked contacts attached
    so the domain and contact factors have data to work with.
    """
    model = ENTITY_MODELS[entity_type]
    query = db.query(model)
    if ids is not None:
        query = query.filter(model.id.in_(list(ids)))
    if active_only:
        query = query.filter(model.is_active.is_(True))
    rows = query.order_by(model.id).all()

    emails: dict[str, list[str]] = {}
    row_ids = [row.id for row in rows]
    if row_ids and entity_type == EntityKind.VENDOR:
        pairs = (
            db.query(Contact.vendor_id, Contact.email)
            .filter(Contact.vendor_id.in_(row_ids), Contact.email.isnot(None))
            .all()
        )
        for vendor_id, email in pairs:
            emails.setdefault(vendor_id, []).append(email)
    elif row_ids and entity_type == EntityKind.DEAL:
        pairs = (
            db.query(DealContact.deal_id, Contact.email)
            .join(Contact, Contact.id == DealContact.contact_id)
            .filter(DealContact.deal_id.in_(row_ids), Contact.email.isnot(None))
            .all()
        )
        for deal_id, email in pairs:
            emails.setdefault(deal_id, []).append(email)

    if entity_type == EntityKind.CONTACT:
        return [record_from_model(row) for row in rows]
    return [record_from_model(row, emails.get(row.id, ())) for row in rows]
