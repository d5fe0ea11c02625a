"""
Deal Registry - Database Models

SQLAlchemy ORM models for the vendor / deal / contact registry and the
entity resolution bookkeeping tables (detections, clusters, merge history,
field provenance).
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# Enums
class EntityKind(PyEnum):
    VENDOR = "vendor"
    DEAL = "deal"
    CONTACT = "contact"


class ValidationStatus(PyEnum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class DetectionStatus(PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    AUTO_MERGED = "auto_merged"


class ClusterStatus(PyEnum):
    PENDING = "pending"
    MERGING = "merging"
    MERGED = "merged"


class MergeType(PyEnum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RegistryEntityMixin:
    """
    Columns shared by vendors, deals and contacts.

    Merged entities are never deleted: they are flagged inactive and point
    at the surviving record through merged_into_id.
    """

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    correlation_key: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    # Only ever grows, except when a merge unions several members together
    source_file_ids: Mapped[list] = mapped_column(JSON, default=list)
    ai_confidence_score: Mapped[Optional[float]] = mapped_column(Float)
    validation_status: Mapped[ValidationStatus] = mapped_column(
        Enum(ValidationStatus), default=ValidationStatus.PENDING, nullable=False
    )

    # Soft delete for merged entities
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    merged_into_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def is_merged(self) -> bool:
        """Check if this entity has been merged into another."""
        return self.merged_into_id is not None


class Vendor(RegistryEntityMixin, Base):
    """A company that sells through the registry's partners."""

    __tablename__ = "vendors"

    name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    normalized_name: Mapped[Optional[str]] = mapped_column(Text, index=True)
    email_domains: Mapped[list] = mapped_column(JSON, default=list)
    product_keywords: Mapped[list] = mapped_column(JSON, default=list)
    website: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[Optional[str]] = mapped_column(String(20), default="active")
    tier: Mapped[Optional[str]] = mapped_column(String(20))
    attributes: Mapped[dict] = mapped_column(JSON, default=dict)

    deals: Mapped[list["Deal"]] = relationship(back_populates="vendor")
    aliases: Mapped[list["VendorAlias"]] = relationship(
        back_populates="vendor", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Vendor(id={self.id}, name={self.name})>"


class Deal(RegistryEntityMixin, Base):
    """A registered opportunity between a vendor and an end customer."""

    __tablename__ = "deals"

    deal_name: Mapped[str] = mapped_column(Text, nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(Text, index=True)
    vendor_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("vendors.id"), index=True
    )
    deal_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))
    currency: Mapped[Optional[str]] = mapped_column(String(3), default="USD")
    close_date: Mapped[Optional[date]] = mapped_column(Date)
    products: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[Optional[str]] = mapped_column(String(30), default="registered")
    attributes: Mapped[dict] = mapped_column(JSON, default=dict)

    vendor: Mapped[Optional["Vendor"]] = relationship(back_populates="deals")

    __table_args__ = (
        Index("ix_deals_vendor_customer", "vendor_id", "customer_name"),
    )

    def __repr__(self) -> str:
        return f"<Deal(id={self.id}, name={self.deal_name}, customer={self.customer_name})>"


class Contact(RegistryEntityMixin, Base):
    """A person on the vendor or customer side of a deal."""

    __tablename__ = "contacts"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(Text, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    role: Mapped[Optional[str]] = mapped_column(Text)
    company: Mapped[Optional[str]] = mapped_column(Text)
    vendor_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("vendors.id"), index=True
    )

    def __repr__(self) -> str:
        return f"<Contact(id={self.id}, name={self.name}, email={self.email})>"


class DealContact(Base):
    """Association between deals and the contacts involved in them."""

    __tablename__ = "deal_contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("deals.id"), nullable=False, index=True
    )
    contact_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("contacts.id"), nullable=False, index=True
    )
    role: Mapped[Optional[str]] = mapped_column(String(50))

    __table_args__ = (
        UniqueConstraint("deal_id", "contact_id", name="uq_deal_contact"),
    )


class SourceFile(Base):
    """An uploaded file that records were extracted from."""

    __tablename__ = "source_files"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[Optional[str]] = mapped_column(String(20))
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<SourceFile(id={self.id}, filename={self.filename})>"


class VendorAlias(Base):
    """
    Alternative spellings of a vendor name.

    Aliases are added manually, learned from repeated extractions, or
    reinforced by user corrections.
    """

    __tablename__ = "vendor_aliases"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    vendor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("vendors.id"), nullable=False, index=True
    )
    alias: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_alias: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    alias_type: Mapped[str] = mapped_column(String(30), default="manual")
    confidence: Mapped[float] = mapped_column(Float, default=0.95, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    learned_from: Mapped[Optional[str]] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    vendor: Mapped["Vendor"] = relationship(back_populates="aliases")

    __table_args__ = (
        UniqueConstraint("vendor_id", "normalized_alias", name="uq_vendor_alias"),
    )

    def __repr__(self) -> str:
        return f"<VendorAlias(alias={self.alias}, vendor={self.vendor_id}, conf={self.confidence:.2f})>"


class DuplicateDetection(Base):
    """
    A detected duplicate pair, stored with entity_id_1 < entity_id_2 so each
    unordered pair has exactly one row.
    """

    __tablename__ = "duplicate_detections"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    entity_type: Mapped[EntityKind] = mapped_column(Enum(EntityKind), nullable=False)
    entity_id_1: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    entity_id_2: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    confidence_level: Mapped[float] = mapped_column(Float, nullable=False)
    detection_strategy: Mapped[str] = mapped_column(String(30), nullable=False)
    similarity_factors: Mapped[Optional[dict]] = mapped_column(JSON, default=dict)
    status: Mapped[DetectionStatus] = mapped_column(
        Enum(DetectionStatus), default=DetectionStatus.PENDING, nullable=False, index=True
    )
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolved_by: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint(
            "entity_type", "entity_id_1", "entity_id_2", name="uq_detection_pair"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<DuplicateDetection({self.entity_id_1} ~ {self.entity_id_2}, "
            f"conf={self.confidence_level:.2f}, status={self.status.value})>"
        )


class DuplicateCluster(Base):
    """
    An equivalence class of duplicate entities awaiting (or done with) merge.

    Pending clusters of one entity type never share members.
    """

    __tablename__ = "duplicate_clusters"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    # Sorted member ids joined by "|"
    cluster_key: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    entity_type: Mapped[EntityKind] = mapped_column(Enum(EntityKind), nullable=False, index=True)
    entity_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    cluster_size: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    master_entity_id: Mapped[Optional[str]] = mapped_column(String(36))
    merge_history_id: Mapped[Optional[str]] = mapped_column(String(36))
    status: Mapped[ClusterStatus] = mapped_column(
        Enum(ClusterStatus), default=ClusterStatus.PENDING, nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<DuplicateCluster(id={self.id}, size={self.cluster_size}, status={self.status.value})>"


class MergeHistory(Base):
    """
    Audit trail for merges.

    Rows are never deleted; unmerge only fills in the unmerge columns.
    """

    __tablename__ = "merge_history"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    merge_type: Mapped[MergeType] = mapped_column(Enum(MergeType), nullable=False)
    entity_type: Mapped[EntityKind] = mapped_column(Enum(EntityKind), nullable=False, index=True)
    merge_strategy: Mapped[str] = mapped_column(String(30), nullable=False)
    conflict_resolution: Mapped[str] = mapped_column(String(30), nullable=False)
    target_entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    source_entity_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    cluster_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    merged_data: Mapped[Optional[dict]] = mapped_column(JSON)
    resolved_fields: Mapped[Optional[dict]] = mapped_column(JSON)
    merged_by: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    can_unmerge: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    unmerged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    unmerged_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    unmerged_by: Mapped[Optional[str]] = mapped_column(Text)
    unmerge_reason: Mapped[Optional[str]] = mapped_column(Text)

    def __repr__(self) -> str:
        return (
            f"<MergeHistory(target={self.target_entity_id}, "
            f"sources={len(self.source_entity_ids or [])}, unmerged={self.unmerged})>"
        )


class FieldProvenance(Base):
    """
    Append-only extraction log: one row per observed field value.

    Rows stay attributed to the entity they were extracted for, even after
    that entity is merged into another.
    """

    __tablename__ = "field_provenance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[EntityKind] = mapped_column(Enum(EntityKind), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    raw_value: Mapped[Optional[str]] = mapped_column(Text)
    source_file_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    source_type: Mapped[Optional[str]] = mapped_column(String(30))
    extraction_method: Mapped[str] = mapped_column(String(30), nullable=False)
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    extraction_context: Mapped[Optional[dict]] = mapped_column(JSON)
    validation_status: Mapped[Optional[str]] = mapped_column(String(20))
    extracted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    extracted_by: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_provenance_entity_field", "entity_type", "entity_id", "field_name"),
    )

    def __repr__(self) -> str:
        return f"<FieldProvenance({self.entity_id}.{self.field_name}={self.raw_value!r})>"


ENTITY_MODELS = {
    EntityKind.VENDOR: Vendor,
    EntityKind.DEAL: Deal,
    EntityKind.CONTACT: Contact,
}
