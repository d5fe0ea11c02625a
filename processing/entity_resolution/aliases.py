"""
Vendor alias registry.

Aliases feed the alias matching strategy. They come from three places:
manual entry, user corrections of a wrong vendor match, and a learning pass
over the vendor names recorded in field provenance.
"""

from collections import defaultdict
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from config.logging import get_logger
from config.settings import settings
from processing.errors import NotFoundError, ValidationError
from processing.models import EntityKind, FieldProvenance, Vendor, VendorAlias, utcnow
from processing.entity_resolution.matchers import normalize_name

logger = get_logger("aliases")

CORRECTION_START_CONFIDENCE = 0.9
CORRECTION_BOOST = 0.1
VENDOR_NAME_FIELDS = ("name", "vendor_name")


class AliasRegistry:
    """
    Persisted vendor aliases.

    Usage:
        registry = AliasRegistry(db)
        registry.add_alias(vendor.id, "MSFT")
        index = registry.load_index()
        detector = DuplicateDetector(alias_index=index)
    """

    def __init__(self, db: Session):
        self.db = db

    def _get_vendor(self, vendor_id: str) -> Vendor:
        vendor = self.db.get(Vendor, vendor_id)
        if vendor is None:
            raise NotFoundError("vendor", vendor_id)
        return vendor

    def _find(self, vendor_id: str, normalized_alias: str) -> Optional[VendorAlias]:
        return (
            self.db.query(VendorAlias)
            .filter(
                VendorAlias.vendor_id == vendor_id,
                VendorAlias.normalized_alias == normalized_alias,
            )
            .first()
        )

    def add_alias(
        self,
        vendor_id: str,
        alias: str,
        alias_type: str = "manual",
        confidence: Optional[float] = None,
        learned_from: Optional[str] = None,
    ) -> VendorAlias:
        """Add an alias, or raise the confidence of an existing one."""
        self._get_vendor(vendor_id)
        normalized = normalize_name(alias)
        if not normalized:
            raise ValidationError("Alias is empty after normalization", {"alias": alias})
        if confidence is None:
            confidence = settings.ALIAS_DEFAULT_CONFIDENCE
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError("Alias confidence must be within [0, 1]", {"confidence": confidence})

        row = self._find(vendor_id, normalized)
        if row is None:
            row = VendorAlias(
                vendor_id=vendor_id,
                alias=alias.strip(),
                normalized_alias=normalized,
                alias_type=alias_type,
                confidence=confidence,
                learned_from=learned_from,
            )
            self.db.add(row)
        elif confidence > row.confidence:
            row.confidence = confidence
        self.db.commit()
        logger.info(f"Alias '{alias}' -> vendor {vendor_id} ({alias_type}, conf={row.confidence:.2f})")
        return row

    def get_aliases(self, vendor_id: str) -> list[VendorAlias]:
        return (
            self.db.query(VendorAlias)
            .filter(VendorAlias.vendor_id == vendor_id)
            .order_by(VendorAlias.confidence.desc(), VendorAlias.alias)
            .all()
        )

    def remove_alias(self, alias_id: str):
        row = self.db.get(VendorAlias, alias_id)
        if row is None:
            raise NotFoundError("vendor_alias", alias_id)
        self.db.delete(row)
        self.db.commit()

    def load_index(self) -> dict[str, list[tuple[str, float]]]:
        """
        Normalized alias -> [(vendor_id, confidence)] for active vendors,
        strongest alias first.
        """
        rows = (
            self.db.query(VendorAlias.normalized_alias, VendorAlias.vendor_id, VendorAlias.confidence)
            .join(Vendor, Vendor.id == VendorAlias.vendor_id)
            .filter(Vendor.is_active.is_(True))
            .all()
        )
        index: dict[str, list[tuple[str, float]]] = defaultdict(list)
        for normalized_alias, vendor_id, confidence in rows:
            index[normalized_alias].append((vendor_id, float(confidence)))
        for entries in index.values():
            entries.sort(key=lambda e: (-e[1], e[0]))
        return dict(index)

    def record_user_correction(
        self, extracted_name: str, vendor_id: str, corrected_by: Optional[str] = None
    ) -> Optional[VendorAlias]:
        """
        A user mapped ``extracted_name`` to ``vendor_id`` by hand.

        Creates an alias at 0.9 confidence or reinforces an existing one by
        0.1 (capped at 1.0). Returns None when the name already normalizes to
        the vendor's own name.
        """
        vendor = self._get_vendor(vendor_id)
        normalized = normalize_name(extracted_name)
        if not normalized:
            raise ValidationError("Corrected name is empty", {"name": extracted_name})
        if normalized == normalize_name(vendor.name):
            return None

        row = self._find(vendor_id, normalized)
        if row is None:
            row = VendorAlias(
                vendor_id=vendor_id,
                alias=extracted_name.strip(),
                normalized_alias=normalized,
                alias_type="correction",
                confidence=CORRECTION_START_CONFIDENCE,
                usage_count=1,
                learned_from="user_correction",
                last_used_at=utcnow(),
            )
            self.db.add(row)
        else:
            row.confidence = min(1.0, round(row.confidence + CORRECTION_BOOST, 4))
            row.usage_count = (row.usage_count or 0) + 1
            row.last_used_at = utcnow()
        self.db.commit()

        logger.info(
            f"[CORRECTION] '{extracted_name}' -> {vendor.name} "
            f"by {corrected_by or 'unknown'} (conf={row.confidence:.2f})"
        )
        return row

    def _surviving_vendor_id(self, vendor_id: str) -> Optional[str]:
        """Follow merged_into_id to the active vendor, if any."""
        seen = set()
        current = self.db.get(Vendor, vendor_id)
        while current is not None and current.merged_into_id and current.id not in seen:
            seen.add(current.id)
            current = self.db.get(Vendor, current.merged_into_id)
        if current is None or not current.is_active:
            return None
        return current.id

    def learn_from_provenance(self, min_frequency: int = 3, min_confidence: float = 0.85) -> dict:
        """
        Learn aliases from vendor names that keep being extracted.

        A raw name seen at least ``min_frequency`` times for a vendor with an
        average extraction confidence of ``min_confidence`` becomes an alias
        with confidence ``min(0.95, 0.7 + frequency / 10 * 0.25)``. Best
        effort: each pattern is written in its own savepoint and a failure
        only increments the error count.
        """
        rows = (
            self.db.query(
                FieldProvenance.entity_id,
                FieldProvenance.raw_value,
                func.count(FieldProvenance.id),
                func.avg(FieldProvenance.confidence),
            )
            .filter(
                FieldProvenance.entity_type == EntityKind.VENDOR,
                FieldProvenance.field_name.in_(VENDOR_NAME_FIELDS),
                FieldProvenance.raw_value.isnot(None),
            )
            .group_by(FieldProvenance.entity_id, FieldProvenance.raw_value)
            .all()
        )

        # Different spellings of the same normalized name count together
        patterns: dict[tuple[str, str], dict] = {}
        for entity_id, raw_value, count, avg_confidence in rows:
            normalized = normalize_name(raw_value)
            if not normalized:
                continue
            entry = patterns.setdefault(
                (entity_id, normalized), {"alias": raw_value, "frequency": 0, "weighted": 0.0}
            )
            entry["frequency"] += count
            entry["weighted"] += float(avg_confidence or 0.0) * count

        stats = {"patterns": 0, "created": 0, "errors": 0}
        for (entity_id, normalized), entry in sorted(patterns.items()):
            frequency = entry["frequency"]
            average = entry["weighted"] / frequency
            if frequency < min_frequency or average < min_confidence:
                continue
            stats["patterns"] += 1
            try:
                with self.db.begin_nested():
                    vendor_id = self._surviving_vendor_id(entity_id)
                    if vendor_id is None:
                        continue
                    vendor = self.db.get(Vendor, vendor_id)
                    if normalized == normalize_name(vendor.name) or self._find(vendor_id, normalized):
                        continue
                    self.db.add(
                        VendorAlias(
                            vendor_id=vendor_id,
                            alias=entry["alias"].strip(),
                            normalized_alias=normalized,
                            alias_type="learned",
                            confidence=min(0.95, 0.7 + frequency / 10 * 0.25),
                            usage_count=frequency,
                            learned_from="provenance",
                        )
                    )
                    self.db.flush()
                    stats["created"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.warning(f"Failed to learn alias '{entry['alias']}' for {entity_id}: {e}")
        self.db.commit()

        logger.info(
            f"Alias learning: {stats['patterns']} patterns, "
            f"{stats['created']} created, {stats['errors']} errors"
        )
        return stats
