"""
Pytest fixtures: an in-memory SQLite registry per test.
"""

import sys
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from processing.database import enable_sqlite_savepoints, init_db, make_session_factory
from processing.models import Contact, Deal, DealContact, DuplicateCluster, SourceFile, Vendor


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_savepoints(engine)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """Session bound to a fresh schema."""
    session = make_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_vendor(db):
    def _make(id, name, **fields):
        vendor = Vendor(id=id, name=name, **fields)
        db.add(vendor)
        db.commit()
        return vendor
    return _make


@pytest.fixture
def make_deal(db):
    def _make(id, deal_name, **fields):
        deal = Deal(id=id, deal_name=deal_name, **fields)
        db.add(deal)
        db.commit()
        return deal
    return _make


@pytest.fixture
def make_contact(db):
    def _make(id, name, deal_ids=(), **fields):
        contact = Contact(id=id, name=name, **fields)
        db.add(contact)
        db.flush()
        for deal_id in deal_ids:
            db.add(DealContact(deal_id=deal_id, contact_id=id))
        db.commit()
        return contact
    return _make


@pytest.fixture
def make_source_file(db):
    def _make(id, filename, file_type="mbox"):
        source = SourceFile(id=id, filename=filename, file_type=file_type)
        db.add(source)
        db.commit()
        return source
    return _make


@pytest.fixture
def make_cluster(db):
    def _make(entity_type, entity_ids, confidence=0.9, id=None):
        ids = sorted(entity_ids)
        cluster = DuplicateCluster(
            id=id or "cluster-" + "-".join(ids),
            cluster_key="|".join(ids),
            entity_type=entity_type,
            entity_ids=ids,
            cluster_size=len(ids),
            confidence_score=confidence,
        )
        db.add(cluster)
        db.commit()
        return cluster
    return _make


@pytest.fixture
def acme_deals(make_vendor, make_deal):
    """Two registrations of the same Azure deal plus an unrelated Globex deal."""
    make_vendor("vendor-ms", "Microsoft Corporation", email_domains=["microsoft.com"])
    make_deal(
        "deal-1",
        "Azure Migration for Acme",
        customer_name="Acme Corporation",
        vendor_id="vendor-ms",
        deal_value=Decimal("250000.00"),
        close_date=date(2024, 6, 30),
        source_file_ids=["file-1"],
        ai_confidence_score=0.9,
        created_at=datetime(2024, 1, 1, 9, 0),
    )
    make_deal(
        "deal-2",
        "Microsoft Azure Cloud Migration",
        customer_name="Acme Corp",
        vendor_id="vendor-ms",
        deal_value=Decimal("240000.00"),
        source_file_ids=["file-2"],
        ai_confidence_score=0.7,
        created_at=datetime(2024, 1, 2, 9, 0),
    )
    make_deal(
        "deal-3",
        "AWS Expansion Initiative",
        customer_name="Globex Corporation",
        source_file_ids=["file-3"],
        created_at=datetime(2024, 1, 3, 9, 0),
    )
