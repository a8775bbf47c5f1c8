"""
Pytest configuration and fixtures for the customer import tests.

Each test gets its own SQLite database file under ``tmp_path`` with every
import and customer table created, plus a pipeline wired to a SQL-backed
customer store and a recording audit sink.
"""

import os

# The app module builds its own pipeline only when started; never bootstrap a real database in tests.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from customer_import.core.config import Settings
from customer_import.db.session import init_db
from customer_import.domain.customers.store import SqlCustomerStore
from customer_import.domain.imports.pipeline import ImportPipeline

ORG_ID = 1
OTHER_ORG_ID = 2
USER_ID = 10

CUSTOMER_HEADER = ["Kundenavn", "Adresse", "Postnr", "Poststed", "Telefon", "E-post", "Kundenr"]

CUSTOMER_MAPPING = {
    "mappings": [
        {"source_column": "Kundenavn", "target_field": "name"},
        {"source_column": "Adresse", "target_field": "address"},
        {"source_column": "Postnr", "target_field": "postal_code"},
        {"source_column": "Poststed", "target_field": "city"},
        {"source_column": "Telefon", "target_field": "phone"},
        {"source_column": "E-post", "target_field": "email"},
        {"source_column": "Kundenr", "target_field": "external_id"},
    ]
}


def make_csv(rows, delimiter=";", encoding="utf-8") -> bytes:
    """Render rows (first one is the header) as delimited text."""
    return "\n".join(delimiter.join(str(cell) for cell in row) for row in rows).encode(encoding)


def three_row_csv() -> bytes:
    """Row 2 lacks the required name; rows 3 and 4 are valid new customers."""
    return make_csv([
        CUSTOMER_HEADER,
        ["", "Storgata 5", "0184", "Oslo", "+47 912 34 567", "post@nordlys.no", "K-1"],
        ["Fjordkraft Service AS", "Bryggen 12", "5003", "Bergen", "55 12 34 56", "kontakt@fjord.no", "K-2"],
        ["Trondheim Brann AS", "Munkegata 1", "7011", "Trondheim", "73 50 00 00", "", "K-3"],
    ])


class RecordingAuditSink:
    """Audit sink that keeps every event in memory."""

    def __init__(self):
        self.events = []

    def record(self, event, *, organization_id, user_id, batch_id, details):
        self.events.append({
            "event": event,
            "organization_id": organization_id,
            "user_id": user_id,
            "batch_id": batch_id,
            "details": details,
        })

    @property
    def names(self):
        return [e["event"] for e in self.events]


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'imports.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def store(session_factory):
    return SqlCustomerStore(session_factory)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        upload_max_file_size_mb=1,
        import_max_rows=50,
        preview_page_size=10,
        preview_page_size_max=25,
        import_parallel_max_workers=2,
        import_chunk_size=2,
        import_stage_timeout_seconds=30,
    )


@pytest.fixture
def pipeline(session_factory, store, audit_sink, test_settings):
    pipeline = ImportPipeline(session_factory, store, audit_sink=audit_sink, settings=test_settings)
    yield pipeline
    pipeline.close()


@pytest.fixture
def validated_batch(pipeline):
    """Batch from ``three_row_csv`` that has been mapped and validated."""
    upload = pipeline.upload(ORG_ID, USER_ID, three_row_csv(), "kunder.csv")
    pipeline.apply_mapping(ORG_ID, USER_ID, upload.batch.id, mapping=CUSTOMER_MAPPING)
    pipeline.validate(ORG_ID, USER_ID, upload.batch.id)
    return upload.batch.id


def row_ids_by_number(pipeline, batch_id, organization_id=ORG_ID):
    page = pipeline.get_preview(organization_id, batch_id, limit=25)
    return {row.row_number: row.row_id for row in page.rows}
