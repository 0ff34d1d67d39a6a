"""
Integration test fixtures — PostgreSQL testcontainer and schema setup.

Provides a real PostgreSQL instance for each test session via testcontainers.
Creates every table through the production schema (apply_schema).
Each test gets a fresh, clean database via truncation.
"""

from __future__ import annotations

from collections.abc import Iterator

import psycopg
import pytest
from psycopg.types.json import Jsonb
from testcontainers.postgres import PostgresContainer

from tests.conftest import make_batch
from vc_pipeline.adapters.schema import TABLES, apply_schema
from vc_pipeline.domain.models import BatchRecord, InspectionRecord

TRUNCATE_ALL = f"TRUNCATE {', '.join(TABLES)} CASCADE;"


def psycopg_dsn(container: PostgresContainer) -> str:
    return container.get_connection_url().replace("postgresql+psycopg2", "postgresql")


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Start a PostgreSQL container for the entire test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        apply_schema(psycopg_dsn(pg))
        yield pg


@pytest.fixture()
def dsn(postgres_container: PostgresContainer) -> str:
    """Return a psycopg-compatible DSN and truncate all tables before each test."""
    connection_url = psycopg_dsn(postgres_container)
    with psycopg.connect(connection_url) as conn:
        conn.execute(TRUNCATE_ALL)
        conn.commit()
    return connection_url


def insert_batch(dsn: str, batch: BatchRecord | None = None) -> BatchRecord:
    """Seed a row in the collaborator-owned batches table."""
    batch = batch or make_batch()
    with psycopg.connect(dsn) as conn:
        conn.execute(
            "INSERT INTO batches (id, product_type, product_name, farmer_id, farmer_name,"
            " farmer_organization, quantity, unit, harvest_date, location, status)"
            " VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                batch.id,
                batch.product_type,
                batch.product_name,
                batch.farmer_id,
                batch.farmer_name,
                batch.farmer_organization,
                batch.quantity,
                batch.unit,
                batch.harvest_date,
                Jsonb(dict(batch.location)),
                batch.status,
            ),
        )
        conn.commit()
    return batch


def insert_inspection(dsn: str, inspection: InspectionRecord) -> InspectionRecord:
    """Seed a row in the collaborator-owned inspections table."""
    with psycopg.connect(dsn) as conn:
        conn.execute(
            "INSERT INTO inspections (id, batch_id, inspector_id, inspector_name, status,"
            " outcome, quality_grade, readings, overall_score, inspected_at, completed_at)"
            " VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                inspection.id,
                inspection.batch_id,
                inspection.inspector_id,
                inspection.inspector_name,
                inspection.status,
                Jsonb(dict(inspection.outcome or {})),
                inspection.quality_grade,
                Jsonb(inspection.readings),
                inspection.overall_score,
                inspection.inspected_at,
                inspection.completed_at,
            ),
        )
        conn.commit()
    return inspection
