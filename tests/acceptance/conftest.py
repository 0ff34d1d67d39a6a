"""
Acceptance test fixtures — PostgreSQL testcontainer for end-to-end tests.

Reuses the same schema and truncation as integration tests but scoped for acceptance.
"""

from __future__ import annotations

from collections.abc import Iterator

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from tests.integration.conftest import TRUNCATE_ALL, psycopg_dsn
from vc_pipeline.adapters.schema import apply_schema


@pytest.fixture(scope="session")
def acceptance_pg() -> Iterator[PostgresContainer]:
    """Start a PostgreSQL container for the acceptance test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        apply_schema(psycopg_dsn(pg))
        yield pg


@pytest.fixture()
def acceptance_dsn(acceptance_pg: PostgresContainer) -> str:
    """Return a psycopg-compatible DSN and truncate all tables before each test."""
    connection_url = psycopg_dsn(acceptance_pg)
    with psycopg.connect(connection_url) as conn:
        conn.execute(TRUNCATE_ALL)
        conn.commit()
    return connection_url
