"""Bulk upsert of one page of permit records into the normalized store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence
import logging

import psycopg

from .postgres import PostgresClient
from .staging import (
    BUILDING_COLUMNS,
    DETAIL_COLUMNS,
    ENTITY_COLUMNS,
    PERMIT_COLUMNS,
    StagedPage,
    stage_page,
)


LOGGER = logging.getLogger(__name__)

STAGE_TABLE = "dob_permits_page_stage"


@dataclass(frozen=True)
class UpsertResult:
    inserted: int
    updated: int
    max_updated_at: Optional[datetime]
    located: int = 0


def _assignments(columns: Sequence[str], *, skip: str) -> str:
    return ",\n                ".join(f"{column} = EXCLUDED.{column}" for column in columns if column != skip)


def _placeholders(columns: Sequence[str]) -> str:
    return ", ".join(["%s"] * len(columns))


CREATE_STAGE_SQL = f"""
    CREATE TEMP TABLE {STAGE_TABLE} (
        ord INTEGER NOT NULL,
        id TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        borough TEXT,
        bin TEXT,
        permit_number TEXT,
        gis_latitude DOUBLE PRECISION,
        gis_longitude DOUBLE PRECISION,
        community_board TEXT,
        council_district TEXT,
        nta_name TEXT,
        zipcode TEXT,
        permit_issuance_date TIMESTAMPTZ,
        expiration_date TIMESTAMPTZ,
        job_start_date TIMESTAMPTZ,
        permit_status TEXT,
        permit_type TEXT,
        work_type TEXT,
        job_type TEXT,
        bldg_type TEXT,
        residential TEXT,
        dobrundate TIMESTAMPTZ,
        raw TEXT NOT NULL
    ) ON COMMIT DROP
"""

UPSERT_BUILDINGS_SQL = f"""
    INSERT INTO dob_buildings ({", ".join(BUILDING_COLUMNS)})
    VALUES ({_placeholders(BUILDING_COLUMNS)})
    ON CONFLICT (bin) DO UPDATE SET
                {_assignments(BUILDING_COLUMNS, skip="bin")}
"""

UPSERT_DETAILS_SQL = f"""
    INSERT INTO dob_permit_details ({", ".join(DETAIL_COLUMNS)})
    VALUES ({_placeholders(DETAIL_COLUMNS)})
    ON CONFLICT (permit_number) DO UPDATE SET
                {_assignments(DETAIL_COLUMNS, skip="permit_number")}
"""

# Rows without a business name never match the partial unique index and are
# always inserted.
UPSERT_ENTITIES_SQL = f"""
    INSERT INTO dob_entities ({", ".join(ENTITY_COLUMNS)})
    VALUES ({_placeholders(ENTITY_COLUMNS)})
    ON CONFLICT (entity_type, business_name) WHERE business_name IS NOT NULL
    DO UPDATE SET
                {_assignments(ENTITY_COLUMNS, skip="entity_type")}
"""

_PERMIT_SELECT = ",\n                ".join(
    "raw::jsonb" if column == "raw" else column for column in PERMIT_COLUMNS
)

UPSERT_PERMITS_SQL = f"""
    WITH upserted AS (
        INSERT INTO dob_permits AS target ({", ".join(PERMIT_COLUMNS)})
        SELECT DISTINCT ON (id)
                {_PERMIT_SELECT}
        FROM {STAGE_TABLE}
        ORDER BY id, updated_at DESC, ord DESC
        ON CONFLICT (id) DO UPDATE SET
                {_assignments(PERMIT_COLUMNS, skip="id")}
        WHERE (target.updated_at, target.raw) IS DISTINCT FROM (EXCLUDED.updated_at, EXCLUDED.raw)
        RETURNING (xmax = 0) AS was_inserted
    )
    SELECT
        COUNT(*) FILTER (WHERE was_inserted),
        COUNT(*) FILTER (WHERE NOT was_inserted),
        (SELECT max(updated_at) FROM {STAGE_TABLE})
    FROM upserted
"""


class PermitUpsert:
    """Apply a page of raw records to all four permit tables in one transaction.

    The permit rows pass through a temporary staging table so that duplicate
    ids within the page collapse to the newest version, and so that the page
    high-water mark is computed by the database rather than in Python.
    Re-delivering an unchanged record rewrites nothing and is counted as
    neither inserted nor updated.
    """

    def __init__(self, pg: PostgresClient) -> None:
        self.pg = pg

    def apply(self, records: Sequence[Mapping[str, Any]]) -> UpsertResult:
        if not records:
            return UpsertResult(inserted=0, updated=0, max_updated_at=None)

        staged = stage_page(records)
        with self.pg.transaction() as conn:
            inserted, updated, max_updated_at = self._write(conn, staged)

        LOGGER.info(
            "Applied page of %s records: %s inserted, %s updated, %s located, max updated_at %s",
            len(records),
            inserted,
            updated,
            staged.located,
            max_updated_at,
        )
        return UpsertResult(
            inserted=inserted,
            updated=updated,
            max_updated_at=max_updated_at,
            located=staged.located,
        )

    def _write(self, conn: psycopg.Connection, staged: StagedPage) -> tuple[int, int, Optional[datetime]]:
        with conn.cursor() as cur:
            if staged.buildings:
                cur.executemany(UPSERT_BUILDINGS_SQL, staged.buildings)
            if staged.details:
                cur.executemany(UPSERT_DETAILS_SQL, staged.details)
            if staged.entities:
                cur.executemany(UPSERT_ENTITIES_SQL, staged.entities)

            cur.execute(CREATE_STAGE_SQL)
        self.pg.copy_rows(STAGE_TABLE, ("ord", *PERMIT_COLUMNS), staged.permits, conn=conn)

        row = conn.execute(UPSERT_PERMITS_SQL).fetchone()
        if row is None:
            return 0, 0, None
        return int(row[0] or 0), int(row[1] or 0), row[2]


__all__ = ["PermitUpsert", "UpsertResult"]
