"""Bootstrap DDL for the normalized permit store, sync state and tile cache."""

from __future__ import annotations

import logging

from .postgres import PostgresClient
from .state import DDL as SYNC_STATE_DDL
from ..tiles.cache import DDL as TILE_CACHE_DDL, INDEX_DDL as TILE_CACHE_INDEX_DDL


LOGGER = logging.getLogger(__name__)


BASE_TABLE_DDLS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS dob_buildings (
        bin TEXT PRIMARY KEY,
        block TEXT,
        lot TEXT,
        borough TEXT,
        street_name TEXT,
        house_no TEXT,
        bbl TEXT GENERATED ALWAYS AS (
            CASE
                WHEN borough IS NOT NULL AND block IS NOT NULL AND lot IS NOT NULL
                THEN borough || LPAD(block, 5, '0') || LPAD(lot, 4, '0')
                ELSE NULL
            END
        ) STORED,
        zipcode TEXT,
        census_tract TEXT,
        nta_name TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dob_permit_details (
        permit_number TEXT PRIMARY KEY,
        job_number TEXT,
        permit_sequence_no TEXT,
        permit_subtype TEXT,
        filing_status TEXT,
        filing_date TIMESTAMPTZ,
        site_fill TEXT,
        oil_gas TEXT,
        self_cert TEXT,
        special_district_1 TEXT,
        special_district_2 TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dob_entities (
        entity_id BIGSERIAL PRIMARY KEY,
        entity_type TEXT NOT NULL CHECK (entity_type IN ('owner', 'permittee')),
        full_name TEXT,
        business_name TEXT,
        license_type TEXT,
        license_number TEXT,
        phone TEXT,
        address TEXT,
        city TEXT,
        state TEXT,
        zip TEXT
    )
    """,
    # geom is derived from the coordinates and cannot be written directly.
    """
    CREATE TABLE IF NOT EXISTS dob_permits (
        id TEXT PRIMARY KEY,
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
        raw JSONB NOT NULL,
        geom geometry(POINT, 4326) GENERATED ALWAYS AS (
            CASE
                WHEN gis_latitude BETWEEN -90 AND 90
                 AND gis_longitude BETWEEN -180 AND 180
                THEN ST_SetSRID(ST_MakePoint(gis_longitude, gis_latitude), 4326)
                ELSE NULL
            END
        ) STORED
    )
    """,
)


INDEX_DDLS: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_dob_buildings_bbl ON dob_buildings (bbl)",
    "CREATE INDEX IF NOT EXISTS idx_dob_buildings_borough ON dob_buildings (borough)",
    "CREATE INDEX IF NOT EXISTS idx_dob_permit_details_job_number ON dob_permit_details (job_number)",
    "CREATE INDEX IF NOT EXISTS idx_dob_entities_entity_type ON dob_entities (entity_type)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_dob_entities_unique_business_type
        ON dob_entities (entity_type, business_name)
        WHERE business_name IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_dob_permits_updated_at ON dob_permits (updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_dob_permits_issuance_date ON dob_permits (permit_issuance_date)",
    "CREATE INDEX IF NOT EXISTS idx_dob_permits_bin ON dob_permits (bin)",
    "CREATE INDEX IF NOT EXISTS idx_dob_permits_permit_number ON dob_permits (permit_number)",
    "CREATE INDEX IF NOT EXISTS idx_dob_permits_geom ON dob_permits USING GIST (geom)",
    """
    CREATE INDEX IF NOT EXISTS idx_dob_permits_geom_issuance
        ON dob_permits (permit_issuance_date)
        WHERE geom IS NOT NULL
    """,
)


def ensure_schema(pg: PostgresClient) -> None:
    """Create every table and index the ingestion and tile paths rely on (idempotent)."""

    LOGGER.info("Ensuring PostGIS extension")
    pg.ensure_extensions()
    for ddl in (*BASE_TABLE_DDLS, SYNC_STATE_DDL, TILE_CACHE_DDL):
        pg.execute(ddl)
    for ddl in (*INDEX_DDLS, TILE_CACHE_INDEX_DDL):
        pg.execute(ddl)
    LOGGER.info("Permit store schema is up to date")


__all__ = ["ensure_schema", "BASE_TABLE_DDLS", "INDEX_DDLS"]
