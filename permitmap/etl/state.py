"""Persistence of the sync high-water mark across ingestion runs."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .postgres import PostgresClient


DDL = """
CREATE TABLE IF NOT EXISTS dataset_sync_state (
    dataset_id TEXT PRIMARY KEY,
    last_synced_updated_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""


class SyncStateStore:
    """Reads and writes the per-dataset watermark using PostgreSQL.

    Writes merge with ``GREATEST`` so that the stored value can only move
    forward, whatever order concurrent writers land in.
    """

    def __init__(self, client: PostgresClient) -> None:
        self.client = client

    def get_watermark(self, dataset_id: str) -> Optional[datetime]:
        row = self.client.fetch_one(
            "SELECT last_synced_updated_at FROM dataset_sync_state WHERE dataset_id = %s",
            (dataset_id,),
        )
        # No row means no incremental run has completed; permits loaded by
        # explicit-range runs must not move the starting point.
        return row[0] if row else None

    def advance_watermark(self, dataset_id: str, watermark: datetime) -> Optional[datetime]:
        row = self.client.fetch_one(
            """
            INSERT INTO dataset_sync_state AS state (dataset_id, last_synced_updated_at)
            VALUES (%s, %s)
            ON CONFLICT (dataset_id)
            DO UPDATE SET
                last_synced_updated_at = GREATEST(state.last_synced_updated_at, EXCLUDED.last_synced_updated_at),
                updated_at = NOW()
            RETURNING last_synced_updated_at
            """,
            (dataset_id, watermark),
        )
        return row[0] if row else None


__all__ = ["SyncStateStore", "DDL"]
