"""Read-only summaries of what the permit store holds."""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List

from .etl.postgres import PostgresClient


DATE_COLUMNS: tuple[tuple[str, str], ...] = (
    ("dob_permits", "permit_issuance_date"),
    ("dob_permits", "updated_at"),
    ("dob_permits", "job_start_date"),
    ("dob_permits", "expiration_date"),
    ("dob_permit_details", "filing_date"),
)


def date_coverage(pg: PostgresClient) -> List[Dict[str, Any]]:
    """Min/max and null counts for every date column, ordered by column name."""

    selects = [
        f"""
        SELECT
            '{column}' AS date_column,
            min({column}) AS min_date,
            max({column}) AS max_date,
            count(*) AS total_records,
            count({column}) AS records_with_date
        FROM {table}
        """
        for table, column in DATE_COLUMNS
    ]
    rows = pg.fetch_all(" UNION ALL ".join(selects) + " ORDER BY date_column")
    return [
        {
            "column": row[0],
            "minDate": row[1].isoformat() if row[1] else None,
            "maxDate": row[2].isoformat() if row[2] else None,
            "totalRecords": int(row[3]),
            "recordsWithDate": int(row[4]),
            "recordsWithNullDate": int(row[3]) - int(row[4]),
        }
        for row in rows
    ]


def daily_summary(pg: PostgresClient, day: date) -> Dict[str, Any]:
    """Counts of permits issued on ``day`` (UTC), overall and by type/status and borough."""

    where = "(permit_issuance_date AT TIME ZONE 'UTC')::date = %s"
    totals = pg.fetch_one(
        f"""
        SELECT
            count(*),
            count(*) FILTER (WHERE geom IS NOT NULL),
            count(DISTINCT permit_type),
            count(DISTINCT borough)
        FROM dob_permits
        WHERE {where}
        """,
        (day,),
    )
    by_type = pg.fetch_all(
        f"""
        SELECT permit_type, permit_status, count(*) AS n
        FROM dob_permits
        WHERE {where}
        GROUP BY permit_type, permit_status
        ORDER BY n DESC, permit_type NULLS LAST, permit_status NULLS LAST
        """,
        (day,),
    )
    by_borough = pg.fetch_all(
        f"""
        SELECT borough, count(*) AS n
        FROM dob_permits
        WHERE {where}
        GROUP BY borough
        ORDER BY n DESC, borough NULLS LAST
        """,
        (day,),
    )
    totals = totals or (0, 0, 0, 0)
    return {
        "date": day.isoformat(),
        "totalPermits": int(totals[0]),
        "mappablePermits": int(totals[1]),
        "distinctPermitTypes": int(totals[2]),
        "distinctBoroughs": int(totals[3]),
        "byType": [
            {"permitType": row[0], "permitStatus": row[1], "count": int(row[2])} for row in by_type
        ],
        "byBorough": [{"borough": row[0], "count": int(row[1])} for row in by_borough],
    }


__all__ = ["DATE_COLUMNS", "daily_summary", "date_coverage"]
