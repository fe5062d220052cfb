"""Incremental ingestion of the permit dataset driven by a rolling watermark."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence
import logging

from .socrata import SocrataError
from .staging import MalformedRecordError, parse_timestamp
from .upsert import UpsertResult


LOGGER = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
SYNC_MODES: tuple[str, ...] = ("historical", "incremental")


class InvalidSyncRequest(ValueError):
    """Raised for an unknown mode or an unusable ``since``/``until`` range."""


class PermitSource(Protocol):
    def fetch_page(
        self,
        *,
        after: datetime,
        after_id: str | None = None,
        until: datetime | None = None,
        limit: int = 5000,
    ) -> List[Dict[str, Any]]: ...

    def newest_updated_after(self, watermark: datetime) -> Optional[str]: ...


class PageWriter(Protocol):
    def apply(self, records: Sequence[Mapping[str, Any]]) -> UpsertResult: ...


class WatermarkStore(Protocol):
    def get_watermark(self, dataset_id: str) -> Optional[datetime]: ...

    def advance_watermark(self, dataset_id: str, watermark: datetime) -> Optional[datetime]: ...


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class SyncResult:
    mode: str
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    new_watermark: Optional[datetime] = None
    pages: int = 0
    skipped: bool = False
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    @property
    def explicit_range(self) -> bool:
        return self.since is not None or self.until is not None

    @property
    def message(self) -> str:
        if self.skipped:
            return "No new data to sync"
        text = (
            f"Processed {self.processed} records ({self.inserted} inserted, "
            f"{self.updated} updated) in {self.mode} mode"
        )
        if self.explicit_range:
            start = _isoformat(self.since) or "start"
            end = _isoformat(self.until) or "end"
            text += f" (date range: {start} to {end})"
        return text

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": True,
            "mode": self.mode,
            "totalProcessed": self.processed,
            "totalInserted": self.inserted,
            "totalUpdated": self.updated,
            "lastSyncedUpdatedAt": _isoformat(self.new_watermark),
            "dateRange": (
                {"since": _isoformat(self.since), "until": _isoformat(self.until)}
                if self.explicit_range
                else None
            ),
            "message": self.message,
        }


def _parse_bound(value: datetime | str | None, name: str) -> Optional[datetime]:
    try:
        return parse_timestamp(value, name)
    except MalformedRecordError as exc:
        raise InvalidSyncRequest(f"Invalid {name} timestamp: {value!r}") from exc


class IngestionEngine:
    """Pull pages newer than the watermark and apply each one atomically.

    Pages are fetched and applied strictly one after another.  The rolling
    watermark only ever takes the page maximum reported by the store, and the
    persisted watermark is written once, after every page has committed, and
    only for runs that did not supply an explicit ``since``/``until``.
    """

    def __init__(
        self,
        source: PermitSource,
        writer: PageWriter,
        state: WatermarkStore,
        *,
        dataset_id: str,
        page_size: int = 5000,
        preflight: bool = True,
    ) -> None:
        self.source = source
        self.writer = writer
        self.state = state
        self.dataset_id = dataset_id
        self.page_size = page_size
        self.preflight = preflight

    def sync(
        self,
        mode: str = "incremental",
        since: datetime | str | None = None,
        until: datetime | str | None = None,
    ) -> SyncResult:
        if mode not in SYNC_MODES:
            raise InvalidSyncRequest(f"Unknown sync mode {mode!r}; expected one of {', '.join(SYNC_MODES)}")
        since_at = _parse_bound(since, "since")
        until_at = _parse_bound(until, "until")
        if since_at is not None and until_at is not None and since_at > until_at:
            raise InvalidSyncRequest("since must not be later than until")

        result = SyncResult(mode=mode, since=since_at, until=until_at)
        stored: Optional[datetime] = None
        if since_at is not None:
            start = since_at
        elif mode == "historical":
            start = EPOCH
        else:
            stored = self.state.get_watermark(self.dataset_id)
            start = stored or EPOCH

        if mode == "incremental" and not result.explicit_range and stored is not None and self.preflight:
            if not self._has_newer(stored):
                LOGGER.info("Nothing newer than %s upstream; skipping run", stored.isoformat())
                result.skipped = True
                result.new_watermark = stored
                return result

        LOGGER.info("Starting %s sync from %s", mode, start.isoformat())
        self._paginate(start, until_at, result)

        if not result.explicit_range and result.new_watermark is not None:
            persisted = self.state.advance_watermark(self.dataset_id, result.new_watermark)
            LOGGER.info("Watermark for %s is now %s", self.dataset_id, _isoformat(persisted))
        LOGGER.info(result.message)
        return result

    def _has_newer(self, watermark: datetime) -> bool:
        try:
            newest = self.source.newest_updated_after(watermark)
        except SocrataError as exc:
            LOGGER.warning("Preflight probe failed (%s); paginating anyway", exc)
            return True
        return newest is not None

    def _paginate(self, start: datetime, until: Optional[datetime], result: SyncResult) -> None:
        rolling = start
        after_id: Optional[str] = None
        while True:
            records = self.source.fetch_page(
                after=rolling,
                after_id=after_id,
                until=until,
                limit=self.page_size,
            )
            if not records:
                break

            outcome = self.writer.apply(records)
            result.pages += 1
            result.processed += len(records)
            result.inserted += outcome.inserted
            result.updated += outcome.updated
            if outcome.max_updated_at is not None and outcome.max_updated_at > rolling:
                rolling = outcome.max_updated_at
            after_id = records[-1].get(":id")
            result.new_watermark = rolling
            LOGGER.info(
                "Page %s: %s records, watermark %s",
                result.pages,
                len(records),
                rolling.isoformat(),
            )

            if len(records) < self.page_size:
                break


__all__ = [
    "EPOCH",
    "IngestionEngine",
    "InvalidSyncRequest",
    "SYNC_MODES",
    "SyncResult",
]
