from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional

from loguru import logger
from tortoise import timezone
from tortoise.exceptions import BaseORMException, IntegrityError
from tortoise.functions import Avg
from tortoise.transactions import in_transaction

from pixiv_crawler.exceptions import PersistenceError
from pixiv_crawler.monitoring.metrics_server import (
    ARTWORKS_PERSISTED,
    DUPLICATE_ARTWORKS,
    PERSIST_FAILURES,
)
from pixiv_crawler.pixiv_client import ArtworkMetadata
from pixiv_crawler.storage.models import Pic, Ranking


UNIQUE_VIOLATION = "23505"
DUPLICATE_MARKERS = ("duplicate key", "unique constraint failed")
TAG_SEPARATOR = ", "


@dataclass
class RankingEntry:
    pid: str
    rank: int
    rank_type: str
    rank_date: date
    captured_at: datetime


def is_duplicate_key(exc: BaseException) -> bool:
    """True when a store error is a unique-key violation rather than a real failure."""
    candidates = [exc, exc.__cause__, exc.__context__, *getattr(exc, "args", ())]
    for candidate in candidates:
        if getattr(candidate, "sqlstate", None) == UNIQUE_VIOLATION:
            return True
    message = str(exc).lower()
    return any(marker in message for marker in DUPLICATE_MARKERS)


class ArtworkStorageManager:
    """Artwork records and ranking rows in the remote store."""

    def __init__(self, *, log=logger):
        self.log = log

    def with_logger(self, log) -> "ArtworkStorageManager":
        return ArtworkStorageManager(log=log)

    async def save_artwork(self, meta: ArtworkMetadata, popularity: float) -> bool:
        """
        Insert a new artwork record.

        Returns False when the pid is already stored; the existing row is left
        untouched. Any other write error is raised as PersistenceError.
        """
        try:
            await Pic.create(
                pid=meta.id,
                captured_at=timezone.now(),
                tags=TAG_SEPARATOR.join(meta.tags),
                like_count=meta.like_count,
                bookmark_count=meta.bookmark_count,
                view_count=meta.view_count,
                popularity=popularity,
            )
        except IntegrityError as exc:
            if is_duplicate_key(exc):
                DUPLICATE_ARTWORKS.inc()
                self.log.info(f"Artwork {meta.id} already stored, skipping")
                return False
            PERSIST_FAILURES.inc()
            raise PersistenceError(f"Failed to save artwork: {exc}", pid=meta.id) from exc
        except BaseORMException as exc:
            PERSIST_FAILURES.inc()
            raise PersistenceError(f"Failed to save artwork: {exc}", pid=meta.id) from exc

        ARTWORKS_PERSISTED.inc()
        self.log.info(f"Saved artwork {meta.id} (popularity={popularity})")
        return True

    async def upsert_artwork_stats(self, meta: ArtworkMetadata, popularity: float) -> None:
        """Refresh engagement counts, creating the record when it is missing."""
        try:
            _, created = await Pic.update_or_create(
                pid=meta.id,
                defaults={
                    "captured_at": timezone.now(),
                    "tags": TAG_SEPARATOR.join(meta.tags),
                    "like_count": meta.like_count,
                    "bookmark_count": meta.bookmark_count,
                    "view_count": meta.view_count,
                    "popularity": popularity,
                },
            )
        except BaseORMException as exc:
            PERSIST_FAILURES.inc()
            raise PersistenceError(f"Failed to update artwork stats: {exc}", pid=meta.id) from exc

        if created:
            ARTWORKS_PERSISTED.inc()
        self.log.debug(f"Artwork {meta.id} stats stored (popularity={popularity})")

    async def upsert_rankings(self, entries: Iterable[RankingEntry]) -> int:
        """Write ranking rows keyed by (rank_type, rank_date, pid); existing rows are replaced."""
        entries = list(entries)
        if not entries:
            return 0

        try:
            async with in_transaction() as conn:
                for entry in entries:
                    await Ranking.update_or_create(
                        rank_type=entry.rank_type,
                        rank_date=entry.rank_date,
                        pid=entry.pid,
                        defaults={
                            "rank": entry.rank,
                            "captured_at": entry.captured_at,
                        },
                        using_db=conn,
                    )
        except BaseORMException as exc:
            PERSIST_FAILURES.inc()
            raise PersistenceError(f"Failed to store {len(entries)} ranking rows: {exc}") from exc

        self.log.info(f"Stored {len(entries)} {entries[0].rank_type} ranking rows")
        return len(entries)

    async def get_artwork(self, pid: str) -> Optional[Pic]:
        return await Pic.get_or_none(pid=pid)

    async def stats(self) -> Dict[str, Any]:
        total = await Pic.all().count()
        downloaded = await Pic.exclude(image_path="").count()
        rows = await Pic.annotate(avg=Avg("popularity")).values("avg")
        average = rows[0]["avg"] if rows else None
        return {
            "total": total,
            "downloaded": downloaded,
            "average_popularity": round(float(average), 4) if average is not None else 0.0,
        }
