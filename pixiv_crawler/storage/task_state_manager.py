from __future__ import annotations

import random
from typing import Dict, Iterable, List, Optional, Union

from loguru import logger
from tortoise import timezone
from tortoise.exceptions import BaseORMException

from pixiv_crawler.exceptions import PersistenceError
from pixiv_crawler.storage.models import Pic, PicTask, TaskFlag


DEFAULT_PAGE_SIZE = 1000

FlagLike = Union[TaskFlag, str]


class TaskStateManager:
    """Durable per-artwork work queue kept in the ``pic_task`` table.

    Rows are created with every flag false and each flag is flipped to true
    exactly once, when its crawl step succeeds. The orchestrator scans for
    false flags; nothing is cached in process.
    """

    def __init__(self, *, page_size: int = DEFAULT_PAGE_SIZE, log=logger) -> None:
        self.page_size = page_size
        self.log = log

    # -------------------------------------------------------
    # Creation
    # -------------------------------------------------------

    async def create_or_update(self, pid: str) -> None:
        # Existing rows keep their flags.
        await PicTask.get_or_create(pid=str(pid))

    async def batch_create(self, pids: Iterable[str]) -> int:
        unique = list(dict.fromkeys(str(pid) for pid in pids if pid))
        if not unique:
            return 0

        await PicTask.bulk_create(
            [PicTask(pid=pid) for pid in unique],
            ignore_conflicts=True,
        )
        self.log.debug(f"Registered {len(unique)} pic tasks")
        return len(unique)

    # -------------------------------------------------------
    # Completion flags
    # -------------------------------------------------------

    async def update_flag(self, pid: str, flag: FlagLike, count: Optional[int] = None) -> None:
        """Mark one crawl step done. Write errors propagate as PersistenceError."""
        flag = TaskFlag(flag)
        now = timezone.now()
        values: Dict[str, object] = {
            flag.crawled_field: True,
            flag.time_field: now,
            "updated_at": now,
        }
        if flag.count_field is not None:
            values[flag.count_field] = count or 0

        try:
            updated = await PicTask.filter(pid=pid).update(**values)
            if not updated:
                await PicTask.create(pid=pid, **values)
        except BaseORMException as exc:
            self.log.error(f"Could not record {flag.value} for {pid}: {exc}")
            raise PersistenceError(f"Failed to update {flag.value} flag", pid=pid) from exc

    # -------------------------------------------------------
    # Queries
    # -------------------------------------------------------

    async def get_one(self, pid: str) -> Optional[PicTask]:
        return await PicTask.get_or_none(pid=pid)

    async def list_uncompleted(
        self,
        flag: FlagLike,
        limit: int,
        *,
        min_popularity: Optional[float] = None,
    ) -> List[str]:
        """
        Up to ``limit`` pids whose flag is still false, oldest update first.

        Scans page by page so a popularity filter that rejects most of a page
        still finds ``limit`` matches further down the table. With
        ``min_popularity`` only pids whose recorded popularity reaches it
        qualify.
        """
        flag = TaskFlag(flag)
        found: List[str] = []
        offset = 0

        while len(found) < limit:
            page = await (
                PicTask.filter(**{flag.crawled_field: False})
                .order_by("updated_at", "pid")
                .offset(offset)
                .limit(self.page_size)
                .values_list("pid", flat=True)
            )
            if not page:
                break

            candidates = list(page)
            if min_popularity is not None:
                candidates = await self._with_min_popularity(candidates, min_popularity)
            found.extend(candidates[: limit - len(found)])

            if len(page) < self.page_size:
                break
            offset += self.page_size

        return found

    async def _with_min_popularity(self, pids: List[str], min_popularity: float) -> List[str]:
        allowed = set(
            await Pic.filter(pid__in=pids, popularity__gte=min_popularity).values_list(
                "pid", flat=True
            )
        )
        return [pid for pid in pids if pid in allowed]

    async def count_uncompleted(self, flag: FlagLike) -> int:
        flag = TaskFlag(flag)
        return await PicTask.filter(**{flag.crawled_field: False}).count()

    async def sample_known_pids(self, count: int) -> List[str]:
        """Random pids from a random window of the table."""
        total = await PicTask.all().count()
        if total == 0 or count <= 0:
            return []

        window = min(total, count * 5)
        offset = random.randint(0, total - window)
        pids = await (
            PicTask.all()
            .order_by("pid")
            .offset(offset)
            .limit(window)
            .values_list("pid", flat=True)
        )
        pids = list(pids)
        return random.sample(pids, min(count, len(pids)))
