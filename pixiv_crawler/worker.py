import asyncio
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from loguru import logger
from tortoise import timezone

from pixiv_crawler.credentials import CredentialPool
from pixiv_crawler.exceptions import PersistenceError
from pixiv_crawler.frontier import GraphExpander
from pixiv_crawler.parsing.ranking_extractor import extract_artwork_ids, extract_ranking
from pixiv_crawler.pixiv_client import PixivClient, RankingMode
from pixiv_crawler.results import Empty, Failed, Ok
from pixiv_crawler.scoring import compute_popularity, should_persist
from pixiv_crawler.storage.artwork_storage_manager import ArtworkStorageManager, RankingEntry
from pixiv_crawler.storage.models import TaskFlag
from pixiv_crawler.storage.task_state_manager import TaskStateManager
from pixiv_crawler.utils.config_loader import Config


@dataclass
class CrawlSummary:
    seed: str
    task_id: str
    candidates: int = 0
    persisted: int = 0
    duplicates: int = 0
    failed: int = 0
    elapsed: float = 0.0

    @property
    def hit_ratio(self) -> float:
        return self.persisted / self.candidates if self.candidates else 0.0


def _millis() -> int:
    return int(time.time() * 1000)


class Worker:
    """
    One crawl node: seed expansion, ranking crawls and the three task steps
    that complete TaskState flags.

    Every public call takes a ``task_id`` and logs through a logger bound to
    it, so a crawl's records can be queried back by that id.
    """

    def __init__(
        self,
        config: Config,
        pool: CredentialPool,
        client: PixivClient,
        tasks: TaskStateManager,
        artworks: ArtworkStorageManager,
        *,
        log=logger,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.config = config
        self.pool = pool
        self.client = client
        self.tasks = tasks
        self.artworks = artworks
        self.log = log
        self.stop_event = stop_event

    def _bind(self, task_id: str):
        return self.log.bind(task_id=task_id)

    # --------------------------
    #  Seed expansion
    # --------------------------
    async def expand_from_seed(
        self,
        pid: str,
        target_num: Optional[int] = None,
        popularity_threshold: Optional[float] = None,
        *,
        task_id: Optional[str] = None,
    ) -> CrawlSummary:
        pid = str(pid)
        target_num = target_num or self.config.max_illustrations
        threshold = (
            self.config.popularity_threshold
            if popularity_threshold is None
            else popularity_threshold
        )
        task_id = task_id or f"single_{pid}_{_millis()}"
        log = self._bind(task_id)
        client = self.client.with_logger(log)
        artworks = self.artworks.with_logger(log)

        start = time.perf_counter()
        summary = CrawlSummary(seed=pid, task_id=task_id)

        expander = GraphExpander(client, log=log, stop_event=self.stop_event)
        frontier = await expander.expand(pid, target_num)
        summary.candidates = len(frontier)
        log.info(f"Collected {len(frontier)} related artworks from seed {pid}")

        every = self.config.max_requests_per_credential
        request_count = 0
        for candidate in frontier:
            if self.stop_event is not None and self.stop_event.is_set():
                log.info("Stop requested, ending scoring loop")
                break

            try:
                if every > 0 and request_count % every == every - 1:
                    self.pool.advance()

                detail = await client.fetch_artwork_detail(candidate)
                request_count += 1
                if not isinstance(detail, Ok):
                    continue

                meta = detail.value
                popularity = compute_popularity(
                    meta.like_count, meta.bookmark_count, meta.view_count
                )
                if not should_persist(popularity, threshold):
                    continue

                if await artworks.save_artwork(meta, popularity):
                    summary.persisted += 1
                else:
                    summary.duplicates += 1
            except PersistenceError as exc:
                summary.failed += 1
                log.warning(f"Storing {candidate} failed, skipping: {exc}")
            except Exception as exc:
                log.warning(f"Processing {candidate} failed, skipping: {exc}")

        summary.elapsed = time.perf_counter() - start
        log.info(
            f"Finished in {summary.elapsed:.2f}s: {summary.persisted} new artworks, "
            f"{summary.duplicates} already stored, {summary.failed} failed writes, "
            f"hit ratio {summary.hit_ratio:.2f}"
        )
        return summary

    async def expand_from_seeds(
        self,
        pids: Iterable[str],
        target_num: Optional[int] = None,
        popularity_threshold: Optional[float] = None,
        *,
        task_id: Optional[str] = None,
    ) -> List[CrawlSummary]:
        pids = list(dict.fromkeys(str(pid) for pid in pids))
        task_id = task_id or f"batch_{_millis()}"
        log = self._bind(task_id)
        log.info(f"Starting batch crawl of {len(pids)} seeds")

        summaries = []
        for pid in pids:
            if self.stop_event is not None and self.stop_event.is_set():
                break
            try:
                summaries.append(
                    await self.expand_from_seed(
                        pid,
                        target_num,
                        popularity_threshold,
                        task_id=f"{task_id}_{pid}",
                    )
                )
            except Exception as exc:
                log.error(f"Seed {pid} failed: {exc}")

        log.info(
            f"Batch finished: {sum(s.persisted for s in summaries)} new artworks "
            f"from {len(summaries)}/{len(pids)} seeds"
        )
        return summaries

    # --------------------------
    #  Rankings and homepage
    # --------------------------
    async def crawl_ranking(
        self, mode: Union[RankingMode, str], *, task_id: Optional[str] = None
    ) -> List[RankingEntry]:
        mode = RankingMode(mode)
        now = timezone.now()
        task_id = task_id or f"{mode.value}_{now.date().isoformat()}_{_millis()}"
        log = self._bind(task_id)

        page = await self.client.with_logger(log).fetch_ranking_page(mode)
        if isinstance(page, Failed):
            log.warning(f"{mode.value} ranking page unavailable: {page.reason}")
            return []
        if isinstance(page, Empty):
            log.warning(f"{mode.value} ranking page was empty")
            return []

        ranking = extract_ranking(page.value, self.config.ranking_pid_cap)
        if not isinstance(ranking, Ok):
            log.warning(f"No artworks found on the {mode.value} ranking page")
            return []

        entries = [
            RankingEntry(
                pid=item.pid,
                rank=item.rank,
                rank_type=mode.value,
                rank_date=now.date(),
                captured_at=now,
            )
            for item in ranking.value
        ]
        await self.artworks.with_logger(log).upsert_rankings(entries)
        await self.tasks.batch_create(entry.pid for entry in entries)
        log.info(f"{mode.value} ranking stored with {len(entries)} artworks")
        return entries

    async def get_home_recommended_pids(self, *, task_id: Optional[str] = None) -> List[str]:
        task_id = task_id or f"home_{_millis()}"
        log = self._bind(task_id)

        page = await self.client.with_logger(log).fetch_home_page()
        if not isinstance(page, Ok):
            log.warning("Homepage unavailable, no recommended artworks")
            return []

        pids = extract_artwork_ids(page.value, self.config.ranking_pid_cap)
        await self.tasks.batch_create(pids)
        log.info(f"Homepage recommended {len(pids)} artworks")
        return pids

    # --------------------------
    #  Task steps
    # --------------------------
    async def _finish_recommend_step(
        self, pid: str, flag: TaskFlag, outcome, target_num: int, log
    ) -> List[str]:
        if isinstance(outcome, Failed):
            log.warning(f"{flag.value} for {pid} not completed: {outcome.reason}")
            return []

        pids = list(outcome.value)[:target_num] if isinstance(outcome, Ok) else []
        if pids:
            await self.tasks.batch_create(pids)
        await self.tasks.update_flag(pid, flag, count=len(pids))
        log.info(f"{flag.value} for {pid} found {len(pids)} artworks")
        return pids

    async def get_illust_recommend_pids(
        self, pid: str, target_num: Optional[int] = None, *, task_id: Optional[str] = None
    ) -> List[str]:
        pid = str(pid)
        target_num = target_num or self.config.recommend_target_num
        log = self._bind(task_id or f"illust_recommend_{pid}_{_millis()}")

        outcome = await self.client.with_logger(log).fetch_artwork_recommendations(
            pid, target_num
        )
        return await self._finish_recommend_step(
            pid, TaskFlag.ILLUST_RECOMMEND, outcome, target_num, log
        )

    async def get_author_recommend_pids(
        self, pid: str, target_num: Optional[int] = None, *, task_id: Optional[str] = None
    ) -> List[str]:
        pid = str(pid)
        target_num = target_num or self.config.recommend_target_num
        log = self._bind(task_id or f"author_recommend_{pid}_{_millis()}")
        client = self.client.with_logger(log)

        detail = await client.fetch_artwork_detail(pid)
        if isinstance(detail, Failed):
            log.warning(f"author_recommend for {pid} not completed: {detail.reason}")
            return []
        if isinstance(detail, Empty):
            # Deleted artwork: nothing will ever be found, close the task.
            return await self._finish_recommend_step(
                pid, TaskFlag.AUTHOR_RECOMMEND, detail, target_num, log
            )

        outcome = await client.fetch_author_recommendations(detail.value.author_id)
        if isinstance(outcome, Ok):
            flattened = dict.fromkeys(
                artwork_id for author in outcome.value for artwork_id in author.artwork_ids
            )
            outcome = Ok(list(flattened))
        return await self._finish_recommend_step(
            pid, TaskFlag.AUTHOR_RECOMMEND, outcome, target_num, log
        )

    async def get_pid_detail_info(self, pid: str, *, task_id: Optional[str] = None) -> bool:
        pid = str(pid)
        log = self._bind(task_id or f"detail_info_{pid}_{_millis()}")

        detail = await self.client.with_logger(log).fetch_artwork_detail(pid)
        if isinstance(detail, Failed):
            log.warning(f"detail_info for {pid} not completed: {detail.reason}")
            return False
        if isinstance(detail, Empty):
            log.info(f"Artwork {pid} has no metadata, closing detail_info")
            await self.tasks.update_flag(pid, TaskFlag.DETAIL_INFO)
            return False

        meta = detail.value
        popularity = compute_popularity(meta.like_count, meta.bookmark_count, meta.view_count)
        if should_persist(popularity, self.config.task_popularity_threshold):
            await self.artworks.with_logger(log).upsert_artwork_stats(meta, popularity)

        await self.tasks.update_flag(pid, TaskFlag.DETAIL_INFO)
        log.info(f"detail_info for {pid} done (popularity={popularity})")
        return True
