import asyncio
from typing import List, Optional, Set

from loguru import logger

from pixiv_crawler.monitoring.metrics_server import FRONTIER_SIZE
from pixiv_crawler.pixiv_client import PixivClient
from pixiv_crawler.results import Failed, Ok


class GraphExpander:
    """
    Grows an ordered frontier of artwork ids outward from a seed.

    Each pass walks a snapshot of the frontier; ids discovered during a pass
    are expanded on the next one. For every pid the artwork recommendations
    and the owning author's recommended works are unioned into the frontier.
    The loop ends when the target is reached, when a pass adds nothing new
    or when ``stop_event`` is set.
    """

    def __init__(
        self,
        client: PixivClient,
        *,
        log=logger,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.client = client
        self.log = log
        self.stop_event = stop_event

    def _stopped(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    async def expand(self, seed: str, target: int) -> List[str]:
        try:
            frontier = await self._expand(str(seed), target)
        except Exception as exc:
            self.log.error(f"Expansion from {seed} failed, continuing with the seed only: {exc}")
            self.client.pool.advance()
            frontier = [str(seed)]

        FRONTIER_SIZE.observe(len(frontier))
        return frontier

    async def _expand(self, seed: str, target: int) -> List[str]:
        frontier = [seed]
        seen: Set[str] = {seed}
        expanded: Set[str] = set()

        while len(frontier) < target:
            if self._stopped():
                self.log.info(f"Expansion stopped at {len(frontier)} ids")
                break

            grown = False
            for pid in list(frontier):
                if self._stopped():
                    break
                if pid in expanded:
                    continue
                expanded.add(pid)

                try:
                    candidates = await self._neighbours(pid)
                except Exception as exc:
                    self.log.warning(f"Skipping {pid} during expansion: {exc}")
                    continue

                for candidate in candidates:
                    if candidate not in seen:
                        seen.add(candidate)
                        frontier.append(candidate)
                        grown = True

                if len(frontier) >= target:
                    self.log.info(f"Expansion reached {len(frontier)}/{target} ids")
                    return frontier

            if not grown:
                self.log.info(
                    f"Recommendation graph exhausted at {len(frontier)}/{target} ids"
                )
                break

        return frontier

    async def _neighbours(self, pid: str) -> List[str]:
        recommended = await self.client.fetch_artwork_recommendations(pid)
        if isinstance(recommended, Failed):
            return []

        detail = await self.client.fetch_artwork_detail(pid)
        if not isinstance(detail, Ok):
            return []

        candidates = list(recommended.value) if isinstance(recommended, Ok) else []
        authors = await self.client.fetch_author_recommendations(detail.value.author_id)
        if isinstance(authors, Ok):
            for author in authors.value:
                candidates.extend(author.artwork_ids)
        return candidates
