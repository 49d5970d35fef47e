import asyncio
import copy
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx
from loguru import logger

from pixiv_crawler.credentials import CredentialPool
from pixiv_crawler.monitoring.metrics_server import (
    REMOTE_FAILURES,
    REMOTE_REQUESTS,
    REQUEST_LATENCY,
)
from pixiv_crawler.results import Empty, Failed, Ok, Outcome


PIXIV_BASE_URL = "https://www.pixiv.net"
RECOMMEND_LIMIT = 30


class RankingMode(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class ArtworkMetadata:
    id: str
    author_id: str
    tags: Tuple[str, ...]
    like_count: int
    bookmark_count: int
    view_count: int

    @classmethod
    def from_body(cls, pid: str, body: Any) -> Optional["ArtworkMetadata"]:
        # Deleted or restricted artworks come back with a list body.
        if not isinstance(body, dict):
            return None
        try:
            author_id = str(body["userId"])
            like_count = int(body["likeCount"])
            bookmark_count = int(body["bookmarkCount"])
            view_count = int(body["viewCount"])
        except (KeyError, TypeError, ValueError):
            return None

        return cls(
            id=str(body.get("illustId") or pid),
            author_id=author_id,
            tags=tuple(parse_tags(body)),
            like_count=like_count,
            bookmark_count=bookmark_count,
            view_count=view_count,
        )


@dataclass(frozen=True)
class AuthorRecommendation:
    author_id: str
    artwork_ids: Tuple[str, ...]


def parse_tags(body: Dict[str, Any]) -> List[str]:
    """English translation (when present) followed by the original tag."""
    tags: List[str] = []
    for tag in (body.get("tags") or {}).get("tags") or []:
        translation = (tag.get("translation") or {}).get("en")
        if translation:
            tags.append(translation)
        if tag.get("tag"):
            tags.append(tag["tag"])
    return tags


def _categorize_error(exc: Exception) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "network_timeout"
    if isinstance(exc, httpx.TransportError):
        return "connection_error"
    return "unexpected"


class PixivClient:
    """Thin async client for the artwork metadata service.

    Each fetch sleeps a random delay first, sends the pool's current
    credential headers and never retries. Every failure mode collapses into
    ``Failed``; retry policy belongs to the caller.
    """

    def __init__(
        self,
        pool: CredentialPool,
        *,
        delay_range_ms: Tuple[int, int] = (0, 1000),
        timeout: float = 30.0,
        base_url: str = PIXIV_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        log=logger,
    ):
        self.pool = pool
        self.delay_min_ms, self.delay_max_ms = delay_range_ms
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.client = client
        self._owns_client = client is None
        self.log = log

    async def __aenter__(self) -> "PixivClient":
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout=self.timeout),
                follow_redirects=True,
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self.client = None

    def with_logger(self, log) -> "PixivClient":
        """Same connection and pool, different log correlation."""
        bound = copy.copy(self)
        bound.log = log
        bound._owns_client = False
        return bound

    # --------------------------
    #  Request plumbing
    # --------------------------
    async def _pause(self) -> None:
        delay_ms = random.uniform(self.delay_min_ms, self.delay_max_ms)
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)

    def _failed(self, endpoint: str, category: str, detail: str) -> Failed:
        REMOTE_FAILURES.labels(endpoint=endpoint, category=category).inc()
        self.log.warning(f"[{endpoint}] {detail}")
        return Failed(f"{category}: {detail}")

    async def _request(
        self, endpoint: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Union[httpx.Response, Failed]:
        if self.client is None:
            raise RuntimeError("HTTP client is not initialized")

        await self._pause()
        REMOTE_REQUESTS.labels(endpoint=endpoint).inc()
        start = time.perf_counter()
        try:
            resp = await self.client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self.pool.current().as_headers(),
            )
        except httpx.HTTPError as exc:
            return self._failed(endpoint, _categorize_error(exc), f"{path}: {exc!r}")
        finally:
            REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.perf_counter() - start)

        if not resp.is_success:
            return self._failed(
                endpoint, "http_status", f"{path} returned HTTP {resp.status_code}"
            )
        return resp

    async def _get_body(
        self, endpoint: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Union[Ok[Any], Failed]:
        resp = await self._request(endpoint, path, params)
        if isinstance(resp, Failed):
            return resp

        try:
            payload = resp.json()
        except ValueError as exc:
            return self._failed(endpoint, "parse_error", f"{path} body is not JSON: {exc}")

        if not isinstance(payload, dict) or payload.get("error") is not False:
            message = payload.get("message", "") if isinstance(payload, dict) else ""
            return self._failed(endpoint, "remote_error", f"{path} error flag set: {message}")

        return Ok(payload.get("body"))

    # --------------------------
    #  Artwork endpoints
    # --------------------------
    async def fetch_artwork_detail(self, pid: str) -> Outcome[ArtworkMetadata]:
        outcome = await self._get_body("illust_detail", f"/ajax/illust/{pid}")
        if isinstance(outcome, Failed):
            return outcome

        metadata = ArtworkMetadata.from_body(pid, outcome.value)
        if metadata is None:
            return Empty(f"artwork {pid} has no usable metadata")
        return Ok(metadata)

    async def fetch_artwork_recommendations(
        self, pid: str, limit: int = RECOMMEND_LIMIT
    ) -> Outcome[List[str]]:
        outcome = await self._get_body(
            "illust_recommend",
            f"/ajax/illust/{pid}/recommend/init",
            {"limit": limit, "lang": "zh"},
        )
        if isinstance(outcome, Failed):
            return outcome

        body = outcome.value if isinstance(outcome.value, dict) else {}
        # Ad containers in the list carry no id.
        pids = [
            str(illust["id"])
            for illust in body.get("illusts") or []
            if isinstance(illust, dict) and illust.get("id")
        ]
        if not pids:
            return Empty(f"no recommendations for artwork {pid}")
        return Ok(pids)

    async def fetch_author_recommendations(
        self, author_id: str
    ) -> Outcome[List[AuthorRecommendation]]:
        outcome = await self._get_body(
            "author_recommend",
            f"/ajax/user/{author_id}/recommends",
            {"userNum": RECOMMEND_LIMIT, "workNum": 5, "isR18": "false", "lang": "zh"},
        )
        if isinstance(outcome, Failed):
            return outcome

        body = outcome.value if isinstance(outcome.value, dict) else {}
        authors = [
            AuthorRecommendation(
                author_id=str(user.get("userId", "")),
                artwork_ids=tuple(str(i) for i in user.get("illustIds") or []),
            )
            for user in body.get("recommendUsers") or []
            if isinstance(user, dict)
        ]
        if not authors:
            return Empty(f"no author recommendations for user {author_id}")
        return Ok(authors)

    # --------------------------
    #  HTML pages
    # --------------------------
    async def _get_page(self, endpoint: str, path: str, params=None) -> Outcome[str]:
        resp = await self._request(endpoint, path, params)
        if isinstance(resp, Failed):
            return resp
        if not resp.text.strip():
            return Empty(f"{path} returned an empty page")
        return Ok(resp.text)

    async def fetch_ranking_page(self, mode: Union[RankingMode, str]) -> Outcome[str]:
        mode = RankingMode(mode)
        return await self._get_page("ranking", "/ranking.php", {"mode": mode.value})

    async def fetch_home_page(self) -> Outcome[str]:
        return await self._get_page("home", "/")
