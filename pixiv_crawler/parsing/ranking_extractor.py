from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from bs4 import BeautifulSoup

from pixiv_crawler.results import Empty, Ok, Outcome


MAX_RANKING_PIDS = 200

ARTWORK_HREF = re.compile(r"^(?:https?://(?:www\.)?pixiv\.net)?(?:/[a-z]{2})?/artworks/(\d+)")
WORK_ID_ATTRIBUTE = "data-gtm-work-id"


@dataclass(frozen=True)
class RankedArtwork:
    pid: str
    rank: int


def _anchor_ids(soup: BeautifulSoup) -> List[str]:
    ids = []
    for tag in soup.find_all("a", href=True):
        match = ARTWORK_HREF.match(tag["href"].strip())
        if match:
            ids.append(match.group(1))
    return ids


def _work_id_attributes(soup: BeautifulSoup) -> List[str]:
    ids = []
    for tag in soup.find_all(attrs={WORK_ID_ATTRIBUTE: True}):
        value = str(tag[WORK_ID_ATTRIBUTE]).strip()
        if value.isdigit():
            ids.append(value)
    return ids


def _first_occurrences(ids: List[str], limit: int) -> List[str]:
    unique: List[str] = []
    seen = set()
    for pid in ids:
        if pid in seen:
            continue
        seen.add(pid)
        unique.append(pid)
        if len(unique) >= limit:
            break
    return unique


def extract_artwork_ids(html: str, limit: int = MAX_RANKING_PIDS) -> List[str]:
    """
    Artwork ids in document order, first occurrence only.

    Anchors pointing at an artwork page are the primary source; pages that
    render without them still tag their thumbnails with ``data-gtm-work-id``.
    """
    soup = BeautifulSoup(html, "lxml")
    ids = _first_occurrences(_anchor_ids(soup), limit)
    if not ids:
        ids = _first_occurrences(_work_id_attributes(soup), limit)
    return ids


def extract_ranking(html: str, limit: int = MAX_RANKING_PIDS) -> Outcome[List[RankedArtwork]]:
    ids = extract_artwork_ids(html, limit)
    if not ids:
        return Empty("no artwork ids found on ranking page")
    return Ok([RankedArtwork(pid=pid, rank=index) for index, pid in enumerate(ids, start=1)])
