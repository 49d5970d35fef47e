from pixiv_crawler.parsing.ranking_extractor import (
    RankedArtwork,
    extract_artwork_ids,
    extract_ranking,
)
from pixiv_crawler.results import Empty, Ok


def test_repeated_ids_keep_first_rank():
    html = """
    <html><body>
      <a href="/artworks/111">one</a>
      <a href="/artworks/222">two</a>
      <a href="/artworks/111">one again</a>
    </body></html>
    """

    result = extract_ranking(html)

    assert isinstance(result, Ok)
    assert result.value == [RankedArtwork(pid="111", rank=1), RankedArtwork(pid="222", rank=2)]


def test_localized_and_absolute_links_are_recognised():
    html = """
    <a href="https://www.pixiv.net/en/artworks/10">a</a>
    <a href="/users/99">author</a>
    <a href="/jp/artworks/20?foo=bar">b</a>
    """

    assert extract_artwork_ids(html) == ["10", "20"]


def test_cap_stops_scanning():
    html = "".join(f'<a href="/artworks/{i}">x</a>' for i in range(1, 300))

    ids = extract_artwork_ids(html)

    assert len(ids) == 200
    assert ids[0] == "1"
    assert ids[-1] == "200"
    assert extract_artwork_ids(html, limit=3) == ["1", "2", "3"]


def test_work_id_attribute_fallback():
    html = """
    <div data-gtm-work-id="555"></div>
    <div data-gtm-work-id="666"></div>
    <div data-gtm-work-id="555"></div>
    """

    result = extract_ranking(html)

    assert isinstance(result, Ok)
    assert [(r.pid, r.rank) for r in result.value] == [("555", 1), ("666", 2)]


def test_page_without_artworks_is_empty_not_failed():
    result = extract_ranking("<html><body><p>maintenance</p></body></html>")

    assert isinstance(result, Empty)
