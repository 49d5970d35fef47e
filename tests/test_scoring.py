import math

import pytest

from pixiv_crawler.scoring import compute_popularity, round_half_up, should_persist


def test_zero_views_does_not_divide_by_zero():
    popularity = compute_popularity(10, 10, 0)

    assert popularity == 0.0
    assert math.isfinite(popularity)


@pytest.mark.parametrize(
    "like, bookmark, view",
    [(5000, 3000, 5000), (120, 80, 10_000), (0, 0, 123_456)],
)
def test_no_dampening_at_or_above_cutoff(like, bookmark, view):
    expected = round_half_up((like * 0.55 + bookmark * 0.45) / view)

    assert compute_popularity(like, bookmark, view) == expected


def test_low_view_artworks_are_dampened():
    # raw 0.0775, scaled by 1000/5000 to 0.0155
    assert compute_popularity(100, 50, 1000) == 0.02


def test_single_bookmark_on_tiny_view_count_is_not_popular():
    assert compute_popularity(1, 1, 10) == 0.0


def test_round_half_up():
    assert round_half_up(0.125) == 0.13
    assert round_half_up(0.135) == 0.14
    assert round_half_up(0.0149) == 0.01


def test_should_persist_is_inclusive():
    assert should_persist(0.22, 0.22)
    assert not should_persist(0.21, 0.22)
