from decimal import ROUND_HALF_UP, Decimal


LIKE_WEIGHT = 0.55
BOOKMARK_WEIGHT = 0.45
VIEW_DAMPENING_CUTOFF = 5000


def round_half_up(value: float, places: int = 2) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def compute_popularity(like: int, bookmark: int, view: int) -> float:
    """Engagement per view, scaled down linearly for artworks under 5000 views.

    The weights and the cutoff are product tuning and must stay as they are.
    """
    raw = (like * LIKE_WEIGHT + bookmark * BOOKMARK_WEIGHT) / max(view, 1)
    if view < VIEW_DAMPENING_CUTOFF:
        raw *= max(view, 0) / VIEW_DAMPENING_CUTOFF
    return round_half_up(raw)


def should_persist(popularity: float, threshold: float) -> bool:
    return popularity >= threshold
