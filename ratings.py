"""Rating aggregation and price helpers for products."""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple

from pymongo import ReturnDocument

logger = logging.getLogger(__name__)


def round_half_up(value, places: int = 1) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def recalculate(ratings: Iterable[int]) -> Tuple[float, int]:
    """
    Recompute (average_rating, ratings_count) from scratch.

    The mean is taken over exact integers before rounding, so the result does
    not depend on the order of the ratings.
    """
    values = [int(r) for r in ratings]
    if not values:
        return 0, 0
    mean = Decimal(sum(values)) / Decimal(len(values))
    return round_half_up(mean, 1), len(values)


def review_stats(product: dict) -> dict:
    average, count = recalculate(r["rating"] for r in product.get("reviews", []))
    return {"average_rating": average, "ratings_count": count}


def effective_price(price: float, discount: Optional[float] = None) -> float:
    if not discount:
        return price
    return round(price * (1 - discount / 100), 2)


def refresh_review_stats(products, product_id, product: dict, max_attempts: int = 10):
    """
    Store the stats of `product`'s reviews, guarded on the review count so an
    older snapshot never overwrites stats of a newer review set. Returns the
    updated product document.
    """
    for _ in range(max_attempts):
        if product is None:
            return None
        updated = products.find_one_and_update(
            {"_id": product_id, "reviews": {"$size": len(product.get("reviews", []))}},
            {"$set": review_stats(product)},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            return updated
        product = products.find_one({"_id": product_id})
    logger.warning("Gave up refreshing review stats of product %s; reviews keep arriving", product_id)
    return product
