"""
services/review/rating.py
Tour rating aggregation. Always a full recomputation over the tour's
reviews; review volume per tour is small.
"""

import uuid
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Review, Tour


def average_rating(ratings: list[int]) -> Decimal:
    """Mean rounded half-up to one decimal; 0 for no ratings."""
    if not ratings:
        return Decimal("0.0")
    mean = Decimal(sum(ratings)) / Decimal(len(ratings))
    return mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)


async def recompute_tour_rating(db: AsyncSession, tour_id: uuid.UUID) -> tuple[Decimal, int]:
    result = await db.execute(select(Review.rating).where(Review.tour_id == tour_id))
    ratings = list(result.scalars())
    rating = average_rating(ratings)

    await db.execute(
        update(Tour)
        .where(Tour.id == tour_id)
        .values(rating=rating, review_count=len(ratings))
        .execution_options(synchronize_session=False)
    )
    return rating, len(ratings)
