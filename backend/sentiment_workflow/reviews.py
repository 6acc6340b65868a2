"""Review source boundary.

The bundled source synthesises plausible reviews; a real scraper only has to
implement `ReviewSource.fetch`.
"""

from __future__ import annotations

import asyncio
import random
import string
from datetime import datetime, timedelta, timezone
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

ASPECTS = ("quality", "durability", "performance", "value", "design", "features", "ease of use")

POSITIVE_PATTERNS = (
    "Absolutely love the {aspect} of this {product}",
    "The {product}'s {aspect} exceeded my expectations",
    "Impressive {aspect}, definitely worth the investment",
    "Cannot say enough good things about the {aspect}",
)
NEGATIVE_PATTERNS = (
    "Disappointed with the {aspect} of this {product}",
    "The {product}'s {aspect} needs improvement",
    "Not impressed with the {aspect}",
    "Expected better {aspect} for the price",
)
NEUTRAL_PATTERNS = (
    "The {aspect} is decent but could be better",
    "Average {aspect} compared to similar products",
    "Nothing special about the {aspect}",
)


class Review(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: int
    rating: int = Field(ge=1, le=5)
    date: str
    author: str
    text: str
    purchase_date: str = Field(alias="purchaseDate")


class ReviewSource(Protocol):
    async def fetch(self, product_name: str) -> list[Review]:
        """Return the reviews of a product, newest first."""


def sentiment_for_rating(rating: int) -> str:
    if rating >= 4:
        return "positive"
    if rating <= 2:
        return "negative"
    return "neutral"


class SyntheticReviewSource:
    """Generates `count` reviews from aspect/sentiment templates."""

    def __init__(
        self,
        count: int = 5,
        *,
        delay_seconds: float = 0.5,
        rng: random.Random | None = None,
    ):
        self.count = max(count, 0)
        self.delay_seconds = max(delay_seconds, 0.0)
        self._rng = rng or random.Random()

    def _review_text(self, product_name: str, rating: int) -> str:
        patterns = {
            "positive": POSITIVE_PATTERNS,
            "negative": NEGATIVE_PATTERNS,
            "neutral": NEUTRAL_PATTERNS,
        }[sentiment_for_rating(rating)]
        aspects = self._rng.sample(ASPECTS, self._rng.randint(1, 3))
        sentences = [
            self._rng.choice(patterns).format(aspect=aspect, product=product_name)
            for aspect in aspects
        ]
        return ". ".join(sentences)

    def _author(self) -> str:
        alphabet = string.ascii_lowercase + string.digits
        return "User" + "".join(self._rng.choice(alphabet) for _ in range(6))

    def generate(self, product_name: str, *, now: datetime | None = None) -> list[Review]:
        now = now or datetime.now(timezone.utc)
        reviews: list[Review] = []
        for index in range(self.count):
            days_ago = self._rng.randrange(90)
            rating = self._rng.randint(1, 5)
            posted = now - timedelta(days=days_ago)
            purchased = posted - timedelta(days=self._rng.randrange(30))
            reviews.append(
                Review(
                    id=index + 1,
                    rating=rating,
                    date=posted.isoformat(),
                    author=self._author(),
                    text=self._review_text(product_name, rating),
                    purchase_date=purchased.isoformat(),
                )
            )
        reviews.sort(key=lambda review: review.date, reverse=True)
        return reviews

    async def fetch(self, product_name: str) -> list[Review]:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return self.generate(product_name)
