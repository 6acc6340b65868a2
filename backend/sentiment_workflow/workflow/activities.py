"""Activity implementations of the product sentiment pipeline.

Every activity receives the `ActivityExecution` handle first, followed by the
arguments recorded in its `ActivityScheduled` event.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Sequence

from .context import ActivityContext
from .exceptions import TerminalActivityError
from .models import AGGREGATE_AND_STORE, FETCH_REVIEWS, REGISTER_PRODUCT, SCORE_SENTIMENT

if TYPE_CHECKING:
    from ..executor import ActivityExecution, ActivityFunc

logger = logging.getLogger(__name__)


def create_register_product_activity(ctx: ActivityContext) -> ActivityFunc:
    async def register_product(execution: ActivityExecution, product_name: str) -> str:
        product_id = ctx.product_id_for(execution.info.workflow_id)
        await ctx.products.save_product(product_id, product_name)
        logger.info(
            "product registered product_id=%s",
            product_id,
            extra={"workflow_id": execution.info.workflow_id},
        )
        return product_id

    return register_product


def create_fetch_reviews_activity(ctx: ActivityContext) -> ActivityFunc:
    async def fetch_reviews(
        execution: ActivityExecution, product_name: str
    ) -> list[dict[str, Any]]:
        reviews = await ctx.review_source.fetch(product_name)
        logger.info(
            "reviews fetched count=%s",
            len(reviews),
            extra={"workflow_id": execution.info.workflow_id},
        )
        return [review.model_dump(by_alias=True) for review in reviews]

    return fetch_reviews


def create_score_sentiment_activity(ctx: ActivityContext) -> ActivityFunc:
    async def score_sentiment(execution: ActivityExecution, review_text: str) -> float:
        execution.heartbeat({"stage": "scoring", "chars": len(review_text)})
        score = await ctx.scorer.score(review_text)
        execution.heartbeat({"stage": "scored"})
        return score

    return score_sentiment


def create_aggregate_and_store_activity(ctx: ActivityContext) -> ActivityFunc:
    async def aggregate_and_store(
        execution: ActivityExecution, product_id: str, scores: Sequence[float]
    ) -> dict[str, Any]:
        if not scores:
            raise TerminalActivityError(
                "no sentiment scores to aggregate", "no_scores"
            )
        values = [float(score) for score in scores]
        average = sum(values) / len(values)
        await ctx.products.save_score(product_id, average)
        logger.info(
            "sentiment score stored product_id=%s average=%s reviews=%s",
            product_id,
            average,
            len(values),
            extra={"workflow_id": execution.info.workflow_id},
        )
        return {
            "product_id": product_id,
            "average_score": average,
            "total_reviews": len(values),
        }

    return aggregate_and_store


def build_activity_map(ctx: ActivityContext) -> dict[str, ActivityFunc]:
    return {
        REGISTER_PRODUCT: create_register_product_activity(ctx),
        FETCH_REVIEWS: create_fetch_reviews_activity(ctx),
        SCORE_SENTIMENT: create_score_sentiment_activity(ctx),
        AGGREGATE_AND_STORE: create_aggregate_and_store_activity(ctx),
    }
