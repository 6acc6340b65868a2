"""Dependencies handed to workflow activities."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..kv_store import ProductRepository
    from ..reviews import ReviewSource
    from ..scoring import SentimentScorer

# Namespace for product ids derived from workflow ids.
PRODUCT_ID_NAMESPACE = uuid.UUID("6f1c52a4-3f7e-4b0e-9a55-2d8f1f0c9e31")


class ActivityContext:
    """Lightweight holder for the external boundaries activities talk to."""

    def __init__(
        self,
        products: ProductRepository,
        review_source: ReviewSource,
        scorer: SentimentScorer,
    ):
        self.products = products
        self.review_source = review_source
        self.scorer = scorer

    @staticmethod
    def product_id_for(workflow_id: str) -> str:
        """Stable product id, so a retried registration rewrites the same key."""
        return str(uuid.uuid5(PRODUCT_ID_NAMESPACE, workflow_id))
