"""API router for the sentiment workflow service.

This module is safe to import: it does not construct runtime singletons or
perform network side effects.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .schemas import (
    AnalyzeSentimentRequest,
    AnalyzeSentimentResponse,
    SentimentScoreResponse,
    WorkflowStatusResponse,
)
from .workflow.exceptions import (
    InputValidationError,
    WorkflowAlreadyStarted,
    WorkflowNotFound,
)

if TYPE_CHECKING:
    from .container import BackendContainer

logger = logging.getLogger(__name__)

PRODUCT_NAME_REQUIRED = "Product name is required"


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def get_router(container: "BackendContainer") -> APIRouter:
    """Build API routes using the provided dependency container."""

    router = APIRouter(prefix="/api")
    engine = container.workflow_engine
    products = container.products

    @router.post("/analyze-sentiment")
    async def analyze_sentiment(request: Request) -> JSONResponse:
        """Start a sentiment workflow and return without waiting for it."""
        try:
            body = await request.json()
            payload = AnalyzeSentimentRequest.model_validate(body)
        except (ValueError, ValidationError):
            return _error(PRODUCT_NAME_REQUIRED, status.HTTP_400_BAD_REQUEST)

        try:
            workflow_id = await engine.start_workflow(payload.product_name)
        except InputValidationError:
            return _error(PRODUCT_NAME_REQUIRED, status.HTTP_400_BAD_REQUEST)
        except WorkflowAlreadyStarted as exc:
            return _error(
                f"Workflow {exc.workflow_id} already started", status.HTTP_409_CONFLICT
            )
        except Exception:
            logger.exception("failed to start sentiment workflow")
            return _error("Failed to start sentiment analysis", status.HTTP_500_INTERNAL_SERVER_ERROR)

        response = AnalyzeSentimentResponse(
            message="Sentiment analysis workflow started", workflow_id=workflow_id
        )
        return JSONResponse(
            response.model_dump(by_alias=True), status_code=status.HTTP_202_ACCEPTED
        )

    @router.get("/sentiment/{product_uuid}")
    async def get_sentiment(product_uuid: str) -> JSONResponse:
        try:
            score = await products.get_score(product_uuid)
            product_name = await products.get_product_name(product_uuid)
        except Exception:
            logger.exception("failed to read sentiment score product_uuid=%s", product_uuid)
            return _error("Failed to retrieve sentiment score", status.HTTP_500_INTERNAL_SERVER_ERROR)
        if score is None:
            return _error(
                "Sentiment score not found for this product", status.HTTP_404_NOT_FOUND
            )
        response = SentimentScoreResponse(
            product_uuid=product_uuid, product_name=product_name, sentiment_score=score
        )
        return JSONResponse(response.model_dump(by_alias=True))

    @router.get("/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str) -> JSONResponse:
        try:
            instance = engine.describe(workflow_id)
        except WorkflowNotFound:
            return _error("Workflow not found", status.HTTP_404_NOT_FOUND)
        response = WorkflowStatusResponse(
            workflow_id=instance.id,
            status=instance.status.value,
            product_name=instance.product_name,
            result=instance.result,
            failure=instance.failure,
            history_length=instance.last_sequence,
            started_at=instance.started_at,
            closed_at=instance.closed_at,
        )
        return JSONResponse(response.model_dump(by_alias=True))

    @router.post("/workflows/{workflow_id}/cancel")
    async def cancel_workflow(workflow_id: str) -> JSONResponse:
        try:
            cancelled = await engine.cancel(workflow_id)
        except WorkflowNotFound:
            return _error("Workflow not found", status.HTTP_404_NOT_FOUND)
        return JSONResponse({"cancelled": cancelled}, status_code=status.HTTP_202_ACCEPTED)

    return router
