"""Shared Pydantic schemas and helpers for the HTTP API."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def iso_timestamp() -> str:
    """Return an ISO-8601 timestamp string (UTC)."""
    return datetime.now(timezone.utc).isoformat()


class AnalyzeSentimentRequest(BaseModel):
    """Request body for POST /api/analyze-sentiment."""

    model_config = ConfigDict(populate_by_name=True)

    product_name: str | None = Field(default=None, alias="productName")


class AnalyzeSentimentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    workflow_id: str = Field(alias="workflowId")


class SentimentScoreResponse(BaseModel):
    """Persisted aggregate for one product."""

    model_config = ConfigDict(populate_by_name=True)

    product_uuid: str = Field(alias="productUUID")
    product_name: str | None = Field(default=None, alias="productName")
    sentiment_score: float = Field(alias="sentimentScore")


class WorkflowStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow_id: str = Field(alias="workflowId")
    status: str
    product_name: str = Field(alias="productName")
    result: dict[str, Any] | None = None
    failure: dict[str, Any] | None = None
    history_length: int = Field(alias="historyLength")
    started_at: str | None = Field(default=None, alias="startedAt")
    closed_at: str | None = Field(default=None, alias="closedAt")
