"""Sentiment scorer boundary.

`OllamaSentimentScorer` asks a local Ollama model for a 0-10 score;
`HeuristicSentimentScorer` is an offline keyword scorer for tests and demos.
Both raise classified activity errors so the retry policy never has to look
at message text.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Protocol

import httpx

from .workflow.exceptions import TerminalActivityError, TransientActivityError

logger = logging.getLogger(__name__)

SCORE_MIN = 0.0
SCORE_MAX = 10.0

PROMPT_TEMPLATE = (
    "Analyze the sentiment of this review and return a score between 0 (very negative) "
    'and 10 (very positive): "{text}. Give out only score number and no explaination in output"'
)

_LEADING_NUMBER = re.compile(
    r"^\s*([+-]?(?:infinity|inf|nan|(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?))",
    re.IGNORECASE,
)


class SentimentScorer(Protocol):
    async def score(self, text: str) -> float:
        """Return a sentiment score in [0, 10] for one review text."""


def parse_score(raw: str) -> float:
    """Parse the leading number of a model reply and range-check it."""
    match = _LEADING_NUMBER.match(raw or "")
    if not match:
        raise TerminalActivityError(
            f"scorer returned a non-numeric reply: {(raw or '')[:80]!r}",
            "non_numeric_score",
        )
    value = float(match.group(1))
    if not math.isfinite(value) or not SCORE_MIN <= value <= SCORE_MAX:
        raise TransientActivityError(
            f"score {value} outside [{SCORE_MIN:g}, {SCORE_MAX:g}]",
            "score_out_of_range",
        )
    return value


class OllamaSentimentScorer:
    """Scores reviews through Ollama's `/api/generate` endpoint."""

    def __init__(
        self,
        api_url: str = "http://localhost:11434/api/generate",
        model: str = "llama3.2",
        *,
        request_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url
        self.model = model
        self.request_timeout = request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.request_timeout, transport=self._transport
            )

    async def close(self) -> None:
        if self._client is None:
            return
        client = self._client
        self._client = None
        await client.aclose()

    def build_request(self, text: str) -> dict[str, object]:
        return {
            "model": self.model,
            "prompt": PROMPT_TEMPLATE.format(text=text),
            "stream": False,
        }

    async def score(self, text: str) -> float:
        await self.connect()
        assert self._client is not None
        try:
            response = await self._client.post(self.api_url, json=self.build_request(text))
        except httpx.TimeoutException as exc:
            raise TransientActivityError(
                f"scoring backend timed out: {exc}", "backend_timeout"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientActivityError(
                f"scoring backend unreachable: {exc}", "backend_unavailable"
            ) from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientActivityError(
                f"scoring backend returned {status}", "backend_unavailable"
            )
        if status >= 400:
            raise TerminalActivityError(
                f"scoring backend rejected the request with {status}: {response.text[:200]}",
                "backend_rejected",
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TerminalActivityError(
                "scoring backend returned invalid JSON", "malformed_response"
            ) from exc
        reply = body.get("response") if isinstance(body, dict) else None
        if not isinstance(reply, str):
            raise TerminalActivityError(
                "scoring backend reply has no 'response' field", "malformed_response"
            )
        return parse_score(reply)


_POSITIVE_CUES = ("love", "exceeded", "impressive", "worth", "good things", "great", "excellent")
_NEGATIVE_CUES = (
    "disappointed",
    "needs improvement",
    "not impressed",
    "expected better",
    "terrible",
    "broke",
)
_NEUTRAL_CUES = ("decent", "average", "nothing special")


class HeuristicSentimentScorer:
    """Keyword scorer; deterministic and needs no model server."""

    async def score(self, text: str) -> float:
        lowered = (text or "").lower()
        positive = sum(lowered.count(cue) for cue in _POSITIVE_CUES)
        negative = sum(lowered.count(cue) for cue in _NEGATIVE_CUES)
        neutral = sum(lowered.count(cue) for cue in _NEUTRAL_CUES)
        total = positive + negative + neutral
        if total == 0:
            return 5.0
        value = 5.0 + 5.0 * (positive - negative) / total
        return round(min(max(value, SCORE_MIN), SCORE_MAX), 2)


def build_scorer(
    backend: str,
    *,
    api_url: str,
    model: str,
    request_timeout: float | None = None,
) -> OllamaSentimentScorer | HeuristicSentimentScorer:
    if backend == "heuristic":
        return HeuristicSentimentScorer()
    if backend != "ollama":
        logger.warning("unknown scoring backend=%s; using ollama", backend)
    return OllamaSentimentScorer(api_url, model, request_timeout=request_timeout)
