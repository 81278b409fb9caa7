"""
Task submission quality evaluation.

The evaluator asks an OpenAI-compatible chat completions endpoint to score
a learner's free-text submission and suggest an XP amount. Any failure is
raised as EvaluationError; the completion flow then falls back to base XP.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from skillforge.config import get_settings
from skillforge.progression.exceptions import EvaluationError

logger = structlog.get_logger()

SYSTEM_PROMPT = "You are a task evaluator. Always respond with valid JSON only."

PROMPT_TEMPLATE = """You are an expert evaluator assessing a learner's task completion.

Task: {title}
Requirements: {description}
User Submission: {submission}

Evaluate the submission on a scale of 1-10 and provide constructive feedback.
Adjust the XP reward based on quality (base XP: {base_xp}).

Respond with JSON: {{"qualityScore": number, "suggestedXP": number, "feedback": string, "improvements": [string]}}"""


class TaskEvaluation(BaseModel):
    """Parsed evaluator reply. Accepts the camelCase keys the prompt asks for."""

    model_config = ConfigDict(populate_by_name=True)

    quality_score: float = Field(alias="qualityScore", ge=1, le=10)
    suggested_xp: float = Field(alias="suggestedXP")
    feedback: str
    improvements: list[str] | None = None


class QualityEvaluator(ABC):
    """Abstract quality evaluation collaborator."""

    @abstractmethod
    async def evaluate(
        self,
        task_title: str,
        task_description: str,
        submission: str,
        base_xp: int,
    ) -> TaskEvaluation:
        """Score a submission. Raises EvaluationError on any failure."""
        ...


def _strip_code_fence(content: str) -> str:
    """Some models wrap JSON in a markdown fence despite the instructions."""
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_evaluation(content: str | None) -> TaskEvaluation:
    """Validate the evaluator's message content."""
    if not content:
        raise EvaluationError("Empty response from evaluator")
    try:
        return TaskEvaluation.model_validate(json.loads(_strip_code_fence(content)))
    except (json.JSONDecodeError, ValidationError) as e:
        raise EvaluationError(f"Malformed evaluation: {e}") from e


class ChatCompletionEvaluator(QualityEvaluator):
    """Evaluate via an OpenAI-compatible /chat/completions endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    async def evaluate(
        self,
        task_title: str,
        task_description: str,
        submission: str,
        base_xp: int,
    ) -> TaskEvaluation:
        """Send the prompt and parse the JSON reply."""
        prompt = PROMPT_TEMPLATE.format(
            title=task_title,
            description=task_description,
            submission=submission,
            base_xp=base_xp,
        )
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": SYSTEM_PROMPT},
                            {"role": "user", "content": prompt},
                        ],
                        "temperature": 0.5,
                        "max_tokens": 1024,
                    },
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            logger.warning("evaluation_request_failed", error=str(e), model=self.model)
            raise EvaluationError(f"Evaluation request failed: {e}") from e
        except ValueError as e:
            raise EvaluationError("Evaluator returned a non-JSON body") from e

        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise EvaluationError("Unexpected evaluator response shape") from e

        evaluation = parse_evaluation(content)
        logger.info(
            "evaluation_completed",
            quality_score=evaluation.quality_score,
            suggested_xp=evaluation.suggested_xp,
            base_xp=base_xp,
        )
        return evaluation


def awarded_xp(evaluation: TaskEvaluation, base_xp: int, max_multiplier: float) -> int:
    """Clamp the suggested XP to [0, base_xp * max_multiplier]."""
    ceiling = int(base_xp * max_multiplier)
    return max(0, min(round(evaluation.suggested_xp), ceiling))


def get_quality_evaluator() -> QualityEvaluator | None:
    """Build the evaluator from configuration; None when evaluation is disabled."""
    settings = get_settings()
    if not settings.evaluation_enabled or not settings.evaluation_api_key:
        return None
    return ChatCompletionEvaluator(
        api_url=settings.evaluation_api_url,
        api_key=settings.evaluation_api_key,
        model=settings.evaluation_model,
        timeout=settings.evaluation_timeout_seconds,
    )
