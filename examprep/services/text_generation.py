"""
Text-generation boundary: question generation, essay evaluation,
study recommendations and question explanations on top of the OpenAI
chat completions API.

Every public coroutine either returns validated data or raises
``UpstreamUnavailable``; callers decide how to degrade.
"""
import json
import logging
import re
from typing import Any, Dict, List, Literal, Optional, Sequence, Type, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from examprep.core.config import settings
from examprep.core.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class EssayEvaluation(BaseModel):
    score: float = Field(ge=0, le=10)
    evaluation: str


class GeneratedOption(BaseModel):
    letter: str = Field(min_length=1, max_length=8)
    text: str


class GeneratedQuestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str = Field(min_length=1)
    type: Literal["objective", "essay"]
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    options: Optional[List[GeneratedOption]] = None
    correct_answer: Optional[str] = Field(default=None, alias="correctAnswer")
    explanation: Optional[str] = None


class SuggestedRecommendation(BaseModel):
    type: Literal["study_focus", "material", "exam"]
    title: str = Field(min_length=1)
    description: str = ""
    priority: int = 3


class TextGenerator:
    """Thin async wrapper around the chat completions endpoint."""

    SYSTEM_PROMPT = (
        "You are an experienced examiner and study coach for competitive entrance exams. "
        "Answer only with the JSON requested."
    )

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self._client = client
        self.model = model or settings.OPENAI_MODEL

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.OPENAI_API_KEY:
                raise UpstreamUnavailable("Text generation is not configured (OPENAI_API_KEY missing)")
            self._client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY.get_secret_value(),
                timeout=settings.LLM_TIMEOUT_SECONDS,
                # retries are owned by the AsyncRetrying loop in _complete
                max_retries=0,
            )
        return self._client

    async def _complete(self, prompt: str, json_mode: bool = True) -> str:
        client = self._get_client()
        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, settings.LLM_MAX_RETRIES)),
                wait=wait_exponential(multiplier=0.5, max=8),
                retry=retry_if_exception_type(_TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    response = await client.chat.completions.create(
                        model=self.model,
                        messages=[
                            {"role": "system", "content": self.SYSTEM_PROMPT},
                            {"role": "user", "content": prompt},
                        ],
                        temperature=settings.OPENAI_TEMPERATURE,
                        max_tokens=settings.OPENAI_MAX_TOKENS,
                        **kwargs,
                    )
        except openai.OpenAIError as e:
            logger.warning("Text generation request failed: %s", e)
            raise UpstreamUnavailable("Text generation request failed") from e
        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        content = getattr(message, "content", None)
        if message is None or (content is not None and not isinstance(content, str)):
            logger.warning("Text generation returned an unexpected completion: %r", response)
            raise UpstreamUnavailable("Text generation returned no usable completion")
        return content or ""

    # ---------- parsing helpers ----------

    @staticmethod
    def _load_json(raw: str) -> Any:
        text = _FENCE.sub("", (raw or "").strip())
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise UpstreamUnavailable("Text generation returned malformed JSON") from e

    @classmethod
    def _parse_items(cls, raw: str, key: str, model: Type[M]) -> List[M]:
        """Validate a JSON list (bare or under ``key``); invalid items are dropped."""
        data = cls._load_json(raw)
        if isinstance(data, dict):
            data = data.get(key)
        if not isinstance(data, list):
            raise UpstreamUnavailable(f"Text generation returned no '{key}' list")
        items: List[M] = []
        for i, entry in enumerate(data):
            try:
                items.append(model.model_validate(entry))
            except ValidationError as e:
                logger.warning("Dropping invalid %s item #%d: %s", key, i, e.errors()[:1])
        return items

    # ---------- operations ----------

    async def generate_questions(self, content: str, subject_name: str, count: int = 5,
                                 difficulty: str = "medium") -> List[GeneratedQuestion]:
        objective = max(1, round(count * 0.8)) if count > 1 else count
        essay = count - objective
        prompt = f"""Based on the study content below, write {count} {difficulty} questions about "{subject_name}".

Content:
{content}

Write {objective} objective (multiple choice) questions and {essay} essay questions.
Respond with a JSON object {{"questions": [...]}} where each question has:
- content: the question text
- type: "objective" or "essay"
- difficulty: "{difficulty}"
- options: list of {{"letter": "A".."E", "text": "..."}} (objective only)
- correct_answer: letter of the correct option (objective only)
- explanation: a detailed explanation of the answer"""
        raw = await self._complete(prompt)
        return self._parse_items(raw, "questions", GeneratedQuestion)[:count]

    async def evaluate_essay(self, question: str, answer: str, subject_name: str) -> EssayEvaluation:
        prompt = f"""You are grading an essay answer for an exam in "{subject_name}".

QUESTION:
{question}

CANDIDATE ANSWER:
{answer}

Respond with a JSON object:
{{"score": <number from 0 to 10 with one decimal place>,
  "evaluation": "<strengths, what to improve and study suggestions>"}}

Be fair but as rigorous as a real examiner."""
        raw = await self._complete(prompt)
        try:
            return EssayEvaluation.model_validate(self._load_json(raw))
        except ValidationError as e:
            raise UpstreamUnavailable("Essay evaluation did not match the expected schema") from e

    async def synthesize_recommendations(self, performance: Sequence[Dict[str, Any]], target_exam: str,
                                         count: int = 5) -> List[SuggestedRecommendation]:
        lines = "\n".join(
            f"- {p['subject_name']}: average {p['average_score']:.1f}, level {p['strength_level']}"
            for p in performance
        )
        prompt = f"""The student is preparing for: {target_exam}

Performance by subject (weakest first):
{lines}

Write {count} personalised study recommendations as a JSON object {{"recommendations": [...]}}
where each item has:
- type: "study_focus", "material" or "exam"
- title: a short title
- description: concrete actions to take
- priority: integer 1-5 (1 = most urgent)

Prioritise the weakest subjects and suggest practical strategies."""
        raw = await self._complete(prompt)
        return self._parse_items(raw, "recommendations", SuggestedRecommendation)[:count]

    async def explain_question(self, content: str, options: Optional[Sequence[Dict[str, str]]],
                               correct_answer: Optional[str]) -> str:
        options_text = "\n".join(f"{o['letter']}) {o['text']}" for o in options or [])
        prompt = f"""Explain the following exam question step by step for a student.

QUESTION:
{content}
"""
        if options_text:
            prompt += f"\nOPTIONS:\n{options_text}\n"
        if correct_answer:
            prompt += f"\nCORRECT ANSWER: {correct_answer}\n"
        prompt += """
Cover why the correct answer is right, why the other options are wrong (if any),
the underlying concepts, and tips for similar questions. Respond in plain text."""
        text = (await self._complete(prompt, json_mode=False)).strip()
        if not text:
            raise UpstreamUnavailable("Text generation returned an empty explanation")
        return text


_generator: Optional[TextGenerator] = None


def get_text_generator() -> TextGenerator:
    """FastAPI dependency; tests override it with a scripted generator."""
    global _generator
    if _generator is None:
        _generator = TextGenerator()
    return _generator
