"""
services/ai_client.py

Text-generation service client (OpenAI-compatible chat API).

Public API:
  - TextGenerationClient.explain(question) -> str          : explanation JSON text
  - TextGenerationClient.generate_example(...) -> str      : practice example JSON text
  - TextGenerationClient.complete(system, user) -> str     : raw call (OCR extraction)
  - clean_json_response(text) -> str

Replies are returned as raw text; callers parse them and synthesize a
fallback when the reply is not the requested JSON.
"""

import asyncio
import logging
import re
from typing import List, Optional

from openai import APIError, AsyncOpenAI, RateLimitError

from config import AI_API_KEY, AI_BASE_URL, MODEL_NAME
from exam_practice.models.question_model import Question

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────
_MAX_API_RETRIES = 3
_BACKOFF_BASE = 1.0
_RATE_LIMIT_MAX_RETRIES = 5
_RATE_LIMIT_BACKOFF_BASE = 2.0

_EXPLAIN_SYSTEM_PROMPT = (
    "You are a helpful educational assistant. Provide clear, structured explanations "
    "for exam questions. ALWAYS respond with ONLY valid JSON in the exact format "
    "requested, no additional text."
)


class AIServiceError(Exception):
    """The text-generation service gave no usable reply."""


def build_explanation_prompt(question_text: str, options: List[str]) -> str:
    lettered = "\n".join(f"{chr(65 + idx)}. {opt}" for idx, opt in enumerate(options))
    return (
        f"Question: {question_text}\n"
        "\n"
        "Options:\n"
        f"{lettered}\n"
        "\n"
        "Please provide:\n"
        "1. A detailed explanation of the concept\n"
        "2. The correct answer (just the option letter: A, B, C, or D)\n"
        "3. Step-by-step reasoning\n"
        "4. Why other options are incorrect\n"
        "\n"
        "IMPORTANT: Respond ONLY with valid JSON in this exact format:\n"
        "{\n"
        '  "explanation": "Detailed explanation here",\n'
        '  "correctAnswer": "A",\n'
        '  "reasoning": "Step-by-step reasoning here",\n'
        '  "stepByStep": ["Step 1", "Step 2", "Step 3"]\n'
        "}\n"
        "\n"
        "Do not include any other text outside the JSON."
    )


def build_example_prompt(question: Question, subject_name: str, exam_name: str) -> str:
    topic = question.topic.name if question.topic else "General"
    return (
        "Generate another example question on the same topic as this question "
        "to help students learn better:\n"
        "\n"
        "ORIGINAL QUESTION CONTEXT:\n"
        f"Question: {question.question_text}\n"
        f"Topic: {topic}\n"
        f"Subject: {subject_name or 'Unknown'}\n"
        f"Exam: {exam_name or 'Unknown'}\n"
        "\n"
        "INSTRUCTIONS FOR NEW EXAMPLE:\n"
        "1. Create a NEW multiple-choice question on the SAME TOPIC but different scenario\n"
        "2. Make it CLEAR and EDUCATIONAL (not trick questions)\n"
        "3. Provide a CLEAR CORRECT ANSWER\n"
        "4. Explain WHY it's correct in simple terms\n"
        "5. List 3-4 KEY LEARNING POINTS students should remember\n"
        "\n"
        "FORMAT YOUR RESPONSE AS JSON with these EXACT keys:\n"
        "{\n"
        '  "question": "The new question text here...",\n'
        '  "answer": "The correct answer option text (not just A/B/C/D)",\n'
        '  "explanation": "Simple, clear explanation why this answer is correct.",\n'
        '  "keyPoints": ["First key concept", "Second important point", "Third learning objective"]\n'
        "}\n"
        "\n"
        "IMPORTANT: Focus on making the explanation EASY TO UNDERSTAND for learners."
    )


def clean_json_response(response_text: str) -> str:
    """Extract the JSON payload from a model reply (strips code fences and chatter)."""
    if not response_text:
        return ""

    text = re.sub(r"```(?:json)?\s*", "", response_text, flags=re.IGNORECASE)
    text = re.sub(r"```", "", text)
    text = text.strip()

    if text.startswith("{") or text.startswith("["):
        return text

    match = re.search(r"[{[].*[}\]]", text, re.DOTALL)
    if match:
        return match.group(0).strip()

    return ""


class TextGenerationClient:
    def __init__(
        self,
        api_key: str = AI_API_KEY,
        *,
        base_url: str = AI_BASE_URL,
        model: str = MODEL_NAME,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        else:
            logger.warning("Text generation API key is not configured.")
            self._client = None

    async def explain(self, question: Question) -> str:
        return await self.complete(
            _EXPLAIN_SYSTEM_PROMPT,
            build_explanation_prompt(question.question_text, question.options),
        )

    async def generate_example(self, question: Question, subject_name: str, exam_name: str) -> str:
        return await self.complete(
            _EXPLAIN_SYSTEM_PROMPT,
            build_example_prompt(question, subject_name, exam_name),
        )

    async def complete(
        self,
        system_prompt: str,
        user_content: str,
        max_retries: int = _MAX_API_RETRIES,
        max_tokens: int = 1500,
    ) -> str:
        """Chat completion with exponential backoff on rate limits and transient errors."""
        if self._client is None:
            raise AIServiceError("AI service is not configured")

        last_exception: Optional[Exception] = None
        effective_retries = max_retries
        attempt = 0

        while attempt < effective_retries:
            attempt += 1
            try:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_content},
                    ],
                    temperature=0.3,
                    max_tokens=max_tokens,
                    response_format={"type": "json_object"},
                )
                content = response.choices[0].message.content if response.choices else None
                if not content:
                    raise AIServiceError("No explanation received from AI")
                return content
            except RateLimitError as e:
                last_exception = e
                effective_retries = max(effective_retries, _RATE_LIMIT_MAX_RETRIES)
                if attempt < effective_retries:
                    wait = _RATE_LIMIT_BACKOFF_BASE * (2 ** (attempt - 1))
                    logger.warning(f"Rate limited, retrying in {wait:.1f}s ({attempt}/{effective_retries})")
                    await asyncio.sleep(wait)
                else:
                    logger.error("Rate limit retries exhausted.")
                    break
            except APIError as e:
                last_exception = e
                error_str = str(e).lower()
                is_transient = any(k in error_str for k in ("timeout", "connection", "unavailable"))
                if getattr(e, "status_code", None) in (500, 502, 503, 504):
                    is_transient = True
                if attempt < effective_retries and is_transient:
                    wait = _BACKOFF_BASE * (2 ** (attempt - 1))
                    logger.warning(f"API error, retrying in {wait:.1f}s ({attempt}/{effective_retries})")
                    await asyncio.sleep(wait)
                else:
                    logger.error(f"API error: {e}")
                    break

        logger.error(f"Text generation failed: {last_exception}")
        raise AIServiceError(f"AI service error: {last_exception}") from last_exception
