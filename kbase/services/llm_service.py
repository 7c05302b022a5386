# @TEST tests/test_query_service.py

"""Answer generation over a retrieved context (OpenAI chat completions)."""

from __future__ import annotations

import logging

import openai
from openai import AsyncOpenAI

from kbase.search.errors import AnswerGenerationError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an assistant that answers questions strictly based on the provided context."

USER_PROMPT_TEMPLATE = """Context:
{context}
---
Question: {question}
Answer the question using only the provided context."""


class AnswerGenerator:
    """Generate an answer to a question from knowledge-base context.

    Args:
        api_key: OpenAI API key. Without a key every call raises
            :class:`AnswerGenerationError`.
        model: Chat model identifier.
        timeout: Request timeout in seconds.
    """

    def __init__(self, api_key: str = "", model: str = "gpt-4o-mini", timeout: float = 60.0) -> None:
        self._model = model
        self._client: AsyncOpenAI | None = AsyncOpenAI(api_key=api_key, timeout=timeout) if api_key else None

    @classmethod
    def from_settings(cls, settings) -> AnswerGenerator:
        return cls(
            api_key=settings.OPENAI_API_KEY,
            model=settings.LLM_MODEL,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )

    async def generate_answer(self, context: str, question: str) -> str:
        """Answer *question* from *context*.

        Raises:
            AnswerGenerationError: If no provider is configured, the API call
                fails, or the model returns no content.
        """
        if self._client is None:
            raise AnswerGenerationError("OpenAI API key is not configured")

        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": USER_PROMPT_TEMPLATE.format(context=context, question=question)},
                ],
            )
        except openai.APIError as exc:
            logger.error("Answer generation failed: %s", exc)
            raise AnswerGenerationError(str(exc)) from exc

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise AnswerGenerationError("Empty answer from the model")
        return content
