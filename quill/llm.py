"""Answer generation for retrieval-augmented "ask" requests."""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from .errors import ConfigurationError, ExternalServiceError
from .models import Citation

logger = logging.getLogger(__name__)


@dataclass
class GeneratedAnswer:
    text: str
    citations: List[Citation] = field(default_factory=list)


class AnswerGenerator(ABC):
    """Produces an answer from a fully assembled prompt."""

    @abstractmethod
    def generate(self, system_prompt: str, user_prompt: str) -> GeneratedAnswer:
        ...


class OpenAIAnswerGenerator(AnswerGenerator):
    """Answer generator backed by OpenAI chat completions."""

    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        openai_api_key: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 800,
    ):
        api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError(
                "OpenAI API key required for answers. Set OPENAI_API_KEY environment variable."
            )
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = OpenAI(api_key=api_key)

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return (response.choices[0].message.content or "").strip()

    def generate(self, system_prompt: str, user_prompt: str) -> GeneratedAnswer:
        try:
            text = self._complete(system_prompt, user_prompt)
        except Exception as e:
            logger.error("Answer generation with %s failed: %s", self.model, e)
            raise ExternalServiceError(f"Answer provider failed: {e}") from e
        return GeneratedAnswer(text=text)
