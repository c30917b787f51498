"""
LLM client for answer generation.

Thin wrapper over the OpenAI chat completions API (any OpenAI-compatible
endpoint via base_url). Failures and timeouts raise LLMError; there is
no retry at this layer.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import LLMConfig
from .errors import LLMError

logger = logging.getLogger(__name__)


@dataclass
class LLMCompletion:
    """Generated answer with token usage (None when the provider omits it)."""
    content: str
    model: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None

    @property
    def total_tokens(self) -> Optional[int]:
        if self.prompt_tokens is None or self.completion_tokens is None:
            return None
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


class LLMClient:
    """Chat-completion client used by the RAG orchestrator."""

    def __init__(self, config: Optional[LLMConfig] = None, client=None):
        self.config = config or LLMConfig()
        self._client = client

    @property
    def client(self):
        """Lazy-initialize the OpenAI client."""
        if self._client is None:
            if not self.config.api_key:
                raise LLMError("LLM API key not configured", provider="openai")
            from openai import OpenAI
            self._client = OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=0,
            )
            logger.info(f"LLM client initialized with model {self.config.model}")
        return self._client

    def complete(self, system_prompt: str, user_prompt: str) -> LLMCompletion:
        """
        Generate an answer.

        Raises:
            LLMError: On provider failure, timeout, or empty response
        """
        try:
            response = self.client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        except LLMError:
            raise
        except Exception as e:
            from openai import APITimeoutError
            if isinstance(e, APITimeoutError):
                logger.error(f"LLM generation timed out after {self.config.timeout}s")
            else:
                logger.error(f"LLM generation failed: {type(e).__name__}: {e}")
            raise LLMError(f"LLM generation failed: {e}", provider="openai", original=e) from e

        if not response.choices or not response.choices[0].message.content:
            raise LLMError("LLM returned an empty answer", provider="openai")

        usage = getattr(response, "usage", None)
        return LLMCompletion(
            content=response.choices[0].message.content,
            model=getattr(response, "model", None) or self.config.model,
            prompt_tokens=getattr(usage, "prompt_tokens", None) if usage else None,
            completion_tokens=getattr(usage, "completion_tokens", None) if usage else None,
        )
