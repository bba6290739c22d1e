"""OpenAI-backed oracle: one chat completion per prompt.

Maps SDK exceptions onto the engine's oracle error taxonomy so that
:class:`~coherent_engine.agents.gateway.OracleGateway` can decide what
to retry.  Prompt size is checked with ``tiktoken`` before anything is
sent: an oversized prompt is a malformed request, not a transient one.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import openai
import tiktoken

from coherent_engine.config import EngineConfig
from coherent_engine.errors import (
    FatalOracleError,
    OracleTimeoutError,
    TransientOracleError,
)

if TYPE_CHECKING:
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

_DEFAULT_ENCODING = "cl100k_base"
_SYSTEM_PROMPT = (
    "You are a careful long-document analyst. When asked for JSON, "
    "return only valid JSON without commentary."
)


def _encoding_for(model: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(_DEFAULT_ENCODING)


class OpenAIOracle:
    """Async chat-completion oracle.

    Args:
        config: Engine configuration (model, temperature, token budgets).
        client: Optional pre-built ``openai.AsyncOpenAI`` client.  When
            omitted one is created from the environment
            (``OPENAI_API_KEY``).
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._client = client or openai.AsyncOpenAI(max_retries=0)
        self._encoding: tiktoken.Encoding | None = None

    def count_tokens(self, text: str) -> int:
        if self._encoding is None:
            self._encoding = _encoding_for(self._config.model)
        return len(self._encoding.encode(text))

    async def complete(self, prompt: str) -> str:
        n_tokens = self.count_tokens(prompt)
        if n_tokens > self._config.max_prompt_tokens:
            raise FatalOracleError(
                f"Prompt has {n_tokens} tokens, above the "
                f"{self._config.max_prompt_tokens}-token budget."
            )

        try:
            response = await self._client.chat.completions.create(
                model=self._config.model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self._config.temperature,
                max_tokens=self._config.max_output_tokens,
            )
        # APITimeoutError subclasses APIConnectionError; order matters.
        except openai.APITimeoutError as e:
            raise OracleTimeoutError(str(e)) from e
        except openai.APIConnectionError as e:
            raise TransientOracleError(str(e)) from e
        except openai.RateLimitError as e:
            if getattr(e, "code", None) == "insufficient_quota":
                raise FatalOracleError(f"Quota exhausted: {e}") from e
            raise TransientOracleError(str(e)) from e
        except openai.InternalServerError as e:
            raise TransientOracleError(str(e)) from e
        except openai.APIError as e:
            raise FatalOracleError(str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        usage = response.usage
        logger.debug(
            "Oracle completion: %d prompt tokens, %s completion tokens (model=%s).",
            n_tokens,
            usage.completion_tokens if usage else "?",
            self._config.model,
        )
        return content or ""
