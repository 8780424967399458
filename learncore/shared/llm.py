"""
Text-generation collaborator: LLM client abstraction and JSON reply parsing.
Supports OpenAI and Anthropic through their async SDKs.
"""

import asyncio
import json
from typing import Optional, Dict, Any, Iterable, Protocol
from enum import Enum

from openai import AsyncOpenAI
from anthropic import AsyncAnthropic

from learncore.shared.config import settings
from learncore.shared.exceptions import ExternalServiceError, AIResponseParseError
from learncore.shared.logging import get_logger
from learncore.shared.result import Ok, Err, FallbackReason, Result

logger = get_logger(__name__)


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class LLMError(ExternalServiceError):
    """Base error for LLM operations."""
    pass


class TextGenerator(Protocol):
    """Anything that turns a prompt into free text."""

    async def generate(self, prompt: str) -> str:
        ...


class LLMClient:
    """Unified LLM client supporting multiple providers."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ):
        self.provider = provider or settings.llm.provider
        self.model = model or settings.llm.default_model
        self.temperature = temperature if temperature is not None else settings.llm.temperature
        self.max_tokens = max_tokens or settings.llm.max_tokens

        if self.provider == LLMProvider.OPENAI:
            api_key = api_key or settings.llm.openai_api_key
            if not api_key:
                raise LLMError("OpenAI API key not configured")
            self.client = AsyncOpenAI(api_key=api_key)
        elif self.provider == LLMProvider.ANTHROPIC:
            api_key = api_key or settings.llm.anthropic_api_key
            if not api_key:
                raise LLMError("Anthropic API key not configured")
            self.client = AsyncAnthropic(api_key=api_key)
        else:
            raise LLMError(f"Unsupported provider: {self.provider}")

    async def generate(self, prompt: str) -> str:
        """Collaborator entry point: prompt in, free text out."""
        return await self.get_completion(prompt)

    async def get_completion(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> str:
        """
        Get text completion from LLM.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt
            model: Override default model
            temperature: Override default temperature
            max_tokens: Override default max_tokens
            **kwargs: Additional provider-specific parameters

        Returns:
            Completion text
        """
        model = model or self.model
        temperature = temperature if temperature is not None else self.temperature
        max_tokens = max_tokens or self.max_tokens

        try:
            if self.provider == LLMProvider.OPENAI:
                return await self._openai_completion(
                    prompt, system_prompt, model, temperature, max_tokens, **kwargs
                )
            return await self._anthropic_completion(
                prompt, system_prompt, model, temperature, max_tokens, **kwargs
            )
        except Exception as e:
            raise LLMError(f"LLM completion failed: {str(e)}") from e

    async def _openai_completion(
        self,
        prompt: str,
        system_prompt: Optional[str],
        model: str,
        temperature: float,
        max_tokens: int,
        **kwargs
    ) -> str:
        """OpenAI-specific completion."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )
        return response.choices[0].message.content or ""

    async def _anthropic_completion(
        self,
        prompt: str,
        system_prompt: Optional[str],
        model: str,
        temperature: float,
        max_tokens: int,
        **kwargs
    ) -> str:
        """Anthropic-specific completion."""
        completion_kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
            **kwargs
        }
        if system_prompt:
            completion_kwargs["system"] = system_prompt

        response = await self.client.messages.create(**completion_kwargs)
        return response.content[0].text


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Parse the first balanced `{...}` block in free-form text.

    String literals are honoured so braces inside quoted values do not
    affect nesting.

    Raises:
        AIResponseParseError: no balanced block, invalid JSON, or not an object
    """
    if not text:
        raise AIResponseParseError("Empty response")

    start = text.find("{")
    if start < 0:
        raise AIResponseParseError("No JSON object in response")

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                block = text[start:index + 1]
                try:
                    parsed = json.loads(block)
                except json.JSONDecodeError as e:
                    raise AIResponseParseError(
                        f"Failed to parse JSON block: {str(e)}\nBlock: {block[:200]}"
                    ) from e
                if not isinstance(parsed, dict):
                    raise AIResponseParseError("JSON block is not an object")
                return parsed

    raise AIResponseParseError("Unbalanced JSON object in response")


async def request_json(
    generator: Optional[TextGenerator],
    prompt: str,
    required_keys: Iterable[str] = (),
    timeout: Optional[float] = None
) -> Result:
    """
    Ask the collaborator for a JSON object.

    Every failure mode is returned as `Err`; nothing is raised to the caller.
    """
    if generator is None:
        return Err(FallbackReason.UNAVAILABLE, "no text generator configured")

    timeout = timeout if timeout is not None else settings.llm.timeout_seconds
    try:
        text = await asyncio.wait_for(generator.generate(prompt), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Text generation timed out after {timeout}s")
        return Err(FallbackReason.TIMEOUT, f"timed out after {timeout}s")
    except Exception as e:
        logger.warning(f"Text generation failed: {str(e)}")
        return Err(FallbackReason.UNAVAILABLE, str(e))

    try:
        payload = extract_json_object(text or "")
    except AIResponseParseError as e:
        logger.warning(f"Unparsable text generation reply: {str(e)}")
        return Err(FallbackReason.UNPARSABLE, str(e))

    missing = [key for key in required_keys if key not in payload]
    if missing:
        return Err(FallbackReason.INVALID_PAYLOAD, f"missing keys: {', '.join(missing)}")

    return Ok(payload)
