from __future__ import annotations

"""LLM answerers that turn an assembled context block into a cited answer."""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx

from src.rag.types import SearchHit

logger = logging.getLogger(__name__)


class LLMError(RuntimeError):
    """Raised when the answer model fails or replies with an unusable payload."""
    pass


class LLMFormatError(LLMError):
    """The model reply did not contain a JSON object."""
    pass


_SYSTEM_PROMPT = (
    "You are an exam preparation assistant. "
    "Answer only from the exam questions and answer explanations in the context. "
    "If they are insufficient, say: \"I don't know based on the provided context.\" "
    "Do not use outside knowledge. "
    "Explain the correct answer briefly and cite the question ids you relied on. "
    "Reply with a JSON object with keys \"answer\" (string), "
    "\"refusal_reason\" (string or null) and \"source_ids\" (array of strings)."
)
_STRICT_SUFFIX = (
    " Return a single JSON object and nothing else, without markdown or code fences."
    " If unsure, set refusal_reason to \"no_context\"."
)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class LLMResult:
    answer: str
    refusal_reason: str | None
    source_ids: list[str]
    raw: str


def _user_prompt(query: str, context: str) -> str:
    return (
        f"Question: {query}\n\n"
        f"Context:\n{context}\n\n"
        "Use only the context above. Respond with JSON only."
    )


def _parse_json_response(content: str) -> dict[str, Any]:
    """Return the JSON object in a model reply, tolerating surrounding prose."""
    candidates = [content.strip()]
    match = _JSON_OBJECT_RE.search(content)
    if match:
        candidates.append(match.group(0))
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise LLMFormatError("LLM response is not valid JSON")


def _to_result(parsed: dict[str, Any], content: str) -> LLMResult:
    answer = parsed.get("answer")
    refusal_reason = parsed.get("refusal_reason")
    source_ids = parsed.get("source_ids") or []
    if not isinstance(answer, str):
        raise LLMError("LLM response has no answer string")
    if refusal_reason is not None and not isinstance(refusal_reason, str):
        raise LLMError("LLM response refusal_reason must be a string or null")
    if not isinstance(source_ids, list) or not all(isinstance(item, str) for item in source_ids):
        raise LLMError("LLM response source_ids must be a list of strings")
    return LLMResult(
        answer=answer.strip(),
        refusal_reason=refusal_reason,
        source_ids=source_ids,
        raw=content.strip(),
    )


class _ChatAnswerer:
    """Shared request flow; subclasses build the provider payload."""

    provider = "chat"
    model: str
    timeout: float
    system_prompt: str
    transport: httpx.AsyncBaseTransport | None

    async def generate(self, query: str, context: str, hits: Sequence[SearchHit]) -> LLMResult:
        """Answer from context, retrying once with a stricter prompt on non-JSON output."""
        if not context.strip():
            return LLMResult(answer="", refusal_reason="no_context", source_ids=[], raw="")
        user_prompt = _user_prompt(query, context)
        content = await self._complete(self.system_prompt, user_prompt)
        try:
            parsed = _parse_json_response(content)
        except LLMFormatError:
            logger.warning(
                "llm_json_retry", extra={"provider": self.provider, "model": self.model}
            )
            content = await self._complete(self.system_prompt + _STRICT_SUFFIX, user_prompt)
            parsed = _parse_json_response(content)
        return _to_result(parsed, content)

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        raise NotImplementedError

    async def _post(
        self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise LLMError(f"{self.provider} request failed: {exc}") from exc
        except ValueError as exc:
            raise LLMError(f"{self.provider} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise LLMError(f"{self.provider} returned an unexpected payload")
        return data


@dataclass(frozen=True)
class OllamaAnswerer(_ChatAnswerer):
    """Answers through the Ollama chat API."""
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float
    system_prompt: str = _SYSTEM_PROMPT
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)

    provider = "ollama"

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        data = await self._post(
            f"{self.base_url.rstrip('/')}/api/chat",
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "stream": False,
                "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
            },
        )
        content = (data.get("message") or {}).get("content")
        if not isinstance(content, str):
            raise LLMError("Ollama response has no message content")
        return content


@dataclass(frozen=True)
class OpenAIAnswerer(_ChatAnswerer):
    """Answers through OpenAI-compatible chat completions, OpenRouter included."""
    api_key: str
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float
    system_prompt: str = _SYSTEM_PROMPT
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)

    provider = "openai"

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        data = await self._post(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        choices = data.get("choices") or []
        content = (choices[0].get("message") or {}).get("content") if choices else None
        if not isinstance(content, str):
            raise LLMError("Chat completion has no message content")
        return content


def build_llm_answerer(
    provider: str,
    *,
    api_key_openai: str | None,
    openai_base_url: str,
    openai_model: str | None,
    ollama_base_url: str,
    ollama_model: str,
    temperature: float,
    max_tokens: int,
    timeout: float,
    system_prompt: str | None = None,
) -> OllamaAnswerer | OpenAIAnswerer:
    """Build the answerer named by RAG_LLM_PROVIDER."""
    prompt = system_prompt or _SYSTEM_PROMPT
    name = provider.strip().lower()
    if name in {"openai", "openrouter"}:
        if not api_key_openai:
            raise LLMError("OPENAI_API_KEY is required for the OpenAI provider")
        if not openai_model:
            raise LLMError("OPENAI_CHAT_MODEL is required for the OpenAI provider")
        return OpenAIAnswerer(
            api_key=api_key_openai,
            base_url=openai_base_url.rstrip("/"),
            model=openai_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            system_prompt=prompt,
        )
    if name == "ollama":
        return OllamaAnswerer(
            base_url=ollama_base_url,
            model=ollama_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            system_prompt=prompt,
        )
    raise LLMError(f"Unsupported LLM provider: {provider}")
