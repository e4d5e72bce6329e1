"""
Completion and embedding clients for OpenAI-compatible endpoints.

Both services are consumed as black boxes:
    CompletionClient.complete(system_prompt, user_prompt) -> str
    EmbeddingClient.embed(text) -> List[float]

The `hash` embedding backend produces deterministic token-hash vectors
without any network call; it is the default for local runs.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from typing import Any, Dict, List, Optional

import httpx

from config import FeatureConfig

logger = logging.getLogger(__name__)

_REMOTE_EMBEDDING_BACKENDS = {"api", "openai", "router"}


class CompletionError(RuntimeError):
    """The completion service could not produce a usable response."""


class EmbeddingError(RuntimeError):
    """The embedding service could not produce a vector."""


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def _strip_suffixes(base: str, suffixes: tuple) -> str:
    normalized = (base or "").strip().rstrip("/")
    lowered = normalized.lower()
    for suffix in suffixes:
        if lowered.endswith(suffix):
            return normalized[: -len(suffix)]
    return normalized


def append_degrade_reason(degrade_reasons: Optional[List[str]], reason: str) -> None:
    if degrade_reasons is None or not reason:
        return
    if reason not in degrade_reasons:
        degrade_reasons.append(reason)


def extract_chat_message_text(payload: Dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first_choice = choices[0]
    if not isinstance(first_choice, dict):
        return ""
    message = first_choice.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            text_content = item.get("text")
            if isinstance(text_content, str) and text_content.strip():
                parts.append(text_content.strip())
        return "\n".join(parts).strip()
    return ""


def parse_json_object(raw_text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Best-effort extraction of one JSON object from model output.

    Accepts bare JSON, ```json fenced blocks, and prose wrapping a {...} span.
    Returns None for anything else.
    """
    candidate = (raw_text or "").strip()
    if not candidate:
        return None

    parse_candidates = [candidate]
    if candidate.startswith("```"):
        stripped = re.sub(r"^```(?:json)?\s*", "", candidate, flags=re.IGNORECASE)
        stripped = re.sub(r"\s*```$", "", stripped)
        parse_candidates.append(stripped.strip())

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start >= 0 and end > start:
        parse_candidates.append(candidate[start : end + 1])

    for item in parse_candidates:
        try:
            parsed = json.loads(item)
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def extract_embedding(payload: Any) -> Optional[List[float]]:
    candidates: List[Any] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list) and data:
            first_item = data[0]
            if isinstance(first_item, dict):
                candidates.append(first_item.get("embedding"))
            elif isinstance(first_item, list):
                candidates.append(first_item)
        candidates.append(payload.get("embedding"))

    for candidate in candidates:
        if not isinstance(candidate, list) or not candidate:
            continue
        try:
            return [float(v) for v in candidate]
        except (TypeError, ValueError):
            continue
    return None


def hash_embedding(content: str, dim: int = 64) -> List[float]:
    """Deterministic, L2-normalized token-hash vector."""
    vector = [0.0] * dim
    normalized = re.sub(r"\s+", " ", (content or "").strip().lower())
    tokens = re.findall(r"[a-z0-9_]+", normalized)
    if not tokens and normalized:
        tokens = list(normalized)

    for token in tokens:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        for i in range(0, 8, 2):
            idx = digest[i] % dim
            sign = -1.0 if (digest[i + 1] & 1) else 1.0
            weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
            vector[idx] += sign * weight

    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        return [0.0] * dim
    return [v / norm for v in vector]


async def _post_json(
    base: str,
    endpoint: str,
    payload: Dict[str, Any],
    *,
    api_key: str = "",
    timeout_sec: float = 20.0,
) -> Optional[Dict[str, Any]]:
    if not base:
        return None

    url = _join_api_url(base, endpoint)
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec)) as client:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            parsed = response.json()
    except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
        logger.warning("POST %s failed: %s", url, exc)
        return None
    if isinstance(parsed, dict):
        return parsed
    return {"data": parsed}


class CompletionClient:
    """Chat-completions client: one system + one user message, JSON-leaning output."""

    def __init__(
        self,
        *,
        api_base: str,
        model: str,
        api_key: str = "",
        timeout_sec: float = 20.0,
        temperature: float = 0.0,
    ) -> None:
        self.api_base = _strip_suffixes(api_base, ("/chat/completions", "/responses"))
        self.model = (model or "").strip()
        self.api_key = api_key
        self.timeout_sec = timeout_sec
        self.temperature = temperature

    @classmethod
    def from_config(cls, config: FeatureConfig) -> "CompletionClient":
        return cls(
            api_base=config.llm_api_base,
            model=config.llm_model,
            api_key=config.llm_api_key,
            timeout_sec=config.llm_timeout_sec,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_base and self.model)

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        if not self.configured:
            raise CompletionError("completion service is not configured")
        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        response = await _post_json(
            self.api_base,
            "/chat/completions",
            payload,
            api_key=self.api_key,
            timeout_sec=self.timeout_sec,
        )
        if response is None:
            raise CompletionError("completion request failed")
        text = extract_chat_message_text(response)
        if not text:
            raise CompletionError("completion response was empty")
        return text


class EmbeddingClient:
    """Embedding client; `hash` backend is local, api/openai/router go over HTTP."""

    def __init__(
        self,
        *,
        backend: str = "hash",
        api_base: str = "",
        model: str = "hash-v1",
        api_key: str = "",
        dim: int = 64,
        timeout_sec: float = 20.0,
    ) -> None:
        self.backend = (backend or "hash").strip().lower()
        self.api_base = _strip_suffixes(api_base, ("/embeddings",))
        self.model = (model or "hash-v1").strip()
        self.api_key = api_key
        self.dim = max(16, int(dim))
        self.timeout_sec = timeout_sec

    @classmethod
    def from_config(cls, config: FeatureConfig) -> "EmbeddingClient":
        return cls(
            backend=config.embedding_backend,
            api_base=config.embedding_api_base,
            model=config.embedding_model,
            api_key=config.embedding_api_key,
            dim=config.embedding_dim,
            timeout_sec=config.llm_timeout_sec,
        )

    @property
    def model_name(self) -> str:
        return "hash-v1" if self.backend == "hash" else self.model

    async def embed(self, text: str) -> List[float]:
        content = (text or "").strip()
        if not content:
            raise EmbeddingError("cannot embed empty text")
        if self.backend == "hash":
            return hash_embedding(content, self.dim)
        if self.backend not in _REMOTE_EMBEDDING_BACKENDS:
            raise EmbeddingError(f"unsupported embedding backend '{self.backend}'")
        if not self.api_base or not self.model:
            raise EmbeddingError("embedding service is not configured")

        response = await _post_json(
            self.api_base,
            "/embeddings",
            {"model": self.model, "input": content},
            api_key=self.api_key,
            timeout_sec=self.timeout_sec,
        )
        if response is None:
            raise EmbeddingError("embedding request failed")
        embedding = extract_embedding(response)
        if embedding is None:
            raise EmbeddingError("embedding response did not contain a vector")
        return embedding
