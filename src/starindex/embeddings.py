"""Embedding providers and the shrink-and-retry loop for over-long inputs."""

from __future__ import annotations

import logging
from typing import Sequence

import requests

from .budget import fit
from .config import REQUEST_TIMEOUT, get_verify
from .errors import (
    ContextLengthError,
    ProviderAuthError,
    ProviderRateOrNetworkError,
    TransientItemError,
)
from .providers import EmbeddingProvider, Vector

logger = logging.getLogger(__name__)

BUDGET_SHRINK_FACTOR = 0.75

_LENGTH_MARKERS = ("maximum context length", "context length", "too long", "too many tokens")


def _is_length_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _LENGTH_MARKERS)


def _error_message(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message", resp.text))
        if error:
            return str(error)
    return resp.text


def _raise_for_status(resp: requests.Response, service: str) -> None:
    if resp.status_code == 200:
        return
    message = _error_message(resp)
    if resp.status_code in (401, 403):
        raise ProviderAuthError(f"{service} rejected the credential ({resp.status_code}): {message}")
    if resp.status_code == 429 or resp.status_code >= 500:
        raise ProviderRateOrNetworkError(f"{service} request failed ({resp.status_code}): {message}")
    if _is_length_error(message):
        raise ContextLengthError(f"{service} input too long: {message}")
    raise TransientItemError(f"{service} request failed ({resp.status_code}): {message}")


class OpenAIEmbeddingProvider(EmbeddingProvider):
    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-large",
        url: str = "https://api.openai.com/v1/embeddings",
        dimension: int = 3072,
        timeout: int = REQUEST_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.model = model
        self.url = url
        self.dimension = dimension
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {"Authorization": f"Bearer {api_key}"}

    def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        if not texts:
            return []
        try:
            resp = self.session.post(
                self.url,
                json={"model": self.model, "input": list(texts)},
                headers=self.headers,
                timeout=self.timeout,
                verify=get_verify(),
            )
        except requests.exceptions.ConnectionError as exc:
            raise ProviderRateOrNetworkError("Cannot connect to OpenAI embeddings service") from exc
        except requests.exceptions.RequestException as exc:
            raise ProviderRateOrNetworkError(f"OpenAI embeddings request failed: {exc}") from exc

        _raise_for_status(resp, "OpenAI")

        try:
            data = sorted(resp.json()["data"], key=lambda entry: entry["index"])
            embeddings = [list(entry["embedding"]) for entry in data]
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderRateOrNetworkError("OpenAI embeddings response is malformed") from exc

        if len(embeddings) != len(texts):
            raise ProviderRateOrNetworkError(
                f"OpenAI returned {len(embeddings)} embeddings for {len(texts)} inputs"
            )
        return embeddings


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeds one text per request against Ollama's ``/api/embeddings``."""

    def __init__(
        self,
        embeddings_url: str,
        model_name: str,
        dimension: int,
        timeout: int = REQUEST_TIMEOUT,
        headers: dict[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.embeddings_url = embeddings_url
        self.model_name = model_name
        self.dimension = dimension
        self.timeout = timeout
        self.headers = headers
        self.session = session or requests.Session()

    def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        return [self.embed_one(text) for text in texts]

    def embed_one(self, text: str) -> Vector:
        try:
            resp = self.session.post(
                self.embeddings_url,
                json={"model": self.model_name, "prompt": text},
                headers=self.headers,
                timeout=self.timeout,
                verify=get_verify(),
            )
        except requests.exceptions.ConnectionError as exc:
            raise ProviderRateOrNetworkError("Cannot connect to Ollama embeddings service") from exc
        except requests.exceptions.RequestException as exc:
            raise ProviderRateOrNetworkError(f"Ollama embeddings request failed: {exc}") from exc

        _raise_for_status(resp, "Ollama")

        try:
            embedding = resp.json().get("embedding")
        except (ValueError, AttributeError) as exc:
            raise ProviderRateOrNetworkError("Ollama embeddings response is malformed") from exc
        if not embedding:
            raise TransientItemError("Ollama embeddings response missing 'embedding'")
        return list(embedding)


def embed_within_budget(
    provider: EmbeddingProvider,
    text: str,
    token_budget: int,
    max_retries: int,
    shrink: float = BUDGET_SHRINK_FACTOR,
) -> Vector:
    """Embed ``text``, shrinking the budget after each "too long" rejection.

    Makes at most ``max_retries`` attempts. Raises TransientItemError once they
    are used up; run-level provider errors propagate untouched.
    """
    budget = token_budget
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            return provider.embed_one(fit(text, budget))
        except ContextLengthError as exc:
            logger.debug(f"Attempt {attempt}/{attempts} too long at budget {budget}: {exc}")
            budget = max(1, int(budget * shrink))
    raise TransientItemError(f"Input still too long after {attempts} attempts")
