"""Backend client for LLM rewriting endpoints.

A backend client performs exactly one rewrite attempt for one chunk. It
either returns the rewritten text or raises a BackendError whose kind tells
the retry controller what to do next:

- TransientBackendError: network failure, timeout, 408/425/429, 5xx
- RejectedBackendError: other 4xx, unparseable or empty reply
- FatalBackendError: 401/403/404, invalid endpoint URL, missing credentials

Backends differ only in request dialect, selected by configuration data:

- openai: POST {api_base}/chat/completions (OpenAI-compatible servers)
- ollama: POST {api_base}/api/chat with streaming disabled
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from book_sanitizer.sanitize.configuration import ConfigurationError
from book_sanitizer.sanitize.models import FailureKind

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from book_sanitizer.sanitize.chunker.models import Chunk
    from book_sanitizer.sanitize.configuration import BackendConfiguration

logger = logging.getLogger("book_sanitizer.backend")


# =============================================================================
# EXCEPTIONS
# =============================================================================


class BackendError(Exception):
    """Base exception for a failed rewrite attempt."""

    kind: FailureKind = FailureKind.TRANSIENT


class TransientBackendError(BackendError):
    """Raised when the attempt failed for a reason that may clear up on retry."""

    kind = FailureKind.TRANSIENT


class RejectedBackendError(BackendError):
    """Raised when the endpoint declined the request or replied with nothing usable."""

    kind = FailureKind.REJECTED


class FatalBackendError(BackendError):
    """Raised when the configuration itself is unusable (auth, URL, model)."""

    kind = FailureKind.FATAL


# =============================================================================
# CONSTANTS
# =============================================================================

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})
FATAL_STATUS_CODES = frozenset({401, 403, 404})
ERROR_BODY_PREVIEW_CHARS = 200

_CODE_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


# =============================================================================
# CLIENT INTERFACE
# =============================================================================


class BackendClient(Protocol):
    async def attempt(self, chunk: Chunk, configuration: BackendConfiguration) -> str: ...


# =============================================================================
# REQUEST DIALECTS
# =============================================================================


def _messages(configuration: BackendConfiguration, text: str) -> list[dict[str, str]]:
    template = configuration.template
    return [
        {"role": "system", "content": template.system_prompt},
        {"role": "user", "content": template.render(text)},
    ]


def _openai_payload(configuration: BackendConfiguration, text: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": configuration.model,
        "messages": _messages(configuration, text),
        "temperature": configuration.template.temperature,
    }
    if configuration.template.max_tokens is not None:
        payload["max_tokens"] = configuration.template.max_tokens
    return payload


def _openai_content(data: dict[str, Any]) -> Any:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    return message.get("content") if isinstance(message, dict) else None


def _ollama_payload(configuration: BackendConfiguration, text: str) -> dict[str, Any]:
    options: dict[str, Any] = {"temperature": configuration.template.temperature}
    if configuration.template.max_tokens is not None:
        options["num_predict"] = configuration.template.max_tokens
    return {
        "model": configuration.model,
        "messages": _messages(configuration, text),
        "stream": False,
        "options": options,
    }


def _ollama_content(data: dict[str, Any]) -> Any:
    message = data.get("message")
    return message.get("content") if isinstance(message, dict) else None


@dataclass(frozen=True)
class _Dialect:
    path: str
    build_payload: Callable[[BackendConfiguration, str], dict[str, Any]]
    extract_content: Callable[[dict[str, Any]], Any]


_DIALECTS: dict[str, _Dialect] = {
    "openai": _Dialect("/chat/completions", _openai_payload, _openai_content),
    "ollama": _Dialect("/api/chat", _ollama_payload, _ollama_content),
}


# =============================================================================
# RESPONSE HANDLING
# =============================================================================


def _raise_for_status(response: httpx.Response) -> None:
    """Classify a non-2xx response into the matching BackendError.

    Args:
        response: HTTP response from the endpoint

    Raises:
        TransientBackendError: 408, 425, 429 or any 5xx
        FatalBackendError: 401, 403 or 404
        RejectedBackendError: Any other non-2xx status
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    body = str(response.text or "")[:ERROR_BODY_PREVIEW_CHARS]
    message = f"Server returned {status}: {body}" if body else f"Server returned {status}"

    if status in TRANSIENT_STATUS_CODES or status >= 500:
        raise TransientBackendError(message)
    if status in FATAL_STATUS_CODES:
        raise FatalBackendError(message)
    raise RejectedBackendError(message)


def extract_rewritten_text(content: str, response_key: str | None) -> str:
    """Pull the rewritten text out of the model's reply.

    With a response_key the reply must be a JSON object (optionally wrapped
    in a markdown code fence) holding a non-empty string under that key.
    Without one the stripped reply is used as-is.

    Args:
        content: Raw assistant message content
        response_key: JSON key holding the text, or None for raw replies

    Returns:
        Rewritten text

    Raises:
        RejectedBackendError: If the reply is empty, not JSON, or lacks the key
    """
    stripped = content.strip()
    if not stripped:
        raise RejectedBackendError("Server returned empty content")

    if response_key is None:
        return stripped

    fenced = _CODE_FENCE_PATTERN.match(stripped)
    if fenced:
        stripped = fenced.group(1)

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as e:
        raise RejectedBackendError(f"Reply is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise RejectedBackendError("Reply JSON is not an object")
    if not data:
        raise RejectedBackendError("Reply JSON object is empty")

    value = data.get(response_key)
    if not isinstance(value, str):
        raise RejectedBackendError(f"Reply JSON has no string field '{response_key}'")
    if not value.strip():
        raise RejectedBackendError(f"Reply field '{response_key}' is empty")
    return value


# =============================================================================
# HTTP CLIENT
# =============================================================================


class HttpBackendClient:
    """Backend client speaking HTTP through one shared httpx.AsyncClient.

    Use as an async context manager so the connection pool is closed:

        async with HttpBackendClient() as client:
            text = await client.attempt(chunk, configuration)
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> HttpBackendClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def attempt(self, chunk: Chunk, configuration: BackendConfiguration) -> str:
        """Send one chunk to the configured endpoint.

        Args:
            chunk: Chunk to rewrite
            configuration: Backend to send it to

        Returns:
            Rewritten text

        Raises:
            TransientBackendError: Retry may succeed
            RejectedBackendError: Endpoint declined or replied with nothing usable
            FatalBackendError: Configuration is unusable
        """
        if self._client is None:
            raise RuntimeError("HttpBackendClient must be entered with 'async with' before use")

        dialect = _DIALECTS[configuration.backend]
        url = f"{configuration.api_base}{dialect.path}"

        try:
            api_key = configuration.resolve_api_key()
        except ConfigurationError as e:
            raise FatalBackendError(str(e)) from e

        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

        try:
            response = await self._client.post(
                url,
                json=dialect.build_payload(configuration, chunk.text),
                headers=headers,
                timeout=configuration.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise TransientBackendError(
                f"Request timed out after {configuration.timeout_seconds}s"
            ) from e
        except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
            raise FatalBackendError(f"Invalid endpoint {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientBackendError(f"{type(e).__name__}: {e}") from e

        logger.debug(
            "Response received: status=%d, chunk=%d, configuration=%s",
            response.status_code,
            chunk.index,
            configuration.name,
        )
        _raise_for_status(response)

        try:
            data = response.json()
        except ValueError as e:
            raise RejectedBackendError(f"Server returned invalid JSON: {e}") from e

        content = dialect.extract_content(data) if isinstance(data, dict) else None
        if not isinstance(content, str):
            raise RejectedBackendError("Server response has no message content")

        return extract_rewritten_text(content, configuration.template.response_key)
