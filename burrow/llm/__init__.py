"""Generation port and the Ollama HTTP adapter behind it."""

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Sequence

import httpx

from burrow.config import ModelConfig
from burrow.exceptions import GenerationAPIError, GenerationError
from burrow.logging import get_logger
from burrow.session import Message, Role

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_END_OF_TURN_MARKER = "<|im_end|>"


class GenerationPort(ABC):
    """Streams text fragments for a conversation.

    Implementations never raise from ``generate``: an internal failure is
    reported as one final human-readable error fragment. Consumers cancel a
    stream by closing the returned async iterator.
    """

    @abstractmethod
    def generate(self, history: Sequence[Message], system_prompt: str) -> AsyncIterator[str]:
        pass

    async def close(self) -> None:
        return None


def error_fragment(error: BaseException | str) -> str:
    return f"\n[Error: {error}]"


class EndOfTurnFilter:
    """Strips an end-of-turn marker from a fragment stream.

    Text that could be the beginning of a marker split across fragments is
    held back until the next fragment decides it. Everything after the marker
    is dropped.
    """

    def __init__(self, marker: str = DEFAULT_END_OF_TURN_MARKER):
        self.marker = marker
        self.finished = False
        self._pending = ""

    def feed(self, fragment: str) -> str:
        if self.finished:
            return ""
        if not self.marker:
            return fragment

        text = self._pending + fragment
        idx = text.find(self.marker)
        if idx >= 0:
            self.finished = True
            self._pending = ""
            return text[:idx]

        keep = 0
        for size in range(min(len(self.marker) - 1, len(text)), 0, -1):
            if self.marker.startswith(text[-size:]):
                keep = size
                break
        self._pending = text[len(text) - keep:]
        return text[: len(text) - keep]

    def flush(self) -> str:
        pending, self._pending = self._pending, ""
        return "" if self.finished else pending


class OllamaProvider(GenerationPort):
    """Streams chat completions from an Ollama server."""

    def __init__(
        self,
        model: str = "qwen3:1.7b",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 512,
        timeout: float = 120.0,
        end_of_turn_marker: str = DEFAULT_END_OF_TURN_MARKER,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'qwen3:1.7b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            timeout: Request timeout in seconds
            end_of_turn_marker: Marker stripped from emitted text
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.end_of_turn_marker = end_of_turn_marker

        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    @staticmethod
    def _convert_messages(history: Sequence[Message], system_prompt: str) -> list[dict[str, Any]]:
        """Convert ledger messages to Ollama chat format.

        Tool feedback is sent as a system turn; the chat template has no
        dedicated role for in-band ``<result>`` blocks.
        """
        result: list[dict[str, Any]] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})
        for msg in history:
            role = "system" if msg.role is Role.TOOL else msg.role.value
            result.append({"role": role, "content": msg.content or ""})
        return result

    async def generate(self, history: Sequence[Message], system_prompt: str) -> AsyncIterator[str]:
        """Stream a completion, yielding display-safe text fragments."""
        url = f"{self.base_url}/api/chat"
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(history, system_prompt),
            "stream": True,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }
        marker_filter = EndOfTurnFilter(self.end_of_turn_marker)

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(body["messages"]))
            async with self.client.stream("POST", url, json=body) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise GenerationAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if chunk.get("error"):
                        raise GenerationError(str(chunk["error"]))
                    content = chunk.get("message", {}).get("content") or ""
                    if content:
                        text = marker_filter.feed(content)
                        if text:
                            yield text
                    if chunk.get("done") or marker_filter.finished:
                        break

            tail = marker_filter.flush()
            if tail:
                yield tail
        except GenerationError as e:
            log.error("Generation failed", error=str(e))
            yield error_fragment(e)
        except httpx.HTTPError as e:
            log.error("Ollama streaming error", error=str(e))
            yield error_fragment(f"Ollama streaming error: {e}")
        except Exception as e:
            log.error("Ollama stream failed", error=str(e))
            yield error_fragment(f"Ollama stream failed: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(config: ModelConfig) -> GenerationPort:
    """Create a generation port from model configuration."""
    if config.provider == "ollama":
        return OllamaProvider(
            model=config.model,
            base_url=config.base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            end_of_turn_marker=config.end_of_turn_marker,
        )
    raise ValueError(f"Provider '{config.provider}' not supported. Use 'ollama' or pass a GenerationPort.")
