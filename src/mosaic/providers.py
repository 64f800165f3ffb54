"""Per-provider backend adapters, selected by ProviderConfig.type."""

import json
import re
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type

import httpx

from .config import ProviderConfig
from .errors import AIError
from .logger import truncate
from .streaming_client import BackendClient, WireMessage, _as_dict, normalize_usage

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_THINKING_BUDGET = 10000
ANTHROPIC_EMPTY_PROMPT = "Continue."

_OPENAI_REASONING_MODEL = re.compile(r"^(o\d|gpt-5)", re.IGNORECASE)


def is_reasoning_model(model: str) -> bool:
    """OpenAI reasoning models reject temperature and take max_completion_tokens."""
    return bool(_OPENAI_REASONING_MODEL.match(model or ""))


# ── OpenAI-compatible ────────────────────────────────────────

class OpenAICompatibleBackend(BackendClient):
    """Any /chat/completions endpoint speaking the OpenAI wire format."""

    provider_name = "openai"
    default_base_url = "https://api.openai.com/v1"
    include_stream_usage = True

    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._require_key()}",
        }

    def build_request(self, messages: List[WireMessage], stream: bool) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        headers = self.headers()
        url = f"{self.base_url}/chat/completions"
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": stream,
        }
        if is_reasoning_model(self.model):
            payload["max_completion_tokens"] = self.config.max_tokens
        else:
            payload["max_tokens"] = self.config.max_tokens
            if self.config.temperature is not None:
                payload["temperature"] = self.config.temperature
        if stream and self.include_stream_usage:
            payload["stream_options"] = {"include_usage": True}
        return url, headers, payload


class OpenAIBackend(OpenAICompatibleBackend):
    provider_name = "openai"


class OpenRouterBackend(OpenAICompatibleBackend):
    provider_name = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        headers["HTTP-Referer"] = "https://github.com/mosaic-agent/mosaic"
        headers["X-Title"] = "mosaic"
        return headers


class XAIBackend(OpenAICompatibleBackend):
    provider_name = "xai"
    default_base_url = "https://api.x.ai/v1"


class MistralBackend(OpenAICompatibleBackend):
    provider_name = "mistral"
    default_base_url = "https://api.mistral.ai/v1"
    include_stream_usage = False


class CustomBackend(OpenAICompatibleBackend):
    """Self-hosted or third-party OpenAI-compatible server; base URL is mandatory."""

    provider_name = "custom"
    default_base_url = None
    include_stream_usage = False


# ── Anthropic ────────────────────────────────────────────────

class AnthropicBackend(BackendClient):
    """Anthropic Messages API."""

    provider_name = "anthropic"
    default_base_url = "https://api.anthropic.com/v1"

    def build_request(self, messages: List[WireMessage], stream: bool) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self._require_key(),
            "anthropic-version": ANTHROPIC_VERSION,
        }
        system_parts = [str(m.get("content", "")) for m in messages if m.get("role") == "system"]
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self._conversation(messages),
            "max_tokens": self.config.max_tokens,
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if self.config.thinking:
            payload["thinking"] = {"type": "enabled", "budget_tokens": ANTHROPIC_THINKING_BUDGET}
            payload["max_tokens"] = max(self.config.max_tokens, ANTHROPIC_THINKING_BUDGET + 4096)
        elif self.config.temperature is not None:
            payload["temperature"] = self.config.temperature
        return f"{self.base_url}/messages", headers, payload

    @staticmethod
    def _conversation(messages: List[WireMessage]) -> List[Dict[str, Any]]:
        """Map roles onto user/assistant and merge consecutive same-role turns.

        The API rejects a conversation that opens with an assistant turn,
        which truncation can produce, so leading assistant turns are dropped.
        """
        out: List[Dict[str, Any]] = []
        for m in messages:
            role = m.get("role")
            if role == "system":
                continue
            role = "assistant" if role == "assistant" else "user"
            content = str(m.get("content", ""))
            if not out and role == "assistant":
                continue
            if out and out[-1]["role"] == role:
                out[-1]["content"] += "\n\n" + content
            else:
                out.append({"role": role, "content": content})
        if not out:
            out.append({"role": "user", "content": ANTHROPIC_EMPTY_PROMPT})
        return out

    def event_usage(self, obj: Dict[str, Any]) -> Dict[str, int]:
        if obj.get("type") == "message_start":
            return normalize_usage(_as_dict(obj.get("message")).get("usage"))
        return normalize_usage(obj.get("usage"))

    def event_finish_reason(self, obj: Dict[str, Any]) -> Optional[str]:
        stop = obj.get("stop_reason") or _as_dict(obj.get("delta")).get("stop_reason")
        if not stop:
            return None
        return "length" if stop == "max_tokens" else "stop"


# ── Ollama ───────────────────────────────────────────────────

class OllamaBackend(BackendClient):
    """Local Ollama server: /api/chat with newline-delimited JSON streaming."""

    provider_name = "ollama"
    default_base_url = "http://localhost:11434"
    keeps_tool_role = True

    def build_request(self, messages: List[WireMessage], stream: bool) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        options: Dict[str, Any] = {"num_predict": self.config.max_tokens}
        if self.config.temperature is not None:
            options["temperature"] = self.config.temperature
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": stream,
            "options": options,
        }
        return f"{self.base_url}/api/chat", headers, payload

    async def iter_events(self, response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
        async for line in response.aiter_lines():
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                self.log.debug("Skipping unparseable NDJSON line: %s", truncate(line))
                continue
            if isinstance(obj, dict):
                yield obj
                if obj.get("done"):
                    break

    def event_usage(self, obj: Dict[str, Any]) -> Dict[str, int]:
        if not obj.get("done"):
            return {}
        return normalize_usage(obj)

    def event_finish_reason(self, obj: Dict[str, Any]) -> Optional[str]:
        if not obj.get("done"):
            return None
        return "length" if obj.get("done_reason") == "length" else "stop"


# ── Factory ──────────────────────────────────────────────────

PROVIDERS: Dict[str, Type[BackendClient]] = {
    "openai": OpenAIBackend,
    "anthropic": AnthropicBackend,
    "openrouter": OpenRouterBackend,
    "ollama": OllamaBackend,
    "xai": XAIBackend,
    "mistral": MistralBackend,
    "custom": CustomBackend,
}


def create_backend(config: ProviderConfig, **kwargs) -> BackendClient:
    """Instantiate the adapter for ``config.type``.

    Extra keyword arguments (persona, retry, transport, logger,
    max_context_tokens) go straight to the BackendClient constructor.
    """
    cls = PROVIDERS.get(config.type)
    if cls is None:
        raise AIError.unknown_provider(config.type)
    return cls(config, **kwargs)
