"""Chat-completion client core shared by every backend provider.

A provider adapter (see providers.py) only knows how to build its HTTP
request and where its stream events keep usage and finish reasons.
Everything else lives here:

- persona injection and token-budget truncation of outbound messages
- one ordered set of delta extractors that pull visible text out of any
  provider's payload, plus a parallel set for reasoning text
- incremental removal of inline <think>/<thinking> blocks so streamed
  deltas concatenate to exactly the non-streaming content
- status/network error classification and retry via RetryPolicy
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from .config import ProviderConfig
from .context_management import truncate_to_budget
from .errors import AIError, AIErrorType
from .interrupt import CancelToken
from .logger import get_logger, truncate
from .models import Message
from .retry import RetryPolicy

DeltaCallback = Callable[[str], None]
WireMessage = Dict[str, Any]


@dataclass
class ChatResponse:
    """One completed (or interrupted) backend reply."""
    content: str = ""
    reasoning: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    finish_reason: str = "stop"
    interrupted: bool = False
    model: str = ""
    duration_ms: float = 0.0

    @property
    def is_truncated(self) -> bool:
        """Check if response was cut off due to length."""
        return self.finish_reason == "length"

    @property
    def input_tokens(self) -> int:
        return int(self.usage.get("prompt_tokens", 0))

    @property
    def output_tokens(self) -> int:
        return int(self.usage.get("completion_tokens", 0))


# ── Delta extraction ─────────────────────────────────────────
#
# Each extractor looks at exactly one payload shape and returns its text
# or None. extract_text_delta() tries them in order.

def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_choice(obj: Dict[str, Any]) -> Dict[str, Any]:
    choices = obj.get("choices")
    if isinstance(choices, list) and choices:
        return _as_dict(choices[0])
    return {}


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def choice_delta_content(obj: Dict[str, Any]) -> Optional[str]:
    """OpenAI-style stream chunk: choices[0].delta.content"""
    return _text(_as_dict(_first_choice(obj).get("delta")).get("content"))


def choice_message_content(obj: Dict[str, Any]) -> Optional[str]:
    """OpenAI-style completion: choices[0].message.content"""
    return _text(_as_dict(_first_choice(obj).get("message")).get("content"))


def message_content(obj: Dict[str, Any]) -> Optional[str]:
    """Ollama chat: message.content"""
    return _text(_as_dict(obj.get("message")).get("content"))


def content_block_text(obj: Dict[str, Any]) -> Optional[str]:
    """Anthropic message: text of the content[] text blocks."""
    blocks = obj.get("content")
    if not isinstance(blocks, list):
        return None
    parts = [
        b["text"] for b in blocks
        if isinstance(b, dict) and b.get("type", "text") == "text" and isinstance(b.get("text"), str)
    ]
    return _text("".join(parts))


def top_level_content(obj: Dict[str, Any]) -> Optional[str]:
    """Bare {"content": "..."} payloads."""
    return _text(obj.get("content"))


def delta_text(obj: Dict[str, Any]) -> Optional[str]:
    """Anthropic stream event: content_block_delta.delta.text"""
    return _text(_as_dict(obj.get("delta")).get("text"))


DELTA_EXTRACTORS: Tuple[Callable[[Dict[str, Any]], Optional[str]], ...] = (
    choice_delta_content,
    choice_message_content,
    message_content,
    content_block_text,
    top_level_content,
    delta_text,
)


def choice_reasoning(obj: Dict[str, Any]) -> Optional[str]:
    """reasoning_content / reasoning on choices[0].delta or choices[0].message."""
    choice = _first_choice(obj)
    for key in ("delta", "message"):
        part = _as_dict(choice.get(key))
        text = _text(part.get("reasoning_content")) or _text(part.get("reasoning"))
        if text:
            return text
    return None


def message_thinking(obj: Dict[str, Any]) -> Optional[str]:
    """Ollama thinking models: message.thinking"""
    return _text(_as_dict(obj.get("message")).get("thinking"))


def thinking_blocks(obj: Dict[str, Any]) -> Optional[str]:
    """Anthropic extended thinking: content[] thinking blocks."""
    blocks = obj.get("content")
    if not isinstance(blocks, list):
        return None
    parts = [
        b.get("thinking", "") for b in blocks
        if isinstance(b, dict) and b.get("type") == "thinking"
    ]
    return _text("".join(p for p in parts if isinstance(p, str)))


def delta_thinking(obj: Dict[str, Any]) -> Optional[str]:
    """Anthropic stream event: thinking_delta.thinking"""
    return _text(_as_dict(obj.get("delta")).get("thinking"))


REASONING_EXTRACTORS: Tuple[Callable[[Dict[str, Any]], Optional[str]], ...] = (
    choice_reasoning,
    message_thinking,
    thinking_blocks,
    delta_thinking,
)


def _first_match(obj: Any, extractors: Sequence[Callable[[Dict[str, Any]], Optional[str]]]) -> str:
    if not isinstance(obj, dict):
        return ""
    for extract in extractors:
        text = extract(obj)
        if text:
            return text
    return ""


def extract_text_delta(obj: Any) -> str:
    """Return the first non-empty visible text found in ``obj``."""
    return _first_match(obj, DELTA_EXTRACTORS)


def extract_reasoning_delta(obj: Any) -> str:
    """Return the first non-empty reasoning text found in ``obj``."""
    return _first_match(obj, REASONING_EXTRACTORS)


# ── Inline reasoning blocks ──────────────────────────────────

class ThinkTagSplitter:
    """Route text inside <think>...</think> or <thinking>...</thinking> away from content.

    Works on arbitrary chunk boundaries: a partial tag at the end of a
    chunk is held back until the next chunk decides what it is.
    """

    OPEN_TAGS = ("<thinking>", "<think>")

    def __init__(self):
        self._buf = ""
        self._close: Optional[str] = None

    def feed(self, text: str) -> Tuple[str, str]:
        """Consume ``text``; return (visible, reasoning) that is now settled."""
        self._buf += text
        visible: List[str] = []
        thought: List[str] = []
        while self._buf:
            if self._close is None:
                idx = self._buf.find("<")
                if idx == -1:
                    visible.append(self._buf)
                    self._buf = ""
                    break
                visible.append(self._buf[:idx])
                self._buf = self._buf[idx:]
                tag = next((t for t in self.OPEN_TAGS if self._buf.startswith(t)), None)
                if tag:
                    self._close = "</" + tag[1:]
                    self._buf = self._buf[len(tag):]
                    continue
                if any(t.startswith(self._buf) for t in self.OPEN_TAGS):
                    break
                visible.append("<")
                self._buf = self._buf[1:]
            else:
                idx = self._buf.find(self._close)
                if idx == -1:
                    keep = _partial_suffix_len(self._buf, self._close)
                    thought.append(self._buf[:len(self._buf) - keep])
                    self._buf = self._buf[len(self._buf) - keep:]
                    break
                thought.append(self._buf[:idx])
                self._buf = self._buf[idx + len(self._close):]
                self._close = None
        return "".join(visible), "".join(thought)

    def flush(self) -> Tuple[str, str]:
        """Release whatever is still held back at end of stream."""
        buf, self._buf = self._buf, ""
        if self._close is not None:
            return "", buf
        return buf, ""


def _partial_suffix_len(text: str, tag: str) -> int:
    for n in range(min(len(tag) - 1, len(text)), 0, -1):
        if tag.startswith(text[-n:]):
            return n
    return 0


def split_reasoning(text: str) -> Tuple[str, str]:
    """Split a complete reply into (visible content, inline reasoning)."""
    splitter = ThinkTagSplitter()
    visible, thought = splitter.feed(text)
    rest_visible, rest_thought = splitter.flush()
    return visible + rest_visible, thought + rest_thought


# ── Usage ────────────────────────────────────────────────────

def normalize_usage(usage: Any) -> Dict[str, int]:
    """Normalize provider usage payloads to prompt/completion/total tokens.

    Understands OpenAI-style prompt/completion counts, Anthropic
    input/output counts and Ollama eval counts, and keeps cached and
    reasoning token details when present.
    """
    if not isinstance(usage, dict):
        return {}
    out: Dict[str, int] = {}

    def _put(key: str, value: Any) -> None:
        if value is None:
            return
        try:
            out[key] = int(value)
        except (TypeError, ValueError):
            pass

    for key in ("prompt_tokens", "completion_tokens", "total_tokens",
                "input_tokens", "output_tokens",
                "cache_creation_input_tokens", "cache_read_input_tokens"):
        _put(key, usage.get(key))
    _put("input_tokens", usage.get("prompt_eval_count"))
    _put("output_tokens", usage.get("eval_count"))

    pdet = usage.get("prompt_tokens_details")
    if isinstance(pdet, dict):
        _put("prompt_cached_tokens", pdet.get("cached_tokens"))
    cdet = usage.get("completion_tokens_details")
    if isinstance(cdet, dict):
        _put("completion_reasoning_tokens", cdet.get("reasoning_tokens"))

    if "prompt_tokens" not in out and "input_tokens" in out:
        out["prompt_tokens"] = out["input_tokens"]
    if "completion_tokens" not in out and "output_tokens" in out:
        out["completion_tokens"] = out["output_tokens"]
    if "total_tokens" not in out and ("prompt_tokens" in out or "completion_tokens" in out):
        out["total_tokens"] = out.get("prompt_tokens", 0) + out.get("completion_tokens", 0)
    return out


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


# ── Client ───────────────────────────────────────────────────

class BackendClient:
    """Uniform blocking + streaming chat contract over one provider's HTTP API.

    Subclasses implement build_request() and may override iter_events(),
    event_usage() and event_finish_reason() for their wire format.
    """

    provider_name = "backend"
    default_base_url: Optional[str] = None
    # Whether tool-result messages may keep role "tool" on the wire
    keeps_tool_role = False

    def __init__(
        self,
        config: ProviderConfig,
        persona: str = "",
        retry: Optional[RetryPolicy] = None,
        max_context_tokens: int = 32000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.model = config.model
        self.persona = persona
        self.max_context_tokens = max_context_tokens
        self.log = logger or get_logger(f"backend.{self.provider_name}")
        self.retry = retry or RetryPolicy(logger=self.log)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._http()
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(600.0, connect=30.0),
                transport=self._transport,
            )
        return self._client

    # ── Request building (provider hooks) ────────────────────

    @property
    def base_url(self) -> str:
        url = self.config.base_url or self.default_base_url
        if not url:
            raise AIError.missing_endpoint(self.provider_name)
        return url.rstrip("/")

    def _require_key(self) -> str:
        if not self.config.api_key:
            raise AIError.missing_credential(self.provider_name)
        return self.config.api_key

    def build_request(self, messages: List[WireMessage], stream: bool) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        """Return (url, headers, json payload)."""
        raise NotImplementedError

    def event_usage(self, obj: Dict[str, Any]) -> Dict[str, int]:
        return normalize_usage(obj.get("usage"))

    def event_finish_reason(self, obj: Dict[str, Any]) -> Optional[str]:
        reason = _first_choice(obj).get("finish_reason")
        return reason if isinstance(reason, str) and reason else None

    def event_error(self, obj: Dict[str, Any]) -> Optional[str]:
        err = obj.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        if isinstance(err, str) and err:
            return err
        return None

    async def iter_events(self, response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
        """Server-sent events: one JSON object per ``data:`` line."""
        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith("data:"):
                continue
            data_str = line[5:].strip()
            if data_str == "[DONE]":
                break
            try:
                obj = json.loads(data_str)
            except json.JSONDecodeError:
                self.log.debug("Skipping unparseable SSE line: %s", truncate(data_str))
                continue
            if isinstance(obj, dict):
                yield obj

    # ── Message preparation ──────────────────────────────────

    def prepare_messages(self, messages: Sequence[Union[Message, WireMessage]]) -> List[WireMessage]:
        """Inject the persona when no system message is present, then fit the budget."""
        wire = [m.to_dict() if isinstance(m, Message) else dict(m) for m in messages]
        if self.persona and not any(m.get("role") == "system" for m in wire):
            wire.insert(0, {"role": "system", "content": self.persona})
        result = truncate_to_budget(wire, self.max_context_tokens)
        if result.notice:
            self.log.info("%s: %s", self.provider_name, result.notice)
        return result.messages

    # ── Public contract ──────────────────────────────────────

    async def send_message(
        self,
        messages: Sequence[Union[Message, WireMessage]],
        cancel_token: Optional[CancelToken] = None,
    ) -> ChatResponse:
        prepared = self.prepare_messages(messages)
        return await self.retry.execute_with_retry(
            lambda: self._send_once(prepared),
            label=f"{self.provider_name} request",
            cancel_token=cancel_token,
        )

    async def send_message_stream(
        self,
        messages: Sequence[Union[Message, WireMessage]],
        on_delta: DeltaCallback,
        on_reasoning: Optional[DeltaCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> ChatResponse:
        prepared = self.prepare_messages(messages)
        emitted = []

        def forward(text: str) -> None:
            emitted.append(text)
            on_delta(text)

        def after_output(message: str) -> Optional[AIError]:
            # Output already reached the caller; a retry would repeat it
            if not emitted:
                return None
            return AIError.stream_failure(self.provider_name, message, self.model, retryable=False)

        return await self.retry.execute_with_retry(
            lambda: self._stream_once(prepared, forward, on_reasoning, cancel_token),
            label=f"{self.provider_name} stream",
            cancel_token=cancel_token,
            on_timeout=after_output,
        )

    # ── Single attempts ──────────────────────────────────────

    async def _send_once(self, prepared: List[WireMessage]) -> ChatResponse:
        url, headers, payload = self.build_request(prepared, stream=False)
        start = time.monotonic()
        self.log.debug("POST %s model=%s messages=%d", url, self.model, len(prepared))
        try:
            response = await self._http().post(url, headers=headers, json=payload)
        except httpx.RequestError as e:
            raise AIError.from_network_error(e, self.provider_name, self.model) from e

        if not 200 <= response.status_code < 300:
            raise AIError.from_status(
                response.status_code, _safe_json(response), self.provider_name, self.model,
                reason=response.reason_phrase,
            )
        if not response.content.strip():
            raise AIError.empty_response(self.provider_name, self.model)
        try:
            data = response.json()
        except ValueError as e:
            raise AIError(
                AIErrorType.EMPTY_RESPONSE,
                f"{self.provider_name} returned a body that is not JSON",
                provider=self.provider_name,
                model=self.model,
                retryable=True,
            ) from e

        raw = extract_text_delta(data)
        content, inline_reasoning = split_reasoning(raw)
        reasoning = extract_reasoning_delta(data) + inline_reasoning
        if not content and not reasoning:
            raise AIError.empty_response(self.provider_name, self.model)

        finish = self.event_finish_reason(data) or "stop"
        return ChatResponse(
            content=content,
            reasoning=reasoning or None,
            usage=self.event_usage(data),
            finish_reason=finish,
            model=self.model,
            duration_ms=(time.monotonic() - start) * 1000,
        )

    async def _stream_once(
        self,
        prepared: List[WireMessage],
        on_delta: DeltaCallback,
        on_reasoning: Optional[DeltaCallback],
        cancel_token: Optional[CancelToken],
    ) -> ChatResponse:
        url, headers, payload = self.build_request(prepared, stream=True)
        start = time.monotonic()
        splitter = ThinkTagSplitter()
        content_parts: List[str] = []
        reasoning_parts: List[str] = []
        usage: Dict[str, int] = {}
        finish_reason = "stop"
        interrupted = False

        def _emit(visible: str, thought: str) -> None:
            if thought:
                reasoning_parts.append(thought)
                if on_reasoning:
                    on_reasoning(thought)
            if visible:
                content_parts.append(visible)
                on_delta(visible)

        self.log.debug("STREAM %s model=%s messages=%d", url, self.model, len(prepared))
        try:
            async with self._http().stream("POST", url, headers=headers, json=payload) as response:
                if not 200 <= response.status_code < 300:
                    await response.aread()
                    raise AIError.from_status(
                        response.status_code, _safe_json(response), self.provider_name, self.model,
                        reason=response.reason_phrase,
                    )
                async for obj in self.iter_events(response):
                    if cancel_token is not None and cancel_token.cancelled:
                        interrupted = True
                        finish_reason = "interrupted"
                        break
                    err = self.event_error(obj)
                    if err:
                        raise AIError.stream_failure(
                            self.provider_name, err, self.model, retryable=not content_parts,
                        )
                    usage.update(self.event_usage(obj))
                    finish_reason = self.event_finish_reason(obj) or finish_reason

                    thought = extract_reasoning_delta(obj)
                    if thought:
                        _emit("", thought)
                    text = extract_text_delta(obj)
                    if text:
                        _emit(*splitter.feed(text))
        except httpx.RequestError as e:
            if content_parts:
                raise AIError.stream_failure(self.provider_name, str(e), self.model) from e
            raise AIError.from_network_error(e, self.provider_name, self.model) from e

        if not interrupted:
            _emit(*splitter.flush())
            if not content_parts and not reasoning_parts:
                raise AIError.empty_response(self.provider_name, self.model)

        return ChatResponse(
            content="".join(content_parts),
            reasoning="".join(reasoning_parts) or None,
            usage=usage,
            finish_reason=finish_reason,
            interrupted=interrupted,
            model=self.model,
            duration_ms=(time.monotonic() - start) * 1000,
        )
