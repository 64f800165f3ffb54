"""Cost tracking for backend usage."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Collection, Dict, List, Optional

# Backend pricing (per 1M tokens) - adjust as needed
DEFAULT_PRICING = {
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "claude-sonnet": {"input": 3.00, "output": 15.00},
    "claude-haiku": {"input": 0.80, "output": 4.00},
    "grok": {"input": 3.00, "output": 15.00},
    "mistral-large": {"input": 2.00, "output": 6.00},
    # Local models cost nothing
    "llama": {"input": 0.0, "output": 0.0},
    "default": {"input": 0.50, "output": 1.50},
}

CONVERSATION = "conversation"
INTERNAL_SOURCES = frozenset({"intention_analysis", "task_planning"})


@dataclass
class APICall:
    """One backend call, priced at the moment it was recorded."""

    timestamp: datetime
    model: str
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float
    duration_ms: float
    tool_calls: int = 0
    finish_reason: str = ""
    source: str = CONVERSATION

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["total_tokens"] = self.total_tokens
        data["total_cost"] = self.total_cost
        return data


@dataclass
class CostSummary:
    """Running totals over a set of calls, overall and per model."""

    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_input_cost: float = 0.0
    total_output_cost: float = 0.0
    total_duration_ms: float = 0.0
    total_tool_calls: int = 0
    by_model: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    @property
    def total_cost(self) -> float:
        return self.total_input_cost + self.total_output_cost

    def add(self, call: APICall) -> None:
        self.total_calls += 1
        self.total_input_tokens += call.input_tokens
        self.total_output_tokens += call.output_tokens
        self.total_input_cost += call.input_cost
        self.total_output_cost += call.output_cost
        self.total_duration_ms += call.duration_ms
        self.total_tool_calls += call.tool_calls

        row = self.by_model.setdefault(call.model, {"calls": 0, "tokens": 0, "cost": 0.0})
        row["calls"] += 1
        row["tokens"] += call.total_tokens
        row["cost"] += call.total_cost

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(
            total_tokens=self.total_tokens,
            total_cost=round(self.total_cost, 6),
            avg_tokens_per_call=round(self.total_tokens / max(1, self.total_calls), 1),
        )
        return data

    def format_human(self) -> str:
        lines = [
            f"Calls: {self.total_calls} ({self.total_tool_calls} tool call(s) requested)",
            f"Tokens: {self.total_input_tokens:,} in + {self.total_output_tokens:,} out = {self.total_tokens:,}",
            f"Cost: ${self.total_cost:.4f}",
            f"Time waiting on the backend: {self.total_duration_ms / 1000:.1f}s",
        ]
        if len(self.by_model) > 1:
            for model, row in sorted(self.by_model.items()):
                lines.append(f"  {model}: {int(row['calls'])} call(s), {int(row['tokens']):,} tokens, ${row['cost']:.4f}")
        return "\n".join(lines)


class CostTracker:
    """Track backend costs and usage for one session.

    Every call carries a ``source`` tag. Calls made on the session's
    behalf (intention analysis, planning) are recorded but left out of
    user_summary().
    """

    def __init__(
        self,
        pricing: Optional[Dict[str, Dict[str, float]]] = None,
        on_update: Optional[Callable[[CostSummary], None]] = None,
        internal_sources: Collection[str] = INTERNAL_SOURCES,
    ):
        self.pricing = pricing or DEFAULT_PRICING
        self.on_update = on_update
        self.internal_sources = frozenset(internal_sources)
        self.calls: List[APICall] = []
        self.session_start = datetime.now()

    def get_pricing(self, model: str) -> Dict[str, float]:
        """Pricing for a model: exact, case-insensitive, then partial match."""
        if model in self.pricing:
            return self.pricing[model]

        model_lower = model.lower()
        for key in self.pricing:
            if key.lower() == model_lower:
                return self.pricing[key]

        # Longest key first so "gpt-4o-mini" wins over "gpt-4o"
        for key in sorted(self.pricing, key=len, reverse=True):
            if key != "default" and key.lower() in model_lower:
                return self.pricing[key]

        return self.pricing.get("default", {"input": 0.50, "output": 1.50})

    def record_call(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration_ms: float,
        tool_calls: int = 0,
        finish_reason: str = "",
        source: str = CONVERSATION,
    ) -> APICall:
        """Price and store one call; ``source`` tags who made it."""
        pricing = self.get_pricing(model)
        input_cost = (input_tokens / 1_000_000) * pricing["input"]
        output_cost = (output_tokens / 1_000_000) * pricing["output"]

        call = APICall(
            timestamp=datetime.now(),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            input_cost=input_cost,
            output_cost=output_cost,
            duration_ms=duration_ms,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            source=source,
        )
        self.calls.append(call)
        if self.on_update:
            self.on_update(self.user_summary())
        return call

    def summary(self) -> CostSummary:
        """All recorded calls."""
        result = CostSummary()
        for call in self.calls:
            result.add(call)
        return result

    def user_summary(self) -> CostSummary:
        """Calls the user asked for, without internal planning calls."""
        result = CostSummary()
        for call in self.calls:
            if call.source not in self.internal_sources:
                result.add(call)
        return result

    def get_last_call(self) -> Optional[APICall]:
        return self.calls[-1] if self.calls else None

    def reset(self) -> None:
        self.calls = []
        self.session_start = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_start": self.session_start.isoformat(),
            "summary": self.summary().to_dict(),
            "user_summary": self.user_summary().to_dict(),
            "calls": [call.to_dict() for call in self.calls],
        }

    def save(self, path: str) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
