from __future__ import annotations

from dataclasses import dataclass, field
import threading
from typing import Any

# USD per million tokens.
MODEL_PRICING: dict[str, dict[str, float]] = {
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-5-mini": {"input": 0.25, "output": 2.00},
}
DEFAULT_PRICING_MODEL = "gpt-5-mini"

# Prompt share applied when a provider reports only a total.
EXTRACTION_PROMPT_RATIO = 0.8
CLASSIFICATION_PROMPT_RATIO = 0.7


@dataclass(frozen=True, slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_response(cls, raw: Any, *, prompt_ratio: float = EXTRACTION_PROMPT_RATIO) -> TokenUsage:
        """Read a provider usage payload, estimating the split if only a total is present."""
        if raw is None:
            return cls()
        prompt = _read_int(raw, "prompt_tokens")
        completion = _read_int(raw, "completion_tokens")
        total = _read_int(raw, "total_tokens")
        if not prompt and not completion:
            if not total:
                return cls()
            prompt = int(total * prompt_ratio)
            return cls(prompt_tokens=prompt, completion_tokens=total - prompt, total_tokens=total)
        prompt = prompt or 0
        completion = completion or 0
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total or prompt + completion)


@dataclass(frozen=True, slots=True)
class UsageCost:
    input_cost: float
    output_cost: float
    total_cost: float
    total_tokens: int


class UsageTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._total_tokens = 0

    def add(self, usage: TokenUsage) -> None:
        with self._lock:
            self._prompt_tokens += usage.prompt_tokens
            self._completion_tokens += usage.completion_tokens
            self._total_tokens += usage.total_tokens

    def usage(self) -> TokenUsage:
        with self._lock:
            return TokenUsage(
                prompt_tokens=self._prompt_tokens,
                completion_tokens=self._completion_tokens,
                total_tokens=self._total_tokens,
            )

    def cost(self, model: str) -> UsageCost:
        pricing = MODEL_PRICING.get(model, MODEL_PRICING[DEFAULT_PRICING_MODEL])
        usage = self.usage()
        input_cost = usage.prompt_tokens / 1_000_000 * pricing["input"]
        output_cost = usage.completion_tokens / 1_000_000 * pricing["output"]
        return UsageCost(
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=input_cost + output_cost,
            total_tokens=usage.total_tokens,
        )

    def reset(self) -> None:
        with self._lock:
            self._prompt_tokens = 0
            self._completion_tokens = 0
            self._total_tokens = 0


@dataclass(slots=True)
class RunUsage:
    extraction_model: str
    classification_model: str
    suggestion_model: str
    extraction: UsageTracker = field(default_factory=UsageTracker)
    classification: UsageTracker = field(default_factory=UsageTracker)
    suggestion: UsageTracker = field(default_factory=UsageTracker)

    @property
    def total_tokens(self) -> int:
        return sum(tracker.usage().total_tokens for tracker in (self.extraction, self.classification, self.suggestion))

    @property
    def total_cost_usd(self) -> float:
        return (
            self.extraction.cost(self.extraction_model).total_cost
            + self.classification.cost(self.classification_model).total_cost
            + self.suggestion.cost(self.suggestion_model).total_cost
        )


def _read_int(raw: Any, key: str) -> int | None:
    value = raw.get(key) if isinstance(raw, dict) else getattr(raw, key, None)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
