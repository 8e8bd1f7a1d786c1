"""Request-wide wall-clock budget and round cap."""

import time
from dataclasses import dataclass, field
from typing import Callable

from verifolio_chat.config import Config
from verifolio_chat.exceptions import BudgetExceededError
from verifolio_chat.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ChatLimits:
    """Immutable per-process limits injected into the orchestrator."""

    model_timeout: float = 60.0
    tool_timeout: float = 30.0
    total_timeout: float = 90.0
    max_tool_rounds: int = 2
    max_retry_rounds: int = 1

    @classmethod
    def from_config(cls, config: Config) -> "ChatLimits":
        return cls(
            model_timeout=config.timeouts.model_seconds,
            tool_timeout=config.timeouts.tool_seconds,
            total_timeout=config.timeouts.total_seconds,
            max_tool_rounds=config.chat.max_tool_rounds,
            max_retry_rounds=config.chat.max_retry_rounds,
        )


@dataclass(eq=False)
class Budget:
    """Shared deadline for one request.

    Created once at request entry and handed around by reference. The
    deadline never moves; ``check`` is called before every new suspension
    (model call, tool dispatch, stream read) so an exhausted budget stops
    the request before work starts rather than in the middle of a call.
    """

    limits: ChatLimits
    clock: Callable[[], float] = time.monotonic
    started_at: float = field(init=False)
    tool_rounds: int = field(init=False, default=0)
    retry_rounds: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    @property
    def deadline(self) -> float:
        return self.started_at + self.limits.total_timeout

    @property
    def model_timeout(self) -> float:
        return self.limits.model_timeout

    @property
    def tool_timeout(self) -> float:
        return self.limits.tool_timeout

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.deadline - self.clock())

    def exceeded(self) -> bool:
        return self.clock() > self.deadline

    def check(self, label: str) -> None:
        """Raise if the total budget is already spent."""
        if self.exceeded():
            log.warning("Request budget exceeded", label=label, elapsed=round(self.elapsed(), 3))
            raise BudgetExceededError(label, f"{label}: request exceeded total budget of {self.limits.total_timeout:g}s")

    def claim_tool_round(self, *, retry: bool = False) -> int:
        """Account for one more tool round; the cap is a hard stop."""
        if retry:
            if self.retry_rounds >= self.limits.max_retry_rounds:
                raise BudgetExceededError("retry round", "retry round cap reached")
            self.retry_rounds += 1
            return self.retry_rounds
        if self.tool_rounds >= self.limits.max_tool_rounds:
            raise BudgetExceededError("tool round", "tool round cap reached")
        self.tool_rounds += 1
        return self.tool_rounds
