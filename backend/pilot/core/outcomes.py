"""
Typed results for best-effort operations.

Teardown, rollback and orphan reaping must never abort halfway because one
step failed. Each step reports a StepOutcome; an OutcomeReport collects them
and is logged once, so callers can tell "degraded but continuing" apart from
"fatal to the caller".
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pilot.core.logging_config import logger


class OutcomeStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    DEGRADED = "degraded"
    FATAL = "fatal"


@dataclass
class StepOutcome:
    """Result of a single best-effort step"""
    step: str
    status: OutcomeStatus = OutcomeStatus.OK
    error: Optional[str] = None

    @classmethod
    def ok(cls, step: str) -> "StepOutcome":
        return cls(step=step)

    @classmethod
    def skipped(cls, step: str, reason: Optional[str] = None) -> "StepOutcome":
        return cls(step=step, status=OutcomeStatus.SKIPPED, error=reason)

    @classmethod
    def degraded(cls, step: str, error: Any) -> "StepOutcome":
        return cls(step=step, status=OutcomeStatus.DEGRADED, error=str(error))

    @classmethod
    def fatal(cls, step: str, error: Any) -> "StepOutcome":
        return cls(step=step, status=OutcomeStatus.FATAL, error=str(error))

    @property
    def succeeded(self) -> bool:
        return self.status in (OutcomeStatus.OK, OutcomeStatus.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {"step": self.step, "status": self.status.value, "error": self.error}


@dataclass
class OutcomeReport:
    """Aggregated outcomes of a multi-step best-effort operation"""
    operation: str
    outcomes: List[StepOutcome] = field(default_factory=list)

    def add(self, outcome: StepOutcome) -> StepOutcome:
        self.outcomes.append(outcome)
        return outcome

    def extend(self, other: "OutcomeReport") -> None:
        self.outcomes.extend(other.outcomes)

    @property
    def fatal(self) -> bool:
        return any(o.status == OutcomeStatus.FATAL for o in self.outcomes)

    @property
    def degraded(self) -> bool:
        return any(o.status == OutcomeStatus.DEGRADED for o in self.outcomes)

    @property
    def succeeded(self) -> bool:
        return all(o.succeeded for o in self.outcomes)

    @property
    def failures(self) -> List[StepOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "success": self.succeeded,
            "degraded": self.degraded,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }

    def log(self) -> None:
        """Emit one summary line; failures are listed individually"""
        failures = self.failures
        if not failures:
            logger.info(f"[{self.operation}] completed ({len(self.outcomes)} steps)")
            return
        level = "error" if self.fatal else "warning"
        summary = "; ".join(f"{o.step}: {o.error}" for o in failures)
        getattr(logger, level)(
            f"[{self.operation}] {len(failures)}/{len(self.outcomes)} steps failed: {summary}",
            extra={"event_type": "outcome_report", "report": self.to_dict()}
        )
