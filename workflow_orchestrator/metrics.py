"""Per-phase timing and counter telemetry.

PhaseMetrics     - frozen snapshot of one phase run's counters + duration.
MetricsCollector - async context manager; read .result / .to_dict() after exit.

Usage::

    async with MetricsCollector("configuration") as m:
        result = await runner.run(session)
        m.operation_count = len(result.operations)
    event_payload = m.to_dict()

wrap_phase() owns the collector for every runner call and attaches the
snapshot to the PhaseResult and the phase event log.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any


# ---------------------------------------------------------------------------
# PhaseMetrics dataclass
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class PhaseMetrics:
    """Timing and counter snapshot for one phase run.

    Fields
    ------
    phase:            "discovery", "configuration", "building", "validation"
                      or "documentation".
    start_ts:         Unix timestamp at run start (time.time()).
    end_ts:           Unix timestamp at run end.
    duration_ms:      (end_ts - start_ts) * 1000.
    input_tokens:     Model prompt tokens consumed (0 when no model call).
    output_tokens:    Model completion tokens produced.
    operation_count:  Operations the runner emitted.
    repair_attempts:  Validation repair rounds (0 for every other phase).
    """

    phase: str
    start_ts: float
    end_ts: float
    duration_ms: float
    input_tokens: int = 0
    output_tokens: int = 0
    operation_count: int = 0
    repair_attempts: int = 0


# ---------------------------------------------------------------------------
# MetricsCollector async context manager
# ---------------------------------------------------------------------------


class MetricsCollector:
    """Async context manager that records per-phase timing and counters.

    The collector does not write anywhere by itself; the caller decides where
    ``to_dict()`` goes (PhaseResult.metrics, the event log payload).
    """

    def __init__(self, phase: str) -> None:
        self.phase = phase
        self.input_tokens: int = 0
        self.output_tokens: int = 0
        self.operation_count: int = 0
        self.repair_attempts: int = 0
        self._start_ts: float = 0.0
        self._result: PhaseMetrics | None = None

    async def __aenter__(self) -> "MetricsCollector":
        self._start_ts = time.time()
        return self

    async def __aexit__(self, *_args: object) -> None:
        end_ts = time.time()
        self._result = PhaseMetrics(
            phase=self.phase,
            start_ts=self._start_ts,
            end_ts=end_ts,
            duration_ms=(end_ts - self._start_ts) * 1000,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            operation_count=self.operation_count,
            repair_attempts=self.repair_attempts,
        )

    @property
    def result(self) -> PhaseMetrics | None:
        """Finalized PhaseMetrics after the context manager exits, else None."""
        return self._result

    @property
    def duration_ms(self) -> int:
        return int(self._result.duration_ms) if self._result is not None else 0

    def to_dict(self) -> dict[str, Any]:
        """Finalized PhaseMetrics as a JSON-serialisable dict ({} before exit)."""
        return dataclasses.asdict(self._result) if self._result is not None else {}
