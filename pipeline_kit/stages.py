"""
stages
------

단계(step)들을 순서대로 실행하는 fail-fast 러너.

- fatal 단계가 실패하면 남은 단계는 모두 SKIPPED 로 기록하고 run 을 실패 처리한다.
- fatal=False 단계(캐시 등)의 실패는 DEGRADED 로 기록하고 다음 단계로 진행한다.
- run 전체 제한 시간을 넘기면 해당 시점의 단계가 실패한 것으로 본다.
- 자동 재시도는 하지 않는다.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from .logging_utils import get_logger, redact
from .subprocess_utils import CommandTimeout


logger = get_logger(__name__)


class StepStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    DEGRADED = "degraded"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Step:
    name: str
    action: Callable[[], object]
    # 오류 분류: config | build | test | infra | deploy
    kind: str = "infra"
    fatal: bool = True


@dataclass
class StepOutcome:
    name: str
    status: StepStatus
    kind: str = "infra"
    detail: str = ""
    duration: float = 0.0


@dataclass
class RunReport:
    pipeline: str
    outcomes: List[StepOutcome] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    # 트리거 조건이 맞지 않아 아무 단계도 실행하지 않은 경우 False
    triggered: bool = True

    @property
    def failed_step(self) -> Optional[StepOutcome]:
        for outcome in self.outcomes:
            if outcome.status is StepStatus.FAILED:
                return outcome
        return None

    @property
    def succeeded(self) -> bool:
        return self.failed_step is None

    def status_of(self, name: str) -> Optional[StepStatus]:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome.status
        return None

    def summary(self) -> str:
        lines: List[str] = []
        lines.append(f"# {self.pipeline} summary")
        failed = self.failed_step
        if not self.triggered:
            lines.append("- result: NOT TRIGGERED")
        elif failed is None:
            lines.append("- result: SUCCESS")
        else:
            lines.append(f"- result: FAILED (step={failed.name}, kind={failed.kind})")
        lines.append("")

        lines.append("## Steps")
        if self.outcomes:
            for o in self.outcomes:
                timing = f" ({o.duration:0.1f}s)" if o.status is not StepStatus.SKIPPED else ""
                lines.append(f"- {o.name}: {o.status.value.upper()}{timing}")
        else:
            lines.append("- (none)")

        degraded = [o for o in self.outcomes if o.status is StepStatus.DEGRADED]
        if degraded:
            lines.append("")
            lines.append("## Degraded steps")
            for o in degraded:
                lines.append(f"- {o.name}: {o.detail}")

        if failed is not None:
            lines.append("")
            lines.append("## Failure")
            lines.append(failed.detail or "(no detail)")

        if self.notes:
            lines.append("")
            lines.append("## Notes")
            for note in self.notes:
                lines.append(f"- {note}")

        return "\n".join(lines)


class RunDeadline:
    """run 전체 wall-clock 제한 시간."""

    def __init__(self, timeout: Optional[float], clock: Callable[[], float] = time.monotonic) -> None:
        self._timeout = timeout
        self._clock = clock
        self._started = clock()

    @property
    def timeout(self) -> Optional[float]:
        return self._timeout

    def remaining(self) -> Optional[float]:
        if self._timeout is None:
            return None
        return max(self._timeout - (self._clock() - self._started), 0.0)

    def check(self) -> None:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise CommandTimeout(
                f"run 제한 시간({self._timeout}초)을 초과했습니다.",
                cmd="(run)",
            )

    def command_timeout(self, cap: Optional[float] = None) -> Optional[float]:
        """남은 run 시간과 명령별 상한 중 작은 값."""
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return cap
        if cap is None:
            return remaining
        return min(remaining, cap)


class StageRunner:
    def __init__(self, pipeline: str, deadline: Optional[RunDeadline] = None) -> None:
        self.pipeline = pipeline
        self.deadline = deadline or RunDeadline(None)

    def run(self, steps: Sequence[Step], report: Optional[RunReport] = None) -> RunReport:
        report = report or RunReport(pipeline=self.pipeline)
        halted = False

        for step in steps:
            if halted:
                report.outcomes.append(StepOutcome(step.name, StepStatus.SKIPPED, kind=step.kind))
                continue

            logger.info("[%s] 단계 시작: %s", self.pipeline, step.name)
            started = time.monotonic()
            try:
                self.deadline.check()
                step.action()
            except Exception as e:  # noqa: BLE001
                duration = time.monotonic() - started
                detail = redact(str(e))
                if step.fatal:
                    logger.error("[%s] 단계 실패: %s\n%s", self.pipeline, step.name, detail)
                    report.outcomes.append(
                        StepOutcome(step.name, StepStatus.FAILED, kind=step.kind, detail=detail, duration=duration)
                    )
                    halted = True
                else:
                    logger.warning("[%s] 단계 실패(계속 진행): %s: %s", self.pipeline, step.name, detail)
                    report.outcomes.append(
                        StepOutcome(step.name, StepStatus.DEGRADED, kind=step.kind, detail=detail, duration=duration)
                    )
                continue

            duration = time.monotonic() - started
            logger.info("[%s] 단계 완료: %s (%0.1fs)", self.pipeline, step.name, duration)
            report.outcomes.append(StepOutcome(step.name, StepStatus.OK, kind=step.kind, duration=duration))

        return report
