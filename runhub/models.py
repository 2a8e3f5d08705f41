"""Data models for runs, suites and tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

OptionValue = Union[bool, str]


class RunStatus(str, Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    FINISHED = "finished"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.FINISHED, RunStatus.STOPPED)


class TestStatus(str, Enum):
    __test__ = False

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"
    SKIPPED = "skipped"
    INCOMPLETE = "incomplete"
    RISKY = "risky"


@dataclass(frozen=True)
class RunContext:
    """Immutable description of what one run executes."""

    run_id: str
    filters: tuple[str, ...] = ()
    suites: tuple[str, ...] = ()
    groups: tuple[str, ...] = ()
    options: Mapping[str, OptionValue] = field(
        default_factory=lambda: MappingProxyType({})
    )
    context_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "filters", tuple(self.filters))
        object.__setattr__(self, "suites", tuple(self.suites))
        object.__setattr__(self, "groups", tuple(self.groups))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "filters": list(self.filters),
            "suites": list(self.suites),
            "groups": list(self.groups),
            "options": dict(self.options),
            "contextId": self.context_id,
        }


@dataclass
class TestState:
    __test__ = False

    id: str
    name: str
    class_name: str
    status: TestStatus = TestStatus.RUNNING
    duration: Optional[int] = None
    assertions: int = 0
    message: Optional[str] = None
    trace: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    deprecations: list[str] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)

    @property
    def has_messages(self) -> bool:
        return bool(self.warnings or self.deprecations or self.notices)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "class": self.class_name,
            "status": self.status.value,
            "duration": self.duration,
            "assertions": self.assertions,
            "message": self.message,
            "trace": self.trace,
            "warnings": list(self.warnings),
            "deprecations": list(self.deprecations),
            "notices": list(self.notices),
        }


COUNTER_NAMES = (
    "passed", "failed", "errored", "skipped", "incomplete", "risky",
    "warning", "deprecation", "notice",
)


@dataclass
class SuiteState:
    name: str
    declared_count: int = 0
    tests: dict[str, TestState] = field(default_factory=dict)
    counters: dict[str, int] = field(
        default_factory=lambda: dict.fromkeys(COUNTER_NAMES, 0)
    )
    has_issues: bool = False

    def bump(self, counter: str) -> None:
        self.counters[counter] += 1

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "count": self.declared_count,
            "tests": {tid: t.to_dict() for tid, t in self.tests.items()},
            **self.counters,
            "hasIssues": self.has_issues,
        }


def summary_count(summary: Optional[Mapping[str, Any]], key: str) -> int:
    """Integer counter from a runner summary; anything else counts as 0."""
    value = (summary or {}).get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


@dataclass
class RunRecord:
    context: RunContext
    status: RunStatus = RunStatus.RUNNING
    suites: dict[str, SuiteState] = field(default_factory=dict)
    summary: Optional[dict[str, Any]] = None
    failed_test_ids: set[str] = field(default_factory=set)
    sum_of_durations: int = 0
    execution_ended: bool = False
    exit_code: Optional[int] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def run_id(self) -> str:
        return self.context.run_id

    def find_test(self, test_id: str) -> Optional[TestState]:
        for suite in self.suites.values():
            test = suite.tests.get(test_id)
            if test is not None:
                return test
        return None

    def result(self) -> str:
        """Overall outcome: ``passed`` or ``failed`` (``stopped`` if cancelled)."""
        if self.status == RunStatus.STOPPED:
            return "stopped"
        if self.failed_test_ids:
            return "failed"
        if summary_count(self.summary, "numberOfErrors") or summary_count(
            self.summary, "numberOfFailures"
        ):
            return "failed"
        if self.exit_code not in (None, 0):
            return "failed"
        return "passed"

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "contextId": self.context.context_id,
            "context": self.context.to_dict(),
            "status": self.status.value,
            "suites": {name: s.to_dict() for name, s in self.suites.items()},
            "summary": self.summary,
            "failedTestIds": sorted(self.failed_test_ids),
            "sumOfDurations": self.sum_of_durations,
            "executionEnded": self.execution_ended,
            "exitCode": self.exit_code,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }
