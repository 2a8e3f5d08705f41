"""Run registry – one mutable RunRecord per run id, folded from events.

The reducer is a straight fold: applying the same event twice counts twice.
The runner's event stream does not repeat events, so there is no
deduplication here.
"""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from typing import Optional

from .errors import UnknownRun
from .events import COMPLETION_KINDS, ISSUE_KINDS, Event, EventKind
from .models import RunContext, RunRecord, RunStatus, SuiteState, TestState, TestStatus
from .util import iso, now_utc, split_test_id

log = logging.getLogger(__name__)

_ISSUE_TARGETS = {
    EventKind.TEST_WARNING: ("warnings", "warning", "Some warning triggered"),
    EventKind.TEST_DEPRECATION: ("deprecations", "deprecation", "Some deprecation triggered"),
    EventKind.TEST_NOTICE: ("notices", "notice", "Some notice triggered"),
}

_COMPLETION_STATUS = {
    EventKind.TEST_PASSED: TestStatus.PASSED,
    EventKind.TEST_FAILED: TestStatus.FAILED,
    EventKind.TEST_ERRORED: TestStatus.ERRORED,
    EventKind.TEST_SKIPPED: TestStatus.SKIPPED,
    EventKind.TEST_INCOMPLETE: TestStatus.INCOMPLETE,
    EventKind.TEST_RISKY: TestStatus.RISKY,
}


class RunRegistry:
    def __init__(self, history_size: int = 20):
        self._live: "OrderedDict[str, RunRecord]" = OrderedDict()
        self._history: deque[RunRecord] = deque(maxlen=max(history_size, 1))
        self._latest: Optional[RunRecord] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, context: RunContext) -> RunRecord:
        if context.run_id in self._live:
            raise ValueError(f"Run {context.run_id} already registered")
        record = RunRecord(context=context, started_at=iso(now_utc()))
        self._live[context.run_id] = record
        self._latest = record
        return record

    def mark_stopping(self, run_id: str) -> RunRecord:
        record = self._require(run_id)
        if record.status == RunStatus.RUNNING:
            record.status = RunStatus.STOPPING
        return record

    def finish(self, run_id: str, status: RunStatus, exit_code: Optional[int]) -> RunRecord:
        """Move a live record to its terminal status once the process exited."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        record = self._require(run_id)
        record.status = status
        record.exit_code = exit_code
        record.finished_at = iso(now_utc())
        return record

    def reap(self, run_id: str) -> RunRecord:
        """Drop a finished run from the live set and keep it in history."""
        record = self._live.pop(run_id, None)
        if record is None:
            raise UnknownRun(run_id)
        self._history.append(record)
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, run_id: str) -> Optional[RunRecord]:
        record = self._live.get(run_id)
        if record is not None:
            return record
        for old in reversed(self._history):
            if old.run_id == run_id:
                return old
        return None

    def failed_test_ids(self, run_id: str) -> set[str]:
        record = self.get(run_id)
        if record is None:
            raise UnknownRun(run_id)
        return set(record.failed_test_ids)

    def latest_failed_test_ids(self) -> set[str]:
        """Failures of the most recently started run, live or reaped."""
        if self._latest is None:
            return set()
        return set(self._latest.failed_test_ids)

    def live(self) -> list[RunRecord]:
        return list(self._live.values())

    def history(self) -> list[RunRecord]:
        return list(self._history)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._live

    # ------------------------------------------------------------------
    # Reducer
    # ------------------------------------------------------------------

    def apply(self, run_id: str, event: Event) -> None:
        record = self._require(run_id)
        kind = event.kind

        if kind is EventKind.SUITE_STARTED:
            self._suite_started(record, event)
        elif kind is EventKind.TEST_PREPARED:
            self._test_prepared(record, event)
        elif kind in ISSUE_KINDS:
            self._test_issue(record, event)
        elif kind in COMPLETION_KINDS:
            self._test_completed(record, event)
        elif kind is EventKind.TEST_FINISHED:
            self._test_finished(record, event)
        elif kind is EventKind.EXECUTION_ENDED:
            self._execution_ended(record, event)
        else:
            log.debug("[%s] ignoring unrecognized event %r", run_id, event.name)

    def _require(self, run_id: str) -> RunRecord:
        record = self._live.get(run_id)
        if record is None:
            raise UnknownRun(run_id)
        return record

    @staticmethod
    def _suite(record: RunRecord, name: str) -> SuiteState:
        suite = record.suites.get(name)
        if suite is None:
            suite = SuiteState(name=name)
            record.suites[name] = suite
        return suite

    def _suite_started(self, record: RunRecord, event: Event) -> None:
        name = event.data.get("name")
        if not isinstance(name, str) or not name:
            log.warning("[%s] suite.started without a name", record.run_id)
            return
        suite = self._suite(record, name)
        count = event.data.get("count")
        if isinstance(count, int) and count >= 0:
            suite.declared_count = count

    def _test_prepared(self, record: RunRecord, event: Event) -> None:
        test_id = event.test_id
        if test_id is None:
            log.warning("[%s] test.prepared without a test id", record.run_id)
            return
        suite_name, test_name = split_test_id(test_id)
        display = event.data.get("testName")
        name = display if isinstance(display, str) and display else test_name
        suite = self._suite(record, suite_name)
        existing = suite.tests.get(test_id)
        if existing is not None:
            # repeated preparation (e.g. --repeat) keeps the outcome so far
            existing.name = name
            return
        suite.tests[test_id] = TestState(id=test_id, name=name, class_name=suite_name)

    def _locate(self, record: RunRecord, event: Event) -> tuple[Optional[SuiteState], Optional[TestState]]:
        test_id = event.test_id
        if test_id is None:
            return None, None
        suite = record.suites.get(split_test_id(test_id)[0])
        if suite is None or test_id not in suite.tests:
            return None, None
        return suite, suite.tests[test_id]

    def _test_issue(self, record: RunRecord, event: Event) -> None:
        suite, test = self._locate(record, event)
        if test is None:
            # out-of-order delivery; nothing to attach the message to
            log.debug("[%s] %s for unknown test %r", record.run_id, event.name, event.test_id)
            return
        attr, counter, default = _ISSUE_TARGETS[event.kind]
        getattr(test, attr).append(event.data.get("message") or default)
        suite.bump(counter)
        suite.has_issues = True

    def _test_completed(self, record: RunRecord, event: Event) -> None:
        suite, test = self._locate(record, event)
        if test is None:
            log.debug("[%s] %s for unknown test %r", record.run_id, event.name, event.test_id)
            return
        status = _COMPLETION_STATUS[event.kind]
        test.status = status
        test.message = event.data.get("message") or None
        test.trace = event.data.get("trace") or None
        suite.bump(status.value)

        if status in (TestStatus.FAILED, TestStatus.ERRORED):
            record.failed_test_ids.add(test.id)
        elif status == TestStatus.PASSED:
            record.failed_test_ids.discard(test.id)

        if status != TestStatus.PASSED or test.has_messages:
            suite.has_issues = True

    def _test_finished(self, record: RunRecord, event: Event) -> None:
        _, test = self._locate(record, event)
        if test is None:
            log.debug("[%s] test.finished for unknown test %r", record.run_id, event.test_id)
            return
        duration = event.data.get("duration")
        if isinstance(duration, (int, float)):
            test.duration = int(duration)
            record.sum_of_durations += test.duration
        assertions = event.data.get("assertions")
        if isinstance(assertions, int):
            test.assertions = assertions

    def _execution_ended(self, record: RunRecord, event: Event) -> None:
        summary = event.data.get("summary")
        record.summary = dict(summary) if isinstance(summary, dict) else dict(event.data)
        record.execution_ended = True
