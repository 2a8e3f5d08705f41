"""Run request router – validates run/stop requests and delegates them.

``start_run`` returns as soon as the process is spawned; the run itself is
followed by the supervisor.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cancel import CancellationController, StopResult
from .errors import InvalidRequest, NothingToRun, RunLimitExceeded
from .models import RunContext
from .registry import RunRegistry
from .supervisor import RunSupervisor
from .util import new_run_id

log = logging.getLogger(__name__)


class RunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    filters: list[str] = Field(default_factory=list)
    suites: list[str] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)
    options: dict[str, Union[bool, str]] = Field(default_factory=dict)
    context_id: Optional[str] = Field(default=None, alias="contextId")


def parse_run_request(payload: Union[RunRequest, Mapping[str, Any], None]) -> RunRequest:
    if isinstance(payload, RunRequest):
        return payload
    if payload is None:
        return RunRequest()
    if not isinstance(payload, Mapping):
        raise InvalidRequest(f"Request body must be a JSON object, got {type(payload).__name__}")
    try:
        return RunRequest.model_validate(dict(payload))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise InvalidRequest(f"Invalid run request: {problems}") from exc


class RunRouter:
    def __init__(
        self,
        supervisor: RunSupervisor,
        canceller: CancellationController,
        registry: RunRegistry,
        max_concurrent_runs: int = 0,
    ):
        self.supervisor = supervisor
        self.canceller = canceller
        self.registry = registry
        self.max_concurrent_runs = max_concurrent_runs
        self.last_request: Optional[RunRequest] = None

    async def start_run(self, payload: Union[RunRequest, Mapping[str, Any], None]) -> str:
        request = parse_run_request(payload)
        run_id = await self._spawn(request)
        self.last_request = request
        return run_id

    async def run_failed(self, payload: Union[RunRequest, Mapping[str, Any], None] = None) -> str:
        """Re-run the failures of the most recent run."""
        failed = self.registry.latest_failed_test_ids()
        if not failed:
            raise NothingToRun()
        base = parse_run_request(payload)
        request = base.model_copy(update={
            "filters": sorted(failed),
            "context_id": base.context_id or "failed",
        })
        return await self._spawn(request)

    async def rerun_last(self, context_id: str = "watch") -> str:
        """Repeat the last explicit run request (everything if there was none)."""
        base = self.last_request or RunRequest()
        request = base.model_copy(update={"context_id": context_id})
        return await self._spawn(request)

    def stop(self, run_id: Optional[str] = None) -> StopResult:
        if run_id is None:
            return self.canceller.stop_all()
        return self.canceller.stop_one(run_id)

    async def _spawn(self, request: RunRequest) -> str:
        if self.max_concurrent_runs and self.supervisor.running_count >= self.max_concurrent_runs:
            raise RunLimitExceeded(self.max_concurrent_runs)
        context = RunContext(
            run_id=new_run_id(),
            filters=request.filters,
            suites=request.suites,
            groups=request.groups,
            options=request.options,
            context_id=request.context_id,
        )
        log.info(
            "Starting test run #%s (context %s) with filters: %s",
            context.run_id, context.context_id, ", ".join(context.filters) or "<all>",
        )
        await self.supervisor.spawn(context)
        return context.run_id
