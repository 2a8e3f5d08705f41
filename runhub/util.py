"""Shared utilities for runhub."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone


def new_run_id() -> str:
    """Return a new unique run id (UUID4, canonical form)."""
    return str(uuid.uuid4())


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat()


def kebab_case(name: str) -> str:
    """stopOnFailure -> stop-on-failure"""
    return re.sub(r"(?<!^)(?=[A-Z])", "-", name).lower()


def split_test_id(test_id: str) -> tuple[str, str]:
    """Split ``Suite::test`` into (suite, test). Ids without ``::`` are suites."""
    suite, sep, name = test_id.partition("::")
    if not sep:
        return test_id, ""
    return suite, name
