"""Command builder – turns a RunContext into the runner's argv.

No shell is involved; every value is a separate argv element.
"""

from __future__ import annotations

import re

from .config import HubConfig
from .models import RunContext
from .util import kebab_case


def filter_pattern(filters: list[str] | tuple[str, ...]) -> str:
    """Join test ids into one ``--filter`` regex matching any of them."""
    return "|".join(re.escape(f) for f in filters)


def option_flag(name: str, value: bool | str) -> str | None:
    flag = name if name.startswith("--") else "--" + kebab_case(name)
    if value is True:
        return flag
    if value is False or value == "":
        return None
    return f"{flag}={value}"


def build_command(config: HubConfig, context: RunContext) -> list[str]:
    argv = [*config.runner_argv, *config.extra_args]

    if context.suites:
        argv += ["--testsuite", ",".join(context.suites)]

    if context.filters:
        argv += ["--filter", filter_pattern(context.filters)]

    if context.groups:
        argv += ["--group", ",".join(context.groups)]

    ignored = set(config.ignored_options)
    for name, value in context.options.items():
        if name in ignored:
            continue
        flag = option_flag(name, value)
        if flag:
            argv.append(flag)

    return argv
