"""Tests for runner argv construction."""

from __future__ import annotations

import re

from runhub.command import build_command, filter_pattern, option_flag
from runhub.config import HubConfig
from runhub.models import RunContext
from runhub.util import kebab_case, split_test_id


def test_kebab_case():
    assert kebab_case("stopOnFailure") == "stop-on-failure"
    assert kebab_case("colors") == "colors"


def test_split_test_id():
    assert split_test_id("App\\FooTest::testBar") == ("App\\FooTest", "testBar")
    assert split_test_id("App\\FooTest") == ("App\\FooTest", "")


def test_option_flag():
    assert option_flag("stopOnFailure", True) == "--stop-on-failure"
    assert option_flag("stopOnFailure", False) is None
    assert option_flag("colors", "always") == "--colors=always"
    assert option_flag("colors", "") is None
    assert option_flag("--debug", True) == "--debug"


def test_filter_pattern_matches_only_given_ids():
    ids = ["App\\FooTest::testA", "App\\BarTest::test.b"]
    pattern = re.compile(filter_pattern(ids))
    assert pattern.search("App\\FooTest::testA")
    assert pattern.search("App\\BarTest::test.b")
    assert not pattern.search("App\\BarTest::testXb")


def test_build_command_defaults():
    argv = build_command(HubConfig(), RunContext(run_id="r1"))
    assert argv == ["vendor/bin/phpunit"]


def test_build_command_full():
    config = HubConfig(
        runner_argv=["php", "vendor/bin/phpunit"],
        extra_args=["--extension", "Hub\\Extension"],
    )
    context = RunContext(
        run_id="r1",
        filters=["S::T1"],
        suites=["unit", "feature"],
        groups=["slow"],
        options={"stopOnFailure": True, "colors": "never", "displayMode": "individual",
                 "testdox": False},
    )
    assert build_command(config, context) == [
        "php", "vendor/bin/phpunit", "--extension", "Hub\\Extension",
        "--testsuite", "unit,feature",
        "--filter", "S::T1",
        "--group", "slow",
        "--stop-on-failure",
        "--colors=never",
    ]


def test_ignored_options_configurable():
    config = HubConfig(ignored_options=[])
    argv = build_command(config, RunContext(run_id="r1", options={"displayMode": "x"}))
    assert argv[-1] == "--display-mode=x"
