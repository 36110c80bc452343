"""
Root pytest configuration for smaug.

Provides the global ``--fail-on-skip`` option so CI notices tests that were
skipped because their environment was incomplete.
"""

from __future__ import annotations

import pytest
from pytest import StashKey

_fail_on_skip_key: StashKey[bool] = StashKey[bool]()


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--fail-on-skip",
        action="store_true",
        default=False,
        help="Treat skipped tests as failures",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.stash[_fail_on_skip_key] = config.getoption("--fail-on-skip", default=False)


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]):
    """Report skipped tests as failed when --fail-on-skip is set."""
    outcome = yield
    report = outcome.get_result()

    if not item.config.stash.get(_fail_on_skip_key, False) or not report.skipped:
        return

    longrepr = report.longrepr
    if isinstance(longrepr, tuple) and len(longrepr) >= 3:
        reason = longrepr[2]
    else:
        reason = str(longrepr) if longrepr else "unknown reason"
    report.outcome = "failed"
    report.longrepr = f"Skipped with --fail-on-skip: {reason}"
