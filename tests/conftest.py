"""
Pytest configuration shared by all agentdock test suites.

Registers markers, the --run-e2e option, and helpers for waiting on
asynchronous runner events.
"""
import asyncio
import sys
import time
from pathlib import Path
from typing import Callable, Optional

import pytest

# Add project root to path before importing project modules
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from agentdock.core.events import RunnerEvent  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "unit: marks tests as unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (spawn processes or use a database)"
    )
    config.addinivalue_line(
        "markers",
        "e2e: marks tests as end-to-end tests requiring a real agent binary (skipped by default)"
    )
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow"
    )


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command line options."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests that require a real agent binary",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Skip e2e tests unless --run-e2e is passed."""
    if config.getoption("--run-e2e", default=False):
        return

    skip_e2e = pytest.mark.skip(reason="E2E test skipped by default. Use --run-e2e to run.")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 3.0,
    interval: float = 0.005,
) -> None:
    """Poll predicate until it holds; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


class EventRecorder:
    """Runner event sink that keeps every event for assertions."""

    def __init__(self) -> None:
        self.events: list[RunnerEvent] = []

    def __call__(self, event: RunnerEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [event.type.value for event in self.events]

    def of_type(self, event_type: str) -> list[RunnerEvent]:
        return [event for event in self.events if event.type == event_type]

    def first(self, event_type: str) -> Optional[RunnerEvent]:
        matches = self.of_type(event_type)
        return matches[0] if matches else None

    async def wait_for(self, event_type: str, count: int = 1, timeout: float = 3.0) -> RunnerEvent:
        await wait_until(lambda: len(self.of_type(event_type)) >= count, timeout=timeout)
        return self.of_type(event_type)[count - 1]


class HostEventRecorder:
    """Host sink receiving (session_id, event_type, payload)."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    def __call__(self, session_id: str, event_type: str, payload: dict) -> None:
        self.events.append((session_id, event_type, payload))

    def types(self, session_id: str) -> list[str]:
        return [t for sid, t, _ in self.events if sid == session_id]

    async def wait_for(self, session_id: str, event_type: str, timeout: float = 3.0) -> dict:
        def found() -> bool:
            return event_type in self.types(session_id)

        await wait_until(found, timeout=timeout)
        return next(p for sid, t, p in self.events if sid == session_id and t == event_type)


@pytest.fixture
def events() -> EventRecorder:
    """Runner event recorder."""
    return EventRecorder()


@pytest.fixture
def host_events() -> HostEventRecorder:
    """Host sink recorder for RunnerManager tests."""
    return HostEventRecorder()


@pytest.fixture
def until() -> Callable:
    """The wait_until helper as a fixture."""
    return wait_until
