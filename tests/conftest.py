from collections.abc import Callable
import time

import pytest


@pytest.fixture
def log() -> list[str]:
    """Shared call log the fakes append to, for checking the order of effects."""
    return []


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait_for
