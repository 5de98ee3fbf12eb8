from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from fakes import make_parley
from litestar.testing import AsyncTestClient
import pytest

from parley.api.app import create_app
from parley.core.engine import Parley

if TYPE_CHECKING:
    from litestar import Litestar


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="function")
def parley() -> Parley:
    return make_parley()


@pytest.fixture(scope="function")
async def client(parley: Parley) -> AsyncIterator[AsyncTestClient[Litestar]]:
    app = create_app(parley)
    app.debug = True
    async with AsyncTestClient(app=app) as client:
        yield client
