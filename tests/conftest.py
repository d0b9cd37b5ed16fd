from __future__ import annotations

from typing import Callable

import httpx
import pytest

from tixr_etl.adapters.tixr import RetryPolicy, TixrClient
from tixr_etl.storage.sqlite_store import SqliteStore

FIXED_NOW = 1_700_000_000.0


@pytest.fixture
def store(tmp_path):
    s = SqliteStore(tmp_path / "tixr.db", batch_size=2)
    yield s
    s.close()


@pytest.fixture
def make_client() -> Callable[..., TixrClient]:
    def factory(handler, **kwargs) -> TixrClient:
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay=0, max_delay=0))
        return TixrClient(
            cpk="cpk-test",
            secret_key="secret",
            group_id="980",
            base_url="https://tixr.test",
            transport=httpx.MockTransport(handler),
            clock=lambda: FIXED_NOW,
            **kwargs,
        )
    return factory
