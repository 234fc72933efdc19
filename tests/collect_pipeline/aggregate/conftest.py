"""Fixtures for the legacy REST/XML dialect."""

import pytest

from collect_pipeline.aggregate.pull import PullFromAggregate
from collect_pipeline.aggregate.server import AggregateServer
from collect_pipeline.storage.metadata import InMemoryMetadataStore

from legacy_stub import BASE_URL, LegacyServerStub


@pytest.fixture
def legacy_server(fake_http):
    return LegacyServerStub(fake_http)


@pytest.fixture
def metadata_store():
    return InMemoryMetadataStore()


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_operation(fake_http, tmp_path, metadata_store, events):
    """Factory for PullFromAggregate wired to the stub server."""

    def factory(page_size: int = 100, max_parallel: int = 4) -> PullFromAggregate:
        return PullFromAggregate(
            fake_http,
            AggregateServer(BASE_URL),
            tmp_path / "storage",
            metadata_store,
            max_parallel=max_parallel,
            page_size=page_size,
            callback=events.append,
        )

    return factory
