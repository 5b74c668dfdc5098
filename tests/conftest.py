import logging

import pytest

from fakes import FakePageDriver, QueueServer, fast_settings, make_document
from scan_agent.services.credential_store import CredentialStore
from scan_agent.services.status_store import AgentStatusStore


@pytest.fixture(autouse=True)
def _quiet_transitions():
    logging.getLogger("transitions").setLevel(logging.WARNING)


@pytest.fixture
def server():
    return QueueServer([make_document()])


@pytest.fixture
def queue(server):
    return server.client()


@pytest.fixture
def settings():
    return fast_settings()


@pytest.fixture
def credentials():
    store = CredentialStore(default_domain=".host.test")
    store.set_password("instructor@example.edu", "s3cret")
    return store


@pytest.fixture
def status():
    return AgentStatusStore()


@pytest.fixture
def driver():
    return FakePageDriver()
