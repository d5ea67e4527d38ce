"""
Pytest configuration and fixtures for upload optimizer tests.
"""

import pytest
from fastapi.testclient import TestClient

from helpers import UPSTREAM_URL, FakeUpstream
from upload_optimizer.configuration import Settings
from upload_optimizer.gate import ConcurrencyGate
from upload_optimizer.main import create_app
from upload_optimizer.tasks import TaskProcessor


@pytest.fixture
def config_dir(tmp_path):
    path = tmp_path / "config"
    path.mkdir()
    return path


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def gate():
    return ConcurrencyGate(4)


@pytest.fixture
def make_processor(config_dir, work_dir, gate):
    def _make(tasks, gate_override=None):
        return TaskProcessor(tasks, gate_override or gate, working_dir=config_dir, temp_dir=work_dir)

    return _make


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def make_client(config_dir, work_dir, fake_upstream):
    """Build a TestClient around an app with the given tasks and settings overrides."""
    clients = []

    def _make(tasks, **overrides):
        values = {
            "upstream": UPSTREAM_URL,
            "tasks_file": config_dir / "tasks.yaml",
            "temp_dir": work_dir,
            "delivery_timeout": 5.0,
            "ack_timeout": 5.0,
            "wait_timeout": 5.0,
        }
        values.update(overrides)
        app = create_app(Settings(**values), tasks, upstream=fake_upstream.client())
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
