# conftest.py
from __future__ import annotations

import os
import uuid

import pytest
import pytest_asyncio

from tasktree.core.log import (
    bind_context,
    configure_from_env,
    enable_stdout_logging,
    get_logger,
    log_context,
)
from tasktree.core.time import ManualClock
from tests.helpers import install_inmemory_db, install_inmemory_kafka

WORKERS = ["parser", "indexer", "reporter"]


def pytest_configure(config):
    config.addinivalue_line("markers", "cfg(**overrides): per-test CoordinatorConfig overrides")
    config.addinivalue_line("markers", "interleave: in-memory DB yields to the loop before every operation")


def pytest_addoption(parser):
    parser.addoption(
        "--log-json",
        action="store_true",
        default=False,
        help="Emit tasktree logs in JSON format during tests",
    )


@pytest.fixture(scope="session", autouse=True)
def _configure_tasktree_logging(request):
    configure_from_env()
    prefer_json = request.config.getoption("--log-json")
    if os.getenv("TASKTREE_LOG_STDOUT", "").lower() not in ("1", "true", "yes", "on"):
        enable_stdout_logging(level="DEBUG", json_output=prefer_json, pretty=not prefer_json)
    bind_context(role="pytest")


@pytest.fixture(scope="session")
def session_run_id():
    return uuid.uuid4().hex[:8]


@pytest.fixture(autouse=True)
def _test_log_context(request, session_run_id):
    log = get_logger("test")
    with log_context(pytest_nodeid=request.node.nodeid, test=request.node.name, test_run=session_run_id):
        log.debug("pytest.test.start", event="pytest.test.start")
        yield


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()
    if rep.when == "call":
        log = get_logger("test")
        with log_context(pytest_nodeid=item.nodeid, test=item.name):
            log.debug(
                "pytest.test.finish",
                event="pytest.test.finish",
                outcome=rep.outcome,
                duration=getattr(rep, "duration", None),
            )


@pytest.fixture
def tlog():
    return get_logger("test")


@pytest.fixture
def kafka(monkeypatch):
    """In-memory Kafka in place of aiokafka; yields the broker."""
    from tests.helpers import BROKER

    install_inmemory_kafka(monkeypatch)
    yield BROKER
    BROKER.reset()


@pytest.fixture
def inmemory_db(request):
    """Single injection point for DB."""
    return install_inmemory_db(interleave=bool(request.node.get_closest_marker("interleave")))


@pytest.fixture
def clock():
    return ManualClock(start_ms=1_700_000_000_000)


@pytest.fixture
def coord_cfg(request, monkeypatch):
    from tasktree.core.config import CoordinatorConfig

    for name in ("KAFKA_BOOTSTRAP_SERVERS", "TASKTREE_WORKERS", "TASKTREE_FAN_IN_FIELD"):
        monkeypatch.delenv(name, raising=False)
    m = request.node.get_closest_marker("cfg")
    overrides = {"workers": list(WORKERS), **(m.kwargs if m else {})}
    return CoordinatorConfig.load(overrides=overrides)


@pytest_asyncio.fixture
async def coord(kafka, inmemory_db, coord_cfg, clock):
    from tasktree.coordinator.coordinator import Coordinator

    c = Coordinator(db=inmemory_db, cfg=coord_cfg, clock=clock)
    await c.start()
    try:
        yield c
    finally:
        await c.stop()
