from __future__ import annotations

import logging

import pytest

from fakes import FakeRunner
from stager.model import StagingIdentity
from stager.secure import SecureExecutor

INVOKER = "stager"


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("test.stager")
    log.setLevel(logging.DEBUG)
    log.propagate = True
    return log


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def identity() -> StagingIdentity:
    return StagingIdentity(uid=4242, gid=4343)


@pytest.fixture
def executor(runner, logger) -> SecureExecutor:
    return SecureExecutor(runner, logger, invoker=INVOKER)
