import pytest

from tests.fakes import FakeRedis, FakeSendLog, FakeTransport


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_send_log():
    return FakeSendLog()


@pytest.fixture
def fake_transport():
    return FakeTransport()
