import pytest

from fakes import FakeClock, FakeSurface


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def surface(clock):
    return FakeSurface(clock)
