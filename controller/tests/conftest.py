import pytest

from scankiosk.config import Settings

from tests.helpers import ManagerHarness, make_settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def harness(settings) -> ManagerHarness:
    return ManagerHarness(settings)
