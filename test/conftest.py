import pytest
from _helper import Marketplace


@pytest.fixture()
def market():
    return Marketplace()
