from unittest.mock import MagicMock

import pytest

from hypersearch.records import InMemoryRecordStore
from hypersearch.results import ResultsDB


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def results():
    return ResultsDB()


@pytest.fixture
def canceller():
    return MagicMock()
