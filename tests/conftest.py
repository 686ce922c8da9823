import pytest

from aggregation import AggregationEngine
from factors import EmissionFactorTable, defra_2024_factors
from storage import InMemoryEventStore, InMemoryRegistry


@pytest.fixture
def table():
    return EmissionFactorTable(defra_2024_factors())

@pytest.fixture
def store():
    return InMemoryEventStore()

@pytest.fixture
def engine(store, table):
    return AggregationEngine(store, table)

@pytest.fixture
def registry():
    return InMemoryRegistry()
