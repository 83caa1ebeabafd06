"""Shared fixtures: an in-memory API server, status machine and engine."""

import pytest

from tests.factories import FIXED_TIME, NAME, NAMESPACE, cluster_body
from vmcluster_operator.config import settings
from vmcluster_operator.convergence import ConvergenceEngine
from vmcluster_operator.services.memory_store import InMemoryResourceStore
from vmcluster_operator.status import StatusMachine


@pytest.fixture
def store():
    return InMemoryResourceStore(settings)


@pytest.fixture
def transitions():
    return []


@pytest.fixture
def machine(transitions):
    return StatusMachine(
        on_transition=lambda key, old, new, reason: transitions.append((key, old, new, reason)),
        clock=lambda: FIXED_TIME,
    )


@pytest.fixture
def engine(store, machine):
    return ConvergenceEngine(store, settings, machine)


@pytest.fixture
def make_cluster(store):
    def factory(spec=None, name=NAME, namespace=NAMESPACE, **metadata):
        return store.create_cluster(cluster_body(name, namespace, spec, **metadata))
    return factory


@pytest.fixture
def mark_ready(store):
    """Report replicas of a workload as ready, as its controller would."""
    def ready(kind, name, replicas, namespace=NAMESPACE):
        return store.set_workload_status(kind, namespace, name, replicas)
    return ready
