import pytest

from models.grid import Grid, User
from runtime.contribution_tracker import ContributionPolicy
from runtime.grid_state_store import GridStateStore
from runtime.persistence.memory_store import InMemoryGridBackend
from runtime.scheduler import VirtualScheduler


@pytest.fixture
def backend():
    return InMemoryGridBackend()


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def store(backend, scheduler):
    return GridStateStore(backend, scheduler, generation_id="grid_test")


@pytest.fixture
def policy():
    return ContributionPolicy(supersede=True, enforce_one_slot=True)


@pytest.fixture
def alice():
    return User(user_id="u-a", email="a@x")


@pytest.fixture
def bob():
    return User(user_id="u-b", email="b@x")


def make_grid(generation_id="grid_test", videos=None, takes=None):
    grid = Grid.empty(generation_id)
    for i, ref in enumerate(videos or []):
        grid.slots[i].video = ref
    for i, triad in enumerate(takes or []):
        if triad:
            for n, ref in enumerate(triad, start=1):
                grid.slots[i].takes.set(n, ref)
    return grid
