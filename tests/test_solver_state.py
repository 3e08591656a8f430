"""
Tests for the persisted solver state store.
"""

import json
from unittest.mock import patch

import pytest

from oif_solver.state.solver_state import AtomicSolverStateStore, SolverStateStore, StateError

NOW = "2025-01-01T00:00:00Z"


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "solver_state" / "solver-state.json"


@pytest.fixture
def store(state_path):
    return SolverStateStore(str(state_path), clock=lambda: NOW)


class TestSolverStateStore:
    def test_initialize_creates_file(self, store, state_path):
        store.initialize({"Base": 100, "Starknet": -50})
        data = json.loads(state_path.read_text())
        assert data == {
            "networks": {
                "Base": {"lastIndexedBlock": 100, "lastUpdated": NOW},
                "Starknet": {"lastIndexedBlock": 0, "lastUpdated": NOW},
            }
        }

    def test_initialize_keeps_existing_file(self, store, state_path):
        store.initialize({"Base": 100})
        store.update_last_indexed_block("Base", 150)
        again = SolverStateStore(str(state_path), clock=lambda: NOW)
        again.initialize({"Base": 1, "Optimism": 1})
        assert again.get_last_indexed_block("Base") == 150
        assert not again.has_network("Optimism")

    def test_update_persists(self, store, state_path):
        store.initialize({"Base": 0})
        store.update_last_indexed_block("Base", 42)
        reloaded = SolverStateStore(str(state_path))
        assert reloaded.get_last_indexed_block("Base") == 42

    def test_missing_network_is_error(self, store):
        store.initialize({"Base": 0})
        with pytest.raises(StateError):
            store.get_last_indexed_block("Optimism")
        with pytest.raises(StateError):
            store.update_last_indexed_block("Optimism", 1)

    def test_seed_network(self, store):
        store.initialize({"Base": 0})
        store.seed_network("Optimism", 77)
        assert store.get_last_indexed_block("Optimism") == 77
        with pytest.raises(StateError):
            store.seed_network("Optimism", 80)
        store.seed_network("Optimism", 80, overwrite=True)
        assert store.get_last_indexed_block("Optimism") == 80

    def test_negative_block_rejected(self, store):
        store.initialize({"Base": 0})
        with pytest.raises(ValueError):
            store.update_last_indexed_block("Base", -1)

    def test_corrupt_file_raises(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json")
        with pytest.raises(StateError):
            SolverStateStore(str(state_path)).get_state()

    def test_malformed_file_raises(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text('{"chains": {}}')
        with pytest.raises(StateError):
            SolverStateStore(str(state_path)).has_network("Base")

    def test_failed_write_leaves_old_file(self, store, state_path):
        store.initialize({"Base": 10})
        before = state_path.read_bytes()
        with patch("oif_solver.state.solver_state.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StateError):
                store.update_last_indexed_block("Base", 11)
        assert state_path.read_bytes() == before
        assert store.get_last_indexed_block("Base") == 10
        assert [p.name for p in state_path.parent.iterdir()] == [state_path.name]

    def test_get_state_is_a_copy(self, store):
        store.initialize({"Base": 5})
        snapshot = store.get_state()
        snapshot["networks"]["Base"]["lastIndexedBlock"] = 999
        assert store.get_last_indexed_block("Base") == 5


class TestAtomicSolverStateStore:
    @pytest.mark.asyncio
    async def test_async_round_trip(self, state_path):
        store = AtomicSolverStateStore(str(state_path), clock=lambda: NOW)
        await store.initialize({"Base": 3})
        await store.update_last_indexed_block("Base", 9)
        assert await store.get_last_indexed_block("Base") == 9
        assert await store.has_network("Base")
        await store.seed_network("Optimism", 1)
        state = await store.get_state()
        assert set(state["networks"]) == {"Base", "Optimism"}
        assert store.path == state_path
        assert store.sync.get_last_indexed_block("Optimism") == 1

    @pytest.mark.asyncio
    async def test_async_missing_network(self, state_path):
        store = AtomicSolverStateStore(str(state_path))
        await store.initialize({})
        with pytest.raises(StateError):
            await store.get_last_indexed_block("Base")
