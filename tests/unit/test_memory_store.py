"""Tests for MemoryStore."""

import json

import pytest

from shiplog.errors import StatePersistenceError
from shiplog.memory.store import MemoryStore
from shiplog.models import MemoryEntry, Outcome


def _entry(iteration, outcome=Outcome.SUCCESS):
    return MemoryEntry(
        iteration=iteration,
        timestamp="t",
        item_description="Add login form",
        approach="Form library",
        outcome=outcome,
    )


class TestOpen:
    """Tests for opening and archiving memory documents."""

    def test_new_document_when_none_exists(self, config):
        memory = MemoryStore(config).open("Auth", "docs/sprints/001.json")
        assert memory.initiative == "Auth"
        assert memory.entries == []

    def test_existing_document_for_same_initiative_is_reused(self, config):
        store = MemoryStore(config)
        memory = store.open("Auth", "b")
        store.append(memory, _entry(1))

        reopened = MemoryStore(config).open("Auth", "b")

        assert [e.iteration for e in reopened.entries] == [1]

    def test_initiative_change_archives_previous(self, config):
        store = MemoryStore(config)
        memory = store.open("Auth", "a")
        store.append(memory, _entry(1))

        fresh = store.open("Billing", "b")

        assert fresh.initiative == "Billing"
        archived = list(config.archive_path.glob("memory-initiative-change-*.json"))
        assert len(archived) == 1
        assert json.loads(archived[0].read_text())["initiative"] == "Auth"

    def test_fresh_start_archives_same_initiative(self, config):
        store = MemoryStore(config)
        store.append(store.open("Auth", "a"), _entry(1))

        memory = store.open("Auth", "a", fresh=True)

        assert memory.entries == []
        assert len(list(config.archive_path.glob("memory-fresh-*.json"))) == 1

    def test_corrupt_document_is_archived(self, config):
        store = MemoryStore(config)
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{ truncated")

        memory = store.open("Auth", "a")

        assert memory.entries == []
        assert len(list(config.archive_path.glob("memory-corrupt-*.json"))) == 1


class TestPeek:
    """Tests for read-only access."""

    def test_peek_never_archives(self, config):
        store = MemoryStore(config)
        store.append(store.open("Auth", "a"), _entry(1))

        assert store.peek("Billing") is None
        assert store.peek("Auth").entries[0].iteration == 1
        assert not config.archive_path.exists()


class TestMutations:
    """Tests for append and amend_latest."""

    def test_append_persists_immediately(self, config):
        store = MemoryStore(config)
        store.append(store.open("Auth", "a"), _entry(1))
        assert json.loads(store.path.read_text())["entries"][0]["iteration"] == 1

    def test_append_rejects_out_of_order_entries(self, config):
        store = MemoryStore(config)
        memory = store.open("Auth", "a")
        store.append(memory, _entry(2))
        with pytest.raises(ValueError):
            store.append(memory, _entry(2))

    def test_amend_latest_only_touches_last_entry(self, config):
        store = MemoryStore(config)
        memory = store.open("Auth", "a")
        store.append(memory, _entry(1))
        store.append(memory, _entry(2))

        store.amend_latest(memory, critique="Tests fail", outcome=Outcome.FAILURE)
        store.amend_latest(memory, critique="Review rejected")

        assert memory.entries[0].critique is None
        assert memory.entries[0].outcome == Outcome.SUCCESS
        assert memory.entries[1].critique == "Tests fail\n\nReview rejected"
        assert memory.entries[1].outcome == Outcome.FAILURE

    def test_amend_on_empty_memory(self, config):
        store = MemoryStore(config)
        assert store.amend_latest(store.open("Auth", "a"), critique="x") is None

    def test_unwritable_state_dir_raises(self, config):
        config.state_path.parent.mkdir(parents=True, exist_ok=True)
        config.state_path.write_text("a file where a directory should be")
        store = MemoryStore(config)

        with pytest.raises(StatePersistenceError):
            store.append(store.open("Auth", "a"), _entry(1))
