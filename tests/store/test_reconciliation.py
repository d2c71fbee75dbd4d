"""Tests for ReconciliationStore and its optimistic commands."""

import pytest

from betwatch.markets.protocol import EMPTY_CHANGES, PriceChangeSet
from betwatch.store.reconciliation import CommandStatus, ReconciliationStore


@pytest.fixture
def store(make_item) -> ReconciliationStore:
    return ReconciliationStore([make_item("a"), make_item("b"), make_item("c")])


def ids(store: ReconciliationStore) -> list[str]:
    return [item.id for item in store.projection()]


class TestReadOperations:
    """Test projection and lookups."""

    def test_initial_items(self, store):
        assert ids(store) == ["a", "b", "c"]
        assert len(store) == 3
        assert "b" in store
        assert "z" not in store
        assert store.version == 0

    def test_get(self, store):
        assert store.get("b").id == "b"
        assert store.get("z") is None

    def test_projection_is_a_snapshot(self, store, make_item):
        before = store.projection()

        store.apply_push_insert(make_item("d"))

        assert len(before) == 3
        assert len(store.projection()) == 4

    def test_duplicate_ids_in_constructor_are_dropped(self, make_item):
        store = ReconciliationStore([make_item("a"), make_item("a")])

        assert len(store) == 1


class TestOptimisticInsert:
    """Test InsertCommand apply/confirm/rollback."""

    @pytest.mark.parametrize(
        argnames="new_ids",
        argvalues=[["d"], ["d", "e"], ["a"], ["d", "a", "e"]],
    )
    def test_insert_then_rollback_restores_projection(self, store, make_item, new_ids):
        # Arrange
        before = store.projection()

        # Act
        for item_id in new_ids:
            command = store.optimistic_insert(make_item(item_id, price=99.0))
            store.rollback_insert(command)

        # Assert
        assert store.projection() == before
        assert store.pending_count == 0

    def test_insert_appends_and_confirms(self, store, make_item):
        # Act
        command = store.optimistic_insert(make_item("d"))

        # Assert
        assert ids(store) == ["a", "b", "c", "d"]
        assert command.applied
        assert store.pending_count == 1

        store.confirm_insert(command)

        assert command.status == CommandStatus.CONFIRMED
        assert store.pending_count == 0
        assert "d" in store

    def test_insert_existing_id_is_noop(self, store, make_item):
        original = store.get("a")

        command = store.optimistic_insert(make_item("a", price=1.0))
        command.rollback()

        assert not command.applied
        assert command.status == CommandStatus.ROLLED_BACK
        assert store.get("a") is original

    def test_rollback_after_confirm_is_ignored(self, store, make_item):
        command = store.optimistic_insert(make_item("d"))
        command.confirm()

        command.rollback()

        assert command.status == CommandStatus.CONFIRMED
        assert "d" in store


class TestOptimisticRemove:
    """Test RemoveCommand apply/confirm/rollback."""

    def test_remove_unknown_returns_none(self, store):
        assert store.optimistic_remove("z") is None
        assert len(store) == 3

    def test_remove_then_rollback_restores_position(self, store):
        before = store.projection()

        command = store.optimistic_remove("b")
        assert ids(store) == ["a", "c"]
        store.rollback_remove(command)

        assert store.projection() == before
        assert store.pending_count == 0

    def test_confirm_remove(self, store):
        command = store.optimistic_remove("b")

        store.confirm_remove("b")

        assert command.status == CommandStatus.CONFIRMED
        assert ids(store) == ["a", "c"]
        assert store.pending_count == 0

    def test_rollback_when_push_already_restored(self, store, make_item):
        command = store.optimistic_remove("b")
        store.apply_push_insert(make_item("b"))

        command.rollback()

        assert ids(store).count("b") == 1


class TestPushEvents:
    """Test change-event merges."""

    def test_push_insert_new_id(self, store, make_item):
        assert store.apply_push_insert(make_item("d")) is True
        assert ids(store) == ["a", "b", "c", "d"]

    def test_push_insert_duplicate_is_ignored(self, store, make_item):
        original = store.get("a")

        assert store.apply_push_insert(make_item("a", price=1.0)) is False
        assert store.get("a") is original
        assert len(store) == 3

    def test_push_delete_unknown_is_noop(self, store):
        version = store.version

        assert store.apply_push_remove("z") is False
        assert len(store) == 3
        assert store.version == version

    def test_push_delete_known(self, store):
        assert store.apply_push_remove("b") is True
        assert ids(store) == ["a", "c"]

    def test_push_delete_is_idempotent(self, store):
        store.apply_push_remove("b")

        assert store.apply_push_remove("b") is False
        assert ids(store) == ["a", "c"]


class TestLoad:
    """Test bulk load reconciliation."""

    def test_load_replaces_in_listing_order(self, store, make_item):
        store.load([make_item("c"), make_item("x"), make_item("a")])

        assert ids(store) == ["c", "x", "a"]

    def test_load_wins_for_repopulated_fields(self, store, make_item):
        store.load([make_item("a", price=77.0)])

        assert store.get("a").current_price == 77.0

    def test_load_deduplicates(self, store, make_item):
        store.load([make_item("a"), make_item("a", price=1.0)])

        assert len(store) == 1
        assert store.get("a").current_price == 50.0

    def test_load_keeps_pending_insert(self, store, make_item):
        store.optimistic_insert(make_item("d"))

        store.load([make_item("a")])

        assert ids(store) == ["a", "d"]

    def test_load_excludes_pending_removal(self, store, make_item):
        store.optimistic_remove("b")

        store.load([make_item("a"), make_item("b")])

        assert ids(store) == ["a"]

    def test_stale_listing_does_not_resurrect_confirmed_removal(
        self, store, make_item
    ):
        # Arrange
        store.optimistic_remove("b")
        store.confirm_remove("b")

        # Act
        store.load([make_item("a"), make_item("b")])
        store.load([make_item("a")])
        store.load([make_item("a"), make_item("b")])

        # Assert
        assert ids(store) == ["a", "b"]

    def test_stale_listing_keeps_confirmed_insert(self, store, make_item):
        # Arrange
        since_version = store.version
        command = store.optimistic_insert(make_item("d"))
        command.confirm()

        # Act
        store.load([make_item("a")], since_version=since_version)

        # Assert
        assert ids(store) == ["a", "d"]

    def test_push_events_after_listing_request_win(self, store, make_item):
        # Arrange
        since_version = store.version
        store.apply_push_insert(make_item("d"))
        store.apply_push_remove("a")

        # Act
        store.load([make_item("a"), make_item("b")], since_version=since_version)

        # Assert
        assert ids(store) == ["b", "d"]

    def test_push_events_before_listing_request_lose(self, store, make_item):
        store.apply_push_insert(make_item("d"))
        since_version = store.version

        store.load([make_item("a")], since_version=since_version)

        assert ids(store) == ["a"]

    def test_load_without_since_version_is_authoritative(self, store, make_item):
        store.apply_push_insert(make_item("d"))

        store.load([make_item("a")])

        assert ids(store) == ["a"]


class TestOverlappingMutations:
    """Test removals racing with re-adds of the same id."""

    def test_readd_during_pending_removal_survives_load(self, store, make_item):
        # Arrange
        removal = store.optimistic_remove("a")
        insert = store.optimistic_insert(make_item("a"))
        insert.confirm()

        # Act
        removal.confirm()
        store.load([make_item("a"), make_item("b")])

        # Assert
        assert ids(store) == ["a", "b"]
        assert store.pending_count == 0

    def test_readd_during_pending_removal_kept_by_interim_load(
        self, store, make_item
    ):
        store.optimistic_remove("a")
        store.optimistic_insert(make_item("a"))

        store.load([make_item("a"), make_item("b")])

        assert ids(store) == ["a", "b"]

    def test_removal_rollback_after_readd_keeps_single_copy(self, store, make_item):
        removal = store.optimistic_remove("a")
        store.optimistic_insert(make_item("a")).confirm()

        removal.rollback()

        assert ids(store).count("a") == 1

    def test_push_insert_during_pending_removal_is_ignored(self, store, make_item):
        # Arrange
        removal = store.optimistic_remove("a")

        # Act
        applied = store.apply_push_insert(make_item("a"))
        removal.confirm()

        # Assert
        assert applied is False
        assert "a" not in store
        store.load([make_item("a"), make_item("b")])
        assert "a" not in store

    def test_rolled_back_readd_keeps_tombstone(self, store, make_item):
        # Arrange
        store.optimistic_remove("b")
        store.confirm_remove("b")

        # Act
        store.optimistic_insert(make_item("b")).rollback()
        store.load([make_item("a"), make_item("b"), make_item("c")])

        # Assert
        assert ids(store) == ["a", "c"]

    def test_confirmed_readd_clears_tombstone(self, store, make_item):
        store.optimistic_remove("b")
        store.confirm_remove("b")

        store.optimistic_insert(make_item("b")).confirm()
        store.load([make_item("a"), make_item("b"), make_item("c")])

        assert ids(store) == ["a", "b", "c"]

    def test_listing_requested_before_removal_confirm_is_filtered(
        self, store, make_item
    ):
        since_version = store.version
        store.optimistic_remove("b")
        store.confirm_remove("b")

        store.load(
            [make_item("a"), make_item("b"), make_item("c")],
            since_version=since_version,
        )

        assert ids(store) == ["a", "c"]

    def test_listing_requested_after_removal_confirm_is_trusted(
        self, store, make_item
    ):
        # Arrange
        store.optimistic_remove("b")
        store.confirm_remove("b")
        since_version = store.version

        # Act
        store.load(
            [make_item("a"), make_item("b"), make_item("c")],
            since_version=since_version,
        )

        # Assert
        assert ids(store) == ["a", "b", "c"]


class TestChangeSets:
    """Test change set caching."""

    def test_apply_and_read(self, store):
        changes = PriceChangeSet(one_hour=1.0, one_day=None, seven_days=-2.0)

        store.apply_change_sets({"a": changes, "z": changes})

        assert store.change_set("a") == changes
        assert store.change_set("z") == EMPTY_CHANGES

    def test_removed_items_lose_change_sets(self, store, make_item):
        changes = PriceChangeSet(one_hour=1.0)
        store.apply_change_sets({"a": changes, "b": changes})

        store.apply_push_remove("a")
        store.load([make_item("c")])

        assert store.change_set("a") == EMPTY_CHANGES
        assert store.change_set("b") == EMPTY_CHANGES


class TestListeners:
    """Test change notification."""

    def test_listener_called_on_change(self, store, make_item):
        versions: list[int] = []
        store.subscribe(lambda s: versions.append(s.version))

        store.apply_push_insert(make_item("d"))
        store.apply_push_remove("a")

        assert versions == [1, 2]

    def test_unsubscribe(self, store, make_item):
        calls: list[int] = []
        unsubscribe = store.subscribe(lambda s: calls.append(s.version))

        unsubscribe()
        unsubscribe()
        store.apply_push_insert(make_item("d"))

        assert calls == []

    def test_failing_listener_does_not_break_store(self, store, make_item):
        calls: list[int] = []

        def broken(s: ReconciliationStore) -> None:
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.subscribe(lambda s: calls.append(s.version))

        assert store.apply_push_insert(make_item("d"))
        assert calls == [1]
