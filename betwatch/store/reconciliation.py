"""In-memory projection of tracked items."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from enum import IntEnum, auto

import structlog

from betwatch.core.logging import Logger
from betwatch.markets.protocol import EMPTY_CHANGES, PriceChangeSet, TrackedItem

logger: Logger = structlog.getLogger(__name__)

StoreListener = Callable[["ReconciliationStore"], None]


class CommandStatus(IntEnum):
    """Optimistic mutation status"""

    PENDING = auto()  # Applied locally, awaiting durable confirmation
    CONFIRMED = auto()  # Durable store accepted the change
    ROLLED_BACK = auto()  # Durable store rejected it, local change reverted


class InsertCommand:
    """
    Optimistic insert of one item.

    apply() appends the item unless its id is already present; rollback()
    only removes what apply() added.
    """

    __slots__ = ("_store", "item", "status", "_applied")

    def __init__(self, store: ReconciliationStore, item: TrackedItem) -> None:
        self._store = store
        self.item = item
        self.status = CommandStatus.PENDING
        self._applied = False

    @property
    def applied(self) -> bool:
        """Whether apply() actually added the item."""
        return self._applied

    def apply(self) -> None:
        if self._applied or self.status != CommandStatus.PENDING:
            return

        self._applied = self._store._append(self.item)
        if self._applied:
            self._store._pending_inserts[self.item.id] = self

    def confirm(self) -> None:
        if self.status != CommandStatus.PENDING:
            return

        self.status = CommandStatus.CONFIRMED
        self._store._settle_insert(self)
        self._store._tombstones.pop(self.item.id, None)

        if self._applied:
            # Listings requested before this point may not contain the item yet
            self._store._changed()
            self._store._arrivals[self.item.id] = self._store.version

    def rollback(self) -> None:
        if self.status != CommandStatus.PENDING:
            return

        self.status = CommandStatus.ROLLED_BACK
        self._store._settle_insert(self)

        if self._applied:
            self._store._discard(self.item.id)


class RemoveCommand:
    """
    Optimistic removal of one item.

    Keeps the removed snapshot and its position for rollback.
    """

    __slots__ = ("_store", "snapshot", "index", "status")

    def __init__(
        self, store: ReconciliationStore, snapshot: TrackedItem, index: int
    ) -> None:
        self._store = store
        self.snapshot = snapshot
        self.index = index
        self.status = CommandStatus.PENDING

    @property
    def item_id(self) -> str:
        return self.snapshot.id

    def apply(self) -> None:
        if self.status != CommandStatus.PENDING:
            return

        self._store._discard(self.item_id)
        self._store._pending_removals[self.item_id] = self

    def confirm(self) -> None:
        if self.status != CommandStatus.PENDING:
            return

        self.status = CommandStatus.CONFIRMED
        self._store._settle_remove(self)

        # Re-added while the delete was in flight
        if self.item_id in self._store:
            return

        # Listings requested before this point may still contain the item
        self._store._changed()
        self._store._tombstones[self.item_id] = self._store.version

    def rollback(self) -> None:
        if self.status != CommandStatus.PENDING:
            return

        self.status = CommandStatus.ROLLED_BACK
        self._store._settle_remove(self)
        self._store._insert_at(self.index, self.snapshot)


class ReconciliationStore:
    """
    Authoritative in-memory sequence of tracked items.

    Every operation is synchronous and atomic, so the poll cycle and the
    change-event consumer can both write without locking. Item id is the
    only deduplication key and every operation is idempotent.
    """

    __slots__ = (
        "_items",
        "_index",
        "_pending_inserts",
        "_pending_removals",
        "_tombstones",
        "_arrivals",
        "_departures",
        "_change_sets",
        "_listeners",
        "_version",
    )

    def __init__(self, items: Iterable[TrackedItem] = ()) -> None:
        self._items: list[TrackedItem] = []
        self._index: set[str] = set()  # ids present in _items

        self._pending_inserts: dict[str, InsertCommand] = {}
        self._pending_removals: dict[str, RemoveCommand] = {}
        # Confirmed removals by id -> store version at confirmation
        self._tombstones: dict[str, int] = {}
        # Push events by id -> store version, protected from listings older than them
        self._arrivals: dict[str, int] = {}
        self._departures: dict[str, int] = {}

        self._change_sets: dict[str, PriceChangeSet] = {}
        self._listeners: list[StoreListener] = []
        self._version = 0

        for item in items:
            self._append(item, notify=False)

    # -------------------------------
    # Read-only operations
    # -------------------------------

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._index

    @property
    def version(self) -> int:
        """Incremented on every visible change."""
        return self._version

    @property
    def pending_count(self) -> int:
        return len(self._pending_inserts) + len(self._pending_removals)

    def projection(self) -> tuple[TrackedItem, ...]:
        """Read-only snapshot of the current items, in order."""
        return tuple(self._items)

    def get(self, item_id: str) -> TrackedItem | None:
        if item_id not in self._index:
            return None

        for item in self._items:
            if item.id == item_id:
                return item

        return None

    def change_set(self, item_id: str) -> PriceChangeSet:
        return self._change_sets.get(item_id, EMPTY_CHANGES)

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """
        Register a listener called after each visible change.

        Returns a function that unregisters it.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---------------------------
    # Mutation operations
    # --------------------------

    def load(
        self, items: Iterable[TrackedItem], since_version: int | None = None
    ) -> tuple[TrackedItem, ...]:
        """
        Bulk replace from the durable store, keeping its order.

        Load wins for every field it repopulates. Pending optimistic removals
        stay removed, pending optimistic inserts missing from the listing are
        kept, and confirmed removals are not resurrected by a stale listing.

        Args:
            items: Durable listing, newest-created first
            since_version: Store version when the listing was requested. Push
                inserts and removes applied after it win over the listing, and
                confirmed removals before it no longer filter the listing.
        """
        loaded: list[TrackedItem] = []
        seen: set[str] = set()

        for item in items:
            if item.id in seen:
                continue
            seen.add(item.id)
            loaded.append(item)

        # Drop tombstones the listing caught up with or was requested after
        self._tombstones = {
            item_id: version
            for item_id, version in self._tombstones.items()
            if item_id in seen and (since_version is None or version > since_version)
        }

        if since_version is None:
            arrived: set[str] = set()
            departed: set[str] = set()
        else:
            arrived = {
                item_id
                for item_id, version in self._arrivals.items()
                if version > since_version and item_id not in seen
            }
            departed = {
                item_id
                for item_id, version in self._departures.items()
                if version > since_version and item_id in seen
            }
        self._arrivals = {item_id: self._arrivals[item_id] for item_id in arrived}
        self._departures = {
            item_id: self._departures[item_id] for item_id in departed
        }

        result = [
            item
            for item in loaded
            if item.id not in self._pending_removals
            and item.id not in self._tombstones
            and item.id not in departed
        ]

        for item in self._items:
            if item.id in arrived:
                result.append(item)

        result_ids = {item.id for item in result}
        for item_id, command in self._pending_inserts.items():
            if item_id not in result_ids:
                result.append(command.item)
                result_ids.add(item_id)

        self._items = result
        self._index = result_ids
        self._change_sets = {
            item_id: changes
            for item_id, changes in self._change_sets.items()
            if item_id in self._index
        }
        self._changed()

        return self.projection()

    def optimistic_insert(self, item: TrackedItem) -> InsertCommand:
        """
        Append now; the returned command must be confirmed or rolled back.

        Supersedes a removal of the same id still awaiting its durable delete.
        """
        if self._pending_removals.pop(item.id, None) is not None:
            logger.debug(f"Optimistic insert of {item.id} supersedes pending removal")

        command = InsertCommand(self, item)
        command.apply()

        if not command.applied:
            logger.debug(f"Optimistic insert of existing id {item.id}, no-op")

        return command

    def confirm_insert(self, command: InsertCommand) -> None:
        command.confirm()

    def rollback_insert(self, command: InsertCommand) -> None:
        command.rollback()

    def optimistic_remove(self, item_id: str) -> RemoveCommand | None:
        """Remove immediately. None when the id is not present."""
        index = self._position(item_id)
        if index is None:
            return None

        command = RemoveCommand(self, self._items[index], index)
        command.apply()

        return command

    def confirm_remove(self, item_id: str) -> None:
        command = self._pending_removals.get(item_id)
        if command is not None:
            command.confirm()

    def rollback_remove(self, command: RemoveCommand) -> None:
        command.rollback()

    def apply_push_insert(self, item: TrackedItem) -> bool:
        """
        Merge an externally pushed creation.

        False if the id already exists or a local removal of it is pending.
        """
        if item.id in self._pending_removals:
            logger.debug(f"Push insert of {item.id} ignored, removal pending")
            return False

        if not self._append(item):
            return False

        self._tombstones.pop(item.id, None)

        self._departures.pop(item.id, None)
        self._arrivals[item.id] = self._version
        return True

    def apply_push_remove(self, item_id: str) -> bool:
        """Remove by id if present. False when absent."""
        if not self._discard(item_id):
            return False

        self._arrivals.pop(item_id, None)
        self._departures[item_id] = self._version
        return True

    def apply_change_sets(self, change_sets: Mapping[str, PriceChangeSet]) -> None:
        """Cache change sets for items still present."""
        updated = False
        for item_id, changes in change_sets.items():
            if item_id in self._index:
                self._change_sets[item_id] = changes
                updated = True

        if updated:
            self._changed()

    # ---------------------------
    # Internals used by commands
    # --------------------------

    def _position(self, item_id: str) -> int | None:
        if item_id not in self._index:
            return None

        for i, item in enumerate(self._items):
            if item.id == item_id:
                return i

        return None

    def _append(self, item: TrackedItem, notify: bool = True) -> bool:
        if item.id in self._index:
            return False

        self._items.append(item)
        self._index.add(item.id)

        if notify:
            self._changed()

        return True

    def _insert_at(self, index: int, item: TrackedItem) -> bool:
        if item.id in self._index:
            return False

        index = max(0, min(index, len(self._items)))
        self._items.insert(index, item)
        self._index.add(item.id)
        self._changed()

        return True

    def _discard(self, item_id: str) -> bool:
        index = self._position(item_id)
        if index is None:
            return False

        self._items.pop(index)
        self._index.discard(item_id)
        self._change_sets.pop(item_id, None)
        self._changed()

        return True

    def _settle_insert(self, command: InsertCommand) -> None:
        if self._pending_inserts.get(command.item.id) is command:
            del self._pending_inserts[command.item.id]

    def _settle_remove(self, command: RemoveCommand) -> None:
        if self._pending_removals.get(command.item_id) is command:
            del self._pending_removals[command.item_id]

    def _changed(self) -> None:
        self._version += 1

        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Store listener error: {e}", exc_info=True)
