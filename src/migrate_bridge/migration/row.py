"""Row objects flowing through a migration run."""

from dataclasses import dataclass, field
from typing import Any

from migrate_bridge.migration.id_map import IdMapEntry
from migrate_bridge.migration.models import MapStatus, RollbackAction
from migrate_bridge.utils.idempotency import hash_resource, key_values


class FieldValues(list):
    """Multi-valued destination field.

    Behaves as a plain list of values and additionally carries a mapping of
    handler arguments (``field:subfield`` writes land here).
    """

    def __init__(self, values: Any = (), arguments: dict[str, Any] | None = None):
        super().__init__(values)
        self.arguments: dict[str, Any] = dict(arguments or {})

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FieldValues):
            return list(self) == list(other) and self.arguments == other.arguments
        return list.__eq__(self, other)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        if self.arguments:
            return f"FieldValues({list(self)!r}, arguments={self.arguments!r})"
        return f"FieldValues({list(self)!r})"


@dataclass
class Row:
    """
    One admitted source row plus its migration bookkeeping.

    Attributes:
        source: Field values read from the source connector
        source_key: Key field name to value, in key order
        id_map: Map row from before this run, if the key was seen before
        hash: Content hash of ``source`` ('' when change tracking is off)
        original_hash: Hash stored by the previous import
        destination: Destination record built by the field pipeline
        rollback_action: Rollback action to record with the row
        needs_update: Status to record after a successful write
    """

    source: dict[str, Any]
    source_key: dict[str, Any]
    id_map: IdMapEntry | None = None
    hash: str = ""
    original_hash: str = ""
    destination: dict[str, Any] = field(default_factory=dict)
    rollback_action: RollbackAction = RollbackAction.DELETE
    needs_update: MapStatus = MapStatus.IMPORTED

    def get(self, name: str, default: Any = None) -> Any:
        return self.source.get(name, default)

    def __contains__(self, name: object) -> bool:
        return name in self.source

    @property
    def key_values(self) -> tuple:
        return key_values(self.source_key)

    @property
    def previous_destination_key(self) -> tuple:
        """Destination key recorded by an earlier import, or ()."""
        if self.id_map is None or not self.id_map.has_destination:
            return ()
        return self.id_map.destination_key

    def rehash(self) -> str:
        """Recompute and store the content hash of the source values."""
        self.hash = hash_resource(self.source)
        return self.hash

    def changed(self) -> bool:
        """True when the content hash differs from the previous import's."""
        return self.hash != self.original_hash
