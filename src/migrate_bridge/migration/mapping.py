"""
Field mapping rules.

A FieldMapping says how one destination field is computed from the source
row. Rules declared in code form a job's coded mappings; rules persisted in
the state store (stored mappings) override coded rules for the same
destination field.
"""

import importlib
import threading
from collections.abc import Callable, Iterable
from typing import Any

from migrate_bridge.exceptions import ConfigurationError, StorageError
from migrate_bridge.migration.database import get_session, init_database
from migrate_bridge.migration.models import StoredFieldMapping
from migrate_bridge.utils.logging import get_logger

logger = get_logger(__name__)

# Issue group of fields deliberately left unmapped ("do not migrate")
DO_NOT_MIGRATE = "DNM"


def _to_int(value: Any) -> Any:
    return int(value) if value != "" else None


# Callbacks addressable by name from configuration and stored mappings
BUILTIN_CALLBACKS: dict[str, Callable[[Any], Any]] = {
    "strip": lambda value: value.strip() if isinstance(value, str) else value,
    "lower": lambda value: value.lower() if isinstance(value, str) else value,
    "upper": lambda value: value.upper() if isinstance(value, str) else value,
    "title": lambda value: value.title() if isinstance(value, str) else value,
    "int": _to_int,
    "float": float,
    "str": str,
    "bool": bool,
}


def resolve_callable(path: str) -> Callable[..., Any]:
    """
    Import an object from a ``package.module:attribute`` path.

    Raises:
        ConfigurationError: If the module or attribute cannot be found
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Expected 'module:attribute', got '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import module '{module_name}': {e}") from e

    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ConfigurationError(f"'{module_name}' has no attribute '{attribute}'") from e
    return target


def resolve_callback(name: str) -> Callable[[Any], Any]:
    """Resolve a builtin callback name or a module:function path."""
    if name in BUILTIN_CALLBACKS:
        return BUILTIN_CALLBACKS[name]
    if ":" in name:
        return resolve_callable(name)
    raise ConfigurationError(
        f"Unknown callback '{name}'. Builtins: {', '.join(sorted(BUILTIN_CALLBACKS))}"
    )


def callback_name(callback: Callable[[Any], Any]) -> str:
    """Inverse of resolve_callback, used when persisting mappings."""
    for name, builtin in BUILTIN_CALLBACKS.items():
        if builtin is callback:
            return name
    qualname = getattr(callback, "__qualname__", "")
    if "<" in qualname:
        raise ConfigurationError(f"Callback {callback!r} cannot be stored; use a named function")
    return f"{callback.__module__}:{qualname}"


class FieldMapping:
    """
    One destination field rule.

    Built fluently:
        FieldMapping("name", "username").callbacks("strip").dedupe("users", "name")

    The destination may be ``field`` or ``field:subfield``; a subfield rule
    stores its value as a handler argument of the parent field. A rule with
    no destination documents a source field that is deliberately unused.
    """

    CODE = "code"
    STORED = "stored"

    def __init__(self, destination_field: str | None = None, source_field: str | None = None):
        self.destination_field = destination_field
        self.source_field = source_field
        self.default: Any = None
        self.separator_value: str | None = None
        self.source_migrations: list[str] = []
        self.callback_list: list[Callable[[Any], Any]] = []
        self.dedupe_target: tuple[str, str] | None = None
        self.argument_map: dict[str, Any] = {}
        self.issue_group_value: str | None = None
        self.description_value: str | None = None
        self.mapping_source = self.CODE

    def __repr__(self) -> str:
        return f"FieldMapping({self.destination_field!r} <- {self.source_field!r})"

    # Fluent setters

    def default_value(self, value: Any) -> "FieldMapping":
        self.default = value
        return self

    def separator(self, separator: str) -> "FieldMapping":
        self.separator_value = separator
        return self

    def source_migration(self, *job_ids: str) -> "FieldMapping":
        """Resolve the value through the identity maps of these jobs, in order."""
        for job_id in job_ids:
            if isinstance(job_id, (list, tuple)):
                self.source_migrations.extend(job_id)
            else:
                self.source_migrations.append(job_id)
        return self

    def callbacks(self, *callbacks: Callable[[Any], Any] | str) -> "FieldMapping":
        """Append transformations; strings are resolved as callback names."""
        for callback in callbacks:
            self.callback_list.append(
                resolve_callback(callback) if isinstance(callback, str) else callback
            )
        return self

    def dedupe(self, store: str, field: str) -> "FieldMapping":
        """Make the value unique within ``store.field`` by suffixing _2, _3, ..."""
        self.dedupe_target = (store, field)
        return self

    def arguments(self, arguments: dict[str, Any]) -> "FieldMapping":
        """
        Attach handler arguments to the value.

        Each argument is a literal, ``{"source_field": name}`` (read from the
        row) or ``{"default_value": value}``.
        """
        self.argument_map = dict(arguments)
        return self

    def issue_group(self, group: str) -> "FieldMapping":
        self.issue_group_value = group
        return self

    def description(self, text: str) -> "FieldMapping":
        self.description_value = text
        return self

    # Structure

    @property
    def parent_field(self) -> str | None:
        if self.destination_field is None:
            return None
        return self.destination_field.split(":", 1)[0]

    @property
    def subfield(self) -> str | None:
        if self.destination_field is None or ":" not in self.destination_field:
            return None
        return self.destination_field.split(":", 1)[1]

    @property
    def is_unmigrated(self) -> bool:
        """Documents a field left out of the migration on purpose."""
        return self.issue_group_value == DO_NOT_MIGRATE

    def to_dict(self) -> dict[str, Any]:
        return {
            "destination": self.destination_field,
            "source": self.source_field,
            "default": self.default,
            "separator": self.separator_value,
            "source_migration": list(self.source_migrations),
            "callbacks": [callback_name(cb) for cb in self.callback_list],
            "dedupe": (
                {"store": self.dedupe_target[0], "field": self.dedupe_target[1]}
                if self.dedupe_target
                else None
            ),
            "arguments": dict(self.argument_map),
            "issue_group": self.issue_group_value,
            "description": self.description_value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldMapping":
        mapping = cls(data.get("destination"), data.get("source"))
        mapping.default = data.get("default")
        mapping.separator_value = data.get("separator")
        mapping.source_migrations = list(data.get("source_migration") or [])
        mapping.callbacks(*(data.get("callbacks") or []))
        dedupe = data.get("dedupe")
        if dedupe:
            mapping.dedupe(dedupe["store"], dedupe["field"])
        mapping.argument_map = dict(data.get("arguments") or {})
        mapping.issue_group_value = data.get("issue_group")
        mapping.description_value = data.get("description")
        return mapping


class FieldMappingSet:
    """
    Ordered collection of coded field mappings of a job.

    Rules with a destination are keyed by it, so re-adding a destination
    replaces the earlier rule in place. Rules without a destination are
    kept in declaration order.
    """

    def __init__(self, job_id: str = ""):
        self.job_id = job_id
        self._mappings: dict[str, FieldMapping] = {}
        self._unkeyed = 0

    def __iter__(self):
        return iter(self._mappings.values())

    def __len__(self) -> int:
        return len(self._mappings)

    def __contains__(self, destination_field: object) -> bool:
        return destination_field in self._mappings

    def get(self, destination_field: str) -> FieldMapping | None:
        return self._mappings.get(destination_field)

    def add(
        self,
        destination_field: str | None = None,
        source_field: str | None = None,
        warn_on_override: bool = True,
    ) -> FieldMapping:
        """Add a rule and return it for fluent configuration."""
        mapping = FieldMapping(destination_field, source_field)
        if destination_field is None:
            self._unkeyed += 1
            self._mappings[f"\x00{self._unkeyed}"] = mapping
            return mapping

        if warn_on_override and destination_field in self._mappings:
            logger.warning(
                "field_mapping_overridden",
                job_id=self.job_id,
                destination_field=destination_field,
            )
        self._mappings[destination_field] = mapping
        return mapping

    def remove(self, destination_field: str | None = None, source_field: str | None = None) -> None:
        """Remove the rule of a destination field, or every rule reading a source field."""
        if destination_field is not None:
            self._mappings.pop(destination_field, None)
            return
        if source_field is not None:
            for key in [k for k, m in self._mappings.items() if m.source_field == source_field]:
                del self._mappings[key]

    def add_simple(self, fields: Iterable[str]) -> None:
        """Map each field to the identically named source field."""
        for name in fields:
            self.add(name, name)

    def add_unmigrated_destinations(
        self, fields: Iterable[str], issue_group: str = DO_NOT_MIGRATE
    ) -> None:
        """Document destination fields that are deliberately left unpopulated."""
        for name in fields:
            self.add(name).issue_group(issue_group)

    def add_unmigrated_sources(
        self, fields: Iterable[str], issue_group: str = DO_NOT_MIGRATE
    ) -> None:
        """Document source fields that are deliberately not migrated."""
        for name in fields:
            self.add(None, name).issue_group(issue_group)

    def merged(self, stored: Iterable[FieldMapping] = ()) -> list[FieldMapping]:
        """
        Combine coded and stored rules into execution order.

        Stored rules replace coded rules with the same destination in place
        and new stored rules go last. Then every ``field:subfield`` rule is
        placed after all rules writing ``field`` itself; relative order is
        otherwise preserved.
        """
        combined: dict[str, FieldMapping] = dict(self._mappings)
        extra = 0
        for mapping in stored:
            if mapping.destination_field is None:
                extra += 1
                combined[f"\x01{extra}"] = mapping
            else:
                combined[mapping.destination_field] = mapping
        return order_mappings(combined.values())


def order_mappings(mappings: Iterable[FieldMapping]) -> list[FieldMapping]:
    """
    Order rules so parent fields are written before their subfields.

    Rules are grouped by parent field in order of first appearance; within a
    group, whole-field rules precede subfield rules.
    """
    groups: dict[str, tuple[list[FieldMapping], list[FieldMapping]]] = {}
    unkeyed = 0
    for mapping in mappings:
        parent = mapping.parent_field
        if parent is None:
            unkeyed += 1
            parent = f"\x00{unkeyed}"
        whole, subfields = groups.setdefault(parent, ([], []))
        (subfields if mapping.subfield else whole).append(mapping)

    ordered: list[FieldMapping] = []
    for whole, subfields in groups.values():
        ordered.extend(whole)
        ordered.extend(subfields)
    return ordered


class FieldMappingStore:
    """Persists field mappings of jobs in the state store."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._lock = threading.RLock()
        init_database(database_url)

    def load(self, job_id: str) -> list[FieldMapping]:
        """Load the stored mappings of a job in saved order."""
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    rows = (
                        session.query(StoredFieldMapping)
                        .filter_by(job_id=job_id)
                        .order_by(StoredFieldMapping.position, StoredFieldMapping.id)
                        .all()
                    )
                    records = [dict(row.options or {}) for row in rows]

            except Exception as e:
                logger.error("stored_mappings_load_failed", job_id=job_id, error=str(e))
                raise StorageError(f"Failed to load stored mappings for '{job_id}': {e}") from e

        mappings = []
        for record in records:
            mapping = FieldMapping.from_dict(record)
            mapping.mapping_source = FieldMapping.STORED
            mappings.append(mapping)
        return mappings

    def save(self, job_id: str, mappings: Iterable[FieldMapping]) -> int:
        """
        Replace the stored mappings of a job.

        Returns:
            Number of mappings stored
        """
        records = [mapping.to_dict() for mapping in mappings]
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    session.query(StoredFieldMapping).filter_by(job_id=job_id).delete(
                        synchronize_session=False
                    )
                    for position, record in enumerate(records):
                        session.add(
                            StoredFieldMapping(
                                job_id=job_id,
                                position=position,
                                destination_field=record["destination"],
                                source_field=record["source"],
                                options=record,
                            )
                        )
                logger.info("stored_mappings_saved", job_id=job_id, count=len(records))
                return len(records)

            except Exception as e:
                logger.error("stored_mappings_save_failed", job_id=job_id, error=str(e))
                raise StorageError(f"Failed to save stored mappings for '{job_id}': {e}") from e

    def delete(self, job_id: str) -> None:
        """Remove every stored mapping of a job."""
        self.save(job_id, [])
