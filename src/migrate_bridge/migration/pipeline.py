"""
Field pipeline.

Builds the destination record of a row by running each field mapping through
its transformation chain: separator split, cross-job resolution, callbacks,
dedupe, then handler arguments.
"""

from typing import TYPE_CHECKING, Any

from migrate_bridge.exceptions import ConfigurationError
from migrate_bridge.migration.dedupe import Deduplicator
from migrate_bridge.migration.mapping import FieldMapping
from migrate_bridge.migration.models import MessageLevel
from migrate_bridge.migration.resolver import CrossMigrationResolver
from migrate_bridge.migration.row import FieldValues, Row
from migrate_bridge.utils.logging import get_logger

if TYPE_CHECKING:
    from migrate_bridge.migration.job import JobRegistry, MigrationJob

logger = get_logger(__name__)


def resolve_arguments(arguments: dict[str, Any], row: Row) -> dict[str, Any]:
    """
    Compute handler arguments for a row.

    ``{"source_field": name}`` reads the row (when the field is present),
    ``{"default_value": v}`` yields ``v`` and anything else is a literal.
    """
    resolved: dict[str, Any] = {}
    for name, argument in arguments.items():
        if not isinstance(argument, dict):
            resolved[name] = argument
        elif "source_field" in argument and argument["source_field"] in row:
            resolved[name] = row.source[argument["source_field"]]
        elif "default_value" in argument:
            resolved[name] = argument["default_value"]
        else:
            resolved[name] = argument
    return resolved


def assign_field(record: dict[str, Any], mapping: FieldMapping, value: Any) -> None:
    """
    Write a computed value into the destination record.

    A ``field:subfield`` destination stores the value as a handler argument
    of ``field``. Writing a field that already holds a value turns it into a
    sequence and appends.
    """
    parent = mapping.parent_field
    subfield = mapping.subfield
    if parent is None:
        raise ConfigurationError(
            f"Mapping from '{mapping.source_field}' has no destination field to assign"
        )

    if subfield:
        current = record.get(parent)
        if not isinstance(current, FieldValues):
            if parent not in record:
                current = FieldValues()
            elif isinstance(current, list):
                current = FieldValues(current)
            else:
                current = FieldValues([current])
            record[parent] = current
        current.arguments[subfield] = value
    elif parent not in record:
        record[parent] = value
    else:
        current = record[parent]
        if isinstance(current, FieldValues):
            current.append(value)
        elif isinstance(current, list):
            # Copy so a list taken from the source row is never modified
            record[parent] = FieldValues([*current, value])
        else:
            record[parent] = FieldValues([current, value])


class FieldPipeline:
    """
    Applies the field mappings of a job to admitted rows.

    Usage:
        pipeline = FieldPipeline(registry)
        record = pipeline.apply(job, row)
    """

    def __init__(self, registry: "JobRegistry", deduplicator: Deduplicator | None = None):
        self.registry = registry
        self.resolver = CrossMigrationResolver(registry)
        self.deduplicator = deduplicator
        self._job_deduplicators: dict[str, Deduplicator] = {}

    def _deduplicator_for(self, job: "MigrationJob") -> Deduplicator | None:
        if self.deduplicator is not None:
            return self.deduplicator
        if job.uniqueness is None:
            return None
        if job.id not in self._job_deduplicators:
            self._job_deduplicators[job.id] = Deduplicator(job.uniqueness)
        return self._job_deduplicators[job.id]

    def apply(self, job: "MigrationJob", row: Row) -> dict[str, Any]:
        """
        Build the destination record of a row.

        The record is also stored on ``row.destination``.
        """
        record: dict[str, Any] = {}
        for mapping in job.get_field_mappings():
            if mapping.destination_field is None:
                continue
            if mapping.source_field is None and mapping.default is None:
                continue

            if mapping.source_field is not None and mapping.source_field in row:
                value = row.source[mapping.source_field]
            elif mapping.default is not None:
                value = mapping.default
            else:
                continue

            value = self._transform(job, row, mapping, value)
            assign_field(record, mapping, value)

        row.destination = record
        return record

    def _transform(self, job: "MigrationJob", row: Row, mapping: FieldMapping, value: Any) -> Any:
        if mapping.separator_value and isinstance(value, str):
            value = value.split(mapping.separator_value)

        if mapping.source_migrations and value is not None:
            value = self.resolver.resolve(
                job, row, mapping.source_migrations, value, mapping.default
            )

        for callback in mapping.callback_list:
            if value is None:
                break
            value = callback(value)

        if mapping.dedupe_target and value is not None:
            deduplicator = self._deduplicator_for(job)
            if deduplicator is None:
                logger.warning(
                    "dedupe_without_lookup",
                    job_id=job.id,
                    destination_field=mapping.destination_field,
                )
            else:
                store, field = mapping.dedupe_target

                def record_message(text: str, level: MessageLevel) -> None:
                    job.save_message(row.source_key, text, level)

                value = deduplicator.dedupe(
                    store,
                    field,
                    value,
                    previous_destination_key=row.previous_destination_key,
                    on_message=record_message,
                )

        if mapping.argument_map and value is not None:
            values = FieldValues(value if isinstance(value, list) else [value])
            values.arguments.update(resolve_arguments(mapping.argument_map, row))
            value = values

        return value
