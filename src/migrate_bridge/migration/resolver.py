"""
Cross-job reference resolution.

Translates source keys that point at rows of other jobs into the destination
keys those rows received, creating stubs for rows not migrated yet and
deferring self-references to a later pass.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from migrate_bridge.migration.models import MapStatus
from migrate_bridge.utils.idempotency import is_empty_key
from migrate_bridge.utils.logging import get_logger

if TYPE_CHECKING:
    from migrate_bridge.migration.job import JobRegistry, MigrationJob
    from migrate_bridge.migration.row import Row

logger = get_logger(__name__)


def normalize_reference_keys(value: Any) -> list[tuple]:
    """
    Turn a reference value into a list of key tuples.

    A scalar is one single-component key, a flat sequence is several
    single-component keys, and a sequence of sequences is several composite
    keys.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        keys = []
        for item in value:
            keys.append(tuple(item) if isinstance(item, (list, tuple)) else (item,))
        return keys
    return [(value,)]


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == ()


class CrossMigrationResolver:
    """Resolves references against the identity maps of registered jobs."""

    def __init__(self, registry: "JobRegistry"):
        self.registry = registry

    def resolve(
        self,
        job: "MigrationJob",
        row: "Row",
        job_ids: Sequence[str],
        value: Any,
        default: Any = None,
    ) -> Any:
        """
        Resolve a reference value through the identity maps of ``job_ids``.

        Each referenced job is consulted in order and the first non-empty
        destination key wins. If none has one, a reference from a row to
        itself is deferred (the row is recorded NEEDS_UPDATE), otherwise each
        referenced job is asked to create a stub. Unresolvable keys fall
        back to ``default``.

        Args:
            job: Job whose row holds the reference
            row: Row being processed
            job_ids: Jobs whose identity maps may hold the referenced keys
            value: Scalar key, sequence of keys, or sequence of composite keys
            default: Value used for keys that cannot be resolved

        Returns:
            A single value for a single input key, otherwise a list
        """
        keys = normalize_reference_keys(value)
        if not keys:
            return None

        referenced = [self.registry.get(job_id) for job_id in job_ids]
        results: list[Any] = []

        for key in keys:
            if not key or any(component is None for component in key):
                continue

            destination_key: tuple = ()
            for other in referenced:
                destination_key = other.id_map.lookup_destination_id(key)
                if not is_empty_key(destination_key):
                    break

            if is_empty_key(destination_key):
                for other in referenced:
                    if other.id == job.id and key == row.key_values:
                        # A row referencing itself resolves on the next pass
                        row.needs_update = MapStatus.NEEDS_UPDATE
                        logger.debug(
                            "self_reference_deferred", job_id=job.id, source_key=list(key)
                        )
                        destination_key = ()
                        break
                    destination_key = other.create_stub_wrapper(key, job)
                    if not is_empty_key(destination_key):
                        break

            if not is_empty_key(destination_key):
                results.append(
                    destination_key[0] if len(destination_key) == 1 else tuple(destination_key)
                )
            elif default is not None:
                results.append(default)

        if len(keys) > 1:
            return results

        result = results[0] if results else None
        return None if _is_blank(result) else result
