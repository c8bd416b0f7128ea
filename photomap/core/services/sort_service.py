"""Sorting service for `PhotoRecord` collections.

The service performs multi-key sorting across records, handling None values and
per-key ascending/descending ordering without mutating original values.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from photomap.core.models import PhotoRecord


class SortService:
    """Provides sorting utilities for record lists."""

    def sort(
        self, records: Iterable[PhotoRecord], sort_keys: list[tuple[str, bool]]
    ) -> list[PhotoRecord]:
        """Return `records` ordered by the provided keys.

        Args:
            records: Records to sort; the iterable is not modified.
            sort_keys: List of tuples (field_name, ascending). Records whose value
                for a key is None sort after every record that has one.
        """
        items = list(records)
        if not sort_keys:
            return items

        # Stable sort applied from the least to the most significant key
        for field_name, ascending in reversed(sort_keys):
            present = [it for it in items if getattr(it, field_name, None) is not None]
            missing = [it for it in items if getattr(it, field_name, None) is None]
            present.sort(key=lambda it, f=field_name: _sort_value(getattr(it, f)), reverse=not ascending)
            items = present + missing
        return items


def _sort_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    return str(value)
