from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

# Criteria value for the soft-delete column meaning "deleted and active rows"
SHOW_ALL = "*"


class SoftDeletePolicy:
    """
    Default visibility and mutation payloads for a soft-delete column.

    Rows are hidden from reads while the column is non-null, unless the
    criteria ask for ``{column: "*"}``.
    """

    def __init__(self, column: str = "deleted_at"):
        self.column = column

    def strip_show_all(self, criteria: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of ``criteria`` without a ``"*"`` filter on the column."""
        criteria = dict(criteria)
        if self.column in criteria and criteria[self.column] == SHOW_ALL:
            del criteria[self.column]
        return criteria

    def apply_default_visibility(self, criteria: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of ``criteria`` with the default visibility filter applied."""
        if self.column in criteria:
            return self.strip_show_all(criteria)

        criteria = dict(criteria)
        criteria[self.column] = None
        return criteria

    def soft_delete_payload(self) -> dict[str, Any]:
        return {self.column: datetime.now(timezone.utc)}

    def restore_payload(self) -> dict[str, Any]:
        return {self.column: None}
