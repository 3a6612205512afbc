"""
History Reader

Paginated, chronological read of a scheduled action's execution history.

DESIGN DECISION: Pages are keyed on the store-assigned `sequence`, not on
an offset. A cursor names the last row the caller has seen, so rows
appended after a page was fetched are neither skipped nor repeated.

ISOLATION ASSUMPTION: history inserts are serialized, so rows become
visible in `sequence` order. The memory store inserts under one lock and
sqlite serializes writers. Read committed alone is not enough: with
concurrent writers, a transaction holding a lower sequence can commit
after a higher one was already paged past. A backend with concurrent
writers must serialize history inserts to keep this reader gap-free.
"""

import base64
import binascii
import json
from typing import Optional

import structlog

from splitledger.models.scheduled import (
    ExecutionStatus,
    HistoryPage,
    ScheduledActionHistory,
)
from splitledger.services.storage.interface import (
    HistoryStorageInterface,
    NotFoundError,
    ScheduledActionStorageInterface,
)


logger = structlog.get_logger(__name__)


class InvalidCursorError(ValueError):
    """The cursor was not produced by this reader."""
    pass


def encode_cursor(sequence: int) -> str:
    payload = json.dumps({"after": sequence}).encode()
    return base64.urlsafe_b64encode(payload).decode()


def decode_cursor(cursor: str) -> int:
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.encode()))
        sequence = payload["after"]
    except (binascii.Error, ValueError, KeyError, TypeError) as e:
        raise InvalidCursorError(f"Invalid history cursor: {cursor!r}") from e
    if not isinstance(sequence, int) or sequence < 0:
        raise InvalidCursorError(f"Invalid history cursor: {cursor!r}")
    return sequence


class HistoryReader:
    """
    Reads execution history for one scheduled action at a time.

    History of a soft-deleted action stays readable.
    """

    def __init__(
        self,
        history_storage: HistoryStorageInterface,
        action_storage: ScheduledActionStorageInterface,
        default_page_size: int = 50,
    ):
        self._history = history_storage
        self._actions = action_storage
        self._default_page_size = default_page_size

    async def list_history(
        self,
        action_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> HistoryPage:
        """
        One page of history in ascending execution order.

        Args:
            action_id: Scheduled action whose history to read
            cursor: `next_cursor` of the previous page, None for the first page
            limit: Page size, defaults to the configured page size
            status: Only rows with this outcome

        Returns:
            HistoryPage whose `next_cursor` is None on the last page

        Raises:
            NotFoundError: If the action never existed
            InvalidCursorError: If the cursor is malformed
        """
        limit = limit or self._default_page_size
        if limit < 1:
            raise ValueError("limit must be at least 1")

        after = decode_cursor(cursor) if cursor else None

        if await self._actions.get(action_id) is None:
            raise NotFoundError(f"Scheduled action {action_id} not found")

        rows = await self._history.list_for_action(
            action_id,
            after_sequence=after,
            limit=limit + 1,
            status=status,
        )
        records = rows[:limit]
        next_cursor = None
        if len(rows) > limit:
            next_cursor = encode_cursor(records[-1].sequence)

        logger.debug(
            "history_page_read",
            action_id=action_id,
            returned=len(records),
            has_more=next_cursor is not None,
        )
        return HistoryPage(records=records, next_cursor=next_cursor)

    async def get_record(self, history_id: str) -> ScheduledActionHistory:
        """
        Raises:
            NotFoundError: If no history row has this id
        """
        record = await self._history.get_record(history_id)
        if record is None:
            raise NotFoundError(f"History record {history_id} not found")
        return record
