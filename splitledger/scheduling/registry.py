"""
Scheduled Action Registry

Create, read, list, update and delete recurring action definitions.

DESIGN DECISION: Every definition is validated by the pydantic models
before anything is persisted. A bad frequency, date, action type or
payload surfaces as InvalidActionDefinitionError and nothing is written.

DESIGN DECISION: Updates are compare-and-set writes on the action's
version. A lost race re-reads and re-applies the change instead of
overwriting a concurrent write.

Re-anchoring rules (the occurrence index decides the next run date):
- A new action starts at its first occurrence on or after today.
- Changing frequency or start date re-anchors the same way.
- Re-activating never replays occurrences missed while disabled.
- `skip_next` consumes the pending occurrence without executing it.
- No rule ever lands on an occurrence date that already executed.
"""

from datetime import datetime, timedelta
from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from splitledger.models.scheduled import (
    BudgetActionData,
    ScheduledAction,
    ScheduledActionPage,
    ScheduledActionRequest,
    ScheduledActionUpdate,
)
from splitledger.scheduling.recurrence import (
    first_occurrence_on_or_after,
    occurrence_date,
)
from splitledger.services.storage.interface import (
    LedgerStorageInterface,
    NotFoundError,
    ScheduledActionStorageInterface,
    StaleVersionError,
)


logger = structlog.get_logger(__name__)


class InvalidActionDefinitionError(ValueError):
    """A scheduled action definition was rejected before persistence."""

    def __init__(self, message: str, errors: Optional[list[dict]] = None):
        self.errors = errors or []
        super().__init__(message)

    @classmethod
    def from_validation_error(cls, error: ValidationError) -> "InvalidActionDefinitionError":
        errors = [
            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
            for e in error.errors()
        ]
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        return cls(f"Invalid scheduled action: {summary}", errors)


class ScheduledActionRegistry:
    """CRUD over scheduled action definitions."""

    def __init__(
        self,
        action_storage: ScheduledActionStorageInterface,
        ledger_storage: Optional[LedgerStorageInterface] = None,
        audit_logger=None,
        default_page_size: int = 20,
    ):
        self._storage = action_storage
        self._ledger = ledger_storage
        self._audit_logger = audit_logger
        self._default_page_size = default_page_size

    async def _check_budget(self, group_id: str, action_data: Any) -> None:
        """A budget action must point at a live budget of the same group."""
        if self._ledger is None or not isinstance(action_data, BudgetActionData):
            return
        budget = await self._ledger.get_budget(action_data.budget_id)
        if budget is None or not budget.is_live or budget.group_id != group_id:
            raise InvalidActionDefinitionError(
                f"Budget {action_data.budget_id} does not exist in this group",
                [{"field": "action_data.budget_id", "message": "unknown budget"}],
            )

    async def create(
        self,
        request: Union[ScheduledActionRequest, dict],
        group_id: str,
        user_id: str,
        now: datetime,
    ) -> ScheduledAction:
        """
        Validate and store a new scheduled action.

        Args:
            request: Definition, either a model or its wire-shaped dict
            group_id: Group the action materializes entries into
            user_id: Creator
            now: Reference time; the first run is on or after now's date

        Raises:
            InvalidActionDefinitionError: If the definition is invalid
        """
        if not isinstance(request, ScheduledActionRequest):
            try:
                request = ScheduledActionRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidActionDefinitionError.from_validation_error(e) from e

        await self._check_budget(group_id, request.action_data)

        index = first_occurrence_on_or_after(request.start_date, request.frequency, now.date())
        try:
            action = ScheduledAction(
                group_id=group_id,
                user_id=user_id,
                action_type=request.action_type,
                action_data=request.action_data,
                frequency=request.frequency,
                start_date=request.start_date,
                is_active=request.is_active,
                occurrence_index=index,
                next_execution_date=occurrence_date(request.start_date, request.frequency, index),
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise InvalidActionDefinitionError.from_validation_error(e) from e

        await self._storage.insert(action)
        logger.info(
            "scheduled_action_created",
            action_id=action.id,
            group_id=group_id,
            next_execution_date=action.next_execution_date.isoformat(),
        )
        if self._audit_logger:
            await self._audit_logger.log_action_created(
                action_id=action.id,
                group_id=group_id,
                action_type=action.action_type.value,
                frequency=action.frequency.value,
            )
        return action

    async def get(self, action_id: str) -> ScheduledAction:
        """
        Raises:
            NotFoundError: If the action doesn't exist or was deleted
        """
        action = await self._storage.get(action_id)
        if action is None or action.is_deleted:
            raise NotFoundError(f"Scheduled action {action_id} not found")
        return action

    async def list_actions(
        self,
        group_id: str,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> ScheduledActionPage:
        """A page of a group's actions, newest first. Deleted actions are excluded."""
        limit = limit or self._default_page_size
        if offset < 0 or limit < 1:
            raise ValueError("offset must be >= 0 and limit >= 1")

        items = await self._storage.list_for_group(group_id, offset=offset, limit=limit)
        total = await self._storage.count(group_id)
        return ScheduledActionPage(
            items=items,
            total_count=total,
            has_more=offset + len(items) < total,
        )

    async def update(
        self,
        action_id: str,
        changes: Union[ScheduledActionUpdate, dict],
        now: datetime,
    ) -> ScheduledAction:
        """
        Apply a partial update.

        Raises:
            NotFoundError: If the action doesn't exist or was deleted
            InvalidActionDefinitionError: If the change is invalid
            StaleVersionError: If the action kept changing underneath us
        """
        updated, changed = await self._apply_update(action_id, changes, now)

        logger.info("scheduled_action_updated", action_id=action_id, changed=changed)
        if self._audit_logger:
            await self._audit_logger.log_action_updated(
                action_id=action_id,
                group_id=updated.group_id,
                changed_fields=changed,
            )
        return updated

    @retry(
        retry=retry_if_exception_type(StaleVersionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        reraise=True,
    )
    async def _apply_update(
        self,
        action_id: str,
        changes: Union[ScheduledActionUpdate, dict],
        now: datetime,
    ) -> tuple[ScheduledAction, list[str]]:
        current = await self.get(action_id)
        changes = self._parse_changes(current, changes)

        if changes.action_data is not None:
            if changes.action_data.action_type != current.action_type.value:
                raise InvalidActionDefinitionError(
                    f"action_data must be {current.action_type.value} data",
                    [{"field": "action_data", "message": "action type cannot change"}],
                )
            await self._check_budget(current.group_id, changes.action_data)

        start = changes.start_date or current.start_date
        frequency = changes.frequency or current.frequency
        is_active = current.is_active if changes.is_active is None else changes.is_active

        floor_day = now.date()
        if current.last_occurrence_date is not None:
            floor_day = max(floor_day, current.last_occurrence_date + timedelta(days=1))

        index = current.occurrence_index
        if start != current.start_date or frequency != current.frequency:
            index = first_occurrence_on_or_after(start, frequency, floor_day)
        elif is_active and not current.is_active:
            index = max(index, first_occurrence_on_or_after(start, frequency, floor_day))
        if changes.skip_next:
            index += 1

        changed = sorted(
            name for name in changes.model_fields_set
            if name != "skip_next" or changes.skip_next
        )
        updated = current.model_copy(update={
            "is_active": is_active,
            "start_date": start,
            "frequency": frequency,
            "action_data": changes.action_data or current.action_data,
            "occurrence_index": index,
            "next_execution_date": occurrence_date(start, frequency, index),
            "updated_at": now,
        })

        if not await self._storage.update(updated, expected_version=current.version):
            latest = await self._storage.get(action_id)
            if latest is None or latest.is_deleted:
                raise NotFoundError(f"Scheduled action {action_id} not found")
            raise StaleVersionError(action_id, current.version)

        return updated.model_copy(update={
            "version": current.version + 1,
            "claim_token": None,
            "claim_expires_at": None,
        }), changed

    def _parse_changes(
        self,
        current: ScheduledAction,
        changes: Union[ScheduledActionUpdate, dict],
    ) -> ScheduledActionUpdate:
        if isinstance(changes, ScheduledActionUpdate):
            return changes

        data = dict(changes)
        action_data = data.get("action_data")
        if isinstance(action_data, dict) and "action_type" not in action_data:
            data["action_data"] = {**action_data, "action_type": current.action_type.value}
        try:
            return ScheduledActionUpdate.model_validate(data)
        except ValidationError as e:
            raise InvalidActionDefinitionError.from_validation_error(e) from e

    async def delete(self, action_id: str, now: datetime) -> None:
        """
        Soft-delete an action. Terminal; its history stays readable.

        Raises:
            NotFoundError: If the action doesn't exist or was already deleted
        """
        current = await self.get(action_id)
        if not await self._storage.soft_delete(action_id, now):
            raise NotFoundError(f"Scheduled action {action_id} not found")

        logger.info("scheduled_action_deleted", action_id=action_id)
        if self._audit_logger:
            await self._audit_logger.log_action_deleted(
                action_id=action_id,
                group_id=current.group_id,
            )
