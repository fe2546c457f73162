"""Record actions: create, update and delete generic tenant records.

Records live in a record store collaborator. The service layer plugs in the
database-backed RecordService; InMemoryRecordStore serves tests and
standalone engine use.
"""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from actions.base_action import ActionContext, BaseAction, require
from core.constants import ActionKind
from core.exceptions import StepExecutionError


class RecordStore(Protocol):
    async def create(self, tenant_id: str, collection: str, data: dict) -> dict: ...

    async def update(self, tenant_id: str, collection: str, record_id: str, data: dict) -> Optional[dict]: ...

    async def delete(self, tenant_id: str, collection: str, record_id: str) -> bool: ...


class InMemoryRecordStore:
    """Dict-backed record store keyed by (tenant, collection, id)."""

    def __init__(self):
        self.records: dict[tuple[str, str, str], dict] = {}

    async def create(self, tenant_id: str, collection: str, data: dict) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        record = {**copy.deepcopy(data), "id": str(uuid.uuid4()), "createdAt": now, "updatedAt": now}
        self.records[(tenant_id, collection, record["id"])] = record
        return copy.deepcopy(record)

    async def update(self, tenant_id: str, collection: str, record_id: str, data: dict) -> Optional[dict]:
        record = self.records.get((tenant_id, collection, record_id))
        if record is None:
            return None
        record.update(copy.deepcopy(data))
        record["id"] = record_id
        record["updatedAt"] = datetime.now(timezone.utc).isoformat()
        return copy.deepcopy(record)

    async def delete(self, tenant_id: str, collection: str, record_id: str) -> bool:
        return self.records.pop((tenant_id, collection, record_id), None) is not None


def _store(context: ActionContext, action_kind: str) -> RecordStore:
    if context.services.record_store is None:
        raise StepExecutionError(f"{action_kind}: no record store configured", step_id=context.step_id)
    return context.services.record_store


def _data(config: Dict[str, Any]) -> dict:
    data = config.get("data")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise StepExecutionError("Record data must be an object")
    return data


class CreateRecordAction(BaseAction):
    """Create a record in ``collection`` from ``data``."""

    action_kind = ActionKind.CREATE_RECORD.value
    display_name = "Create Record"
    description = "Create a record in a collection"

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        collection = str(require(config, "collection", self.action_kind))
        record = await _store(context, self.action_kind).create(
            context.tenant_id, collection, _data(config)
        )
        return {"created": True, "record": record}


class UpdateRecordAction(BaseAction):
    action_kind = ActionKind.UPDATE_RECORD.value
    display_name = "Update Record"
    description = "Update fields of an existing record"

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        collection = str(require(config, "collection", self.action_kind))
        record_id = str(require(config, "recordId", self.action_kind))
        record = await _store(context, self.action_kind).update(
            context.tenant_id, collection, record_id, _data(config)
        )
        if record is None:
            raise StepExecutionError(
                f"update_record: record {record_id} not found in {collection}", step_id=context.step_id
            )
        return {"updated": True, "record": record}


class DeleteRecordAction(BaseAction):
    action_kind = ActionKind.DELETE_RECORD.value
    display_name = "Delete Record"
    description = "Delete a record"

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        collection = str(require(config, "collection", self.action_kind))
        record_id = str(require(config, "recordId", self.action_kind))
        deleted = await _store(context, self.action_kind).delete(context.tenant_id, collection, record_id)
        return {"deleted": deleted, "recordId": record_id}


RECORD_ACTIONS = {
    ActionKind.CREATE_RECORD.value: CreateRecordAction,
    ActionKind.UPDATE_RECORD.value: UpdateRecordAction,
    ActionKind.DELETE_RECORD.value: DeleteRecordAction,
}
