"""
Workflow Store — JSON-file persistence for workflow definitions.

Local implementation of ``PersistenceBackend``.  Each workflow is one
JSON file holding its current backend-form definition, its active
flag and a capped version history.  At most one stored workflow is
active at a time.  Serialized via an asyncio lock; file I/O runs
in a worker thread so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from logging import getLogger
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from service.config.base import get_config
from service.config.sub_config.general.workflow_config import WorkflowEditorConfig
from service.workflow.collaborators import PersistenceBackend
from service.workflow.exceptions import CollaboratorError, ConflictError, NotFoundError
from service.workflow.workflow_model import (
    WorkflowDefinition,
    WorkflowSummary,
    WorkflowVersion,
)

logger = getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StoredVersion(BaseModel):
    version: str
    created_at: str
    description: Optional[str] = None
    definition: WorkflowDefinition


class StoredWorkflow(BaseModel):
    """On-disk record of one workflow."""

    workflow_id: str
    name: str
    description: Optional[str] = None
    is_active: bool = False
    created_at: str
    updated_at: str
    definition: WorkflowDefinition
    versions: List[StoredVersion] = Field(default_factory=list)

    def summary(self) -> WorkflowSummary:
        return WorkflowSummary(
            workflow_id=self.workflow_id,
            name=self.name,
            description=self.description,
            is_active=self.is_active,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def current_definition(self) -> WorkflowDefinition:
        return self.definition.model_copy(
            update={"workflow_id": self.workflow_id, "is_active": self.is_active},
            deep=True,
        )


class WorkflowStore(PersistenceBackend):
    """Persist and load backend-form definitions as JSON files."""

    def __init__(
        self,
        storage_dir: Optional[Path] = None,
        max_versions: Optional[int] = None,
    ) -> None:
        config = get_config(WorkflowEditorConfig)
        self._dir = Path(storage_dir) if storage_dir else config.resolved_storage_dir()
        self._max_versions = max_versions or config.max_version_history
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        logger.info(f"WorkflowStore initialized at {self._dir}")

    # ── PersistenceBackend ──

    async def save(
        self,
        definition: WorkflowDefinition,
        name: str,
        is_active: bool = False,
    ) -> str:
        """Create or update a workflow; each save appends a version."""
        async with self._lock:
            workflow_id, version = await asyncio.to_thread(
                self._save_sync, definition, name, is_active,
            )
        logger.info(f"Workflow saved: {name} ({workflow_id}), version {version}")
        return workflow_id

    async def list_workflows(self) -> List[WorkflowSummary]:
        async with self._lock:
            records = await asyncio.to_thread(self._read_all)
        return [r.summary() for r in records]

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        async with self._lock:
            record = await asyncio.to_thread(self._require, workflow_id)
        return record.current_definition()

    async def get_active(self) -> Optional[WorkflowDefinition]:
        async with self._lock:
            records = await asyncio.to_thread(self._read_all)
        for record in records:
            if record.is_active:
                return record.current_definition()
        return None

    async def set_active(self, workflow_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._set_active_sync, workflow_id)
        logger.info(f"Workflow {workflow_id} set active")

    async def delete(self, workflow_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._delete_sync, workflow_id)
        logger.info(f"Workflow deleted: {workflow_id}")

    async def list_versions(self, workflow_id: str) -> List[WorkflowVersion]:
        async with self._lock:
            record = await asyncio.to_thread(self._require, workflow_id)
        return [
            WorkflowVersion(version=v.version, created_at=v.created_at, description=v.description)
            for v in reversed(record.versions)
        ]

    async def get_version(self, workflow_id: str, version: str) -> WorkflowDefinition:
        async with self._lock:
            record = await asyncio.to_thread(self._require, workflow_id)
        for stored in record.versions:
            if stored.version == str(version):
                return stored.definition.model_copy(
                    update={"workflow_id": workflow_id, "is_active": False}, deep=True,
                )
        raise NotFoundError(
            f"Version {version} of workflow {workflow_id} not found", status_code=404,
        )

    # ── Blocking workers ──

    def _save_sync(
        self, definition: WorkflowDefinition, name: str, is_active: bool,
    ) -> Tuple[str, str]:
        workflow_id = definition.workflow_id or f"wf_{uuid.uuid4().hex[:12]}"

        for other in self._read_all():
            if other.workflow_id != workflow_id and other.name == name:
                raise ConflictError(
                    f"A workflow named '{name}' already exists", status_code=409,
                )

        now = _now()
        body = definition.model_copy(
            update={"workflow_id": workflow_id, "name": name, "is_active": False},
            deep=True,
        )
        record = self._read(workflow_id) if self._path_for(workflow_id).exists() else None
        if record is None:
            record = StoredWorkflow(
                workflow_id=workflow_id,
                name=name,
                description=definition.description or None,
                created_at=now,
                updated_at=now,
                definition=body,
            )
        else:
            record.name = name
            record.description = definition.description or None
            record.updated_at = now
            record.definition = body

        next_version = int(record.versions[-1].version) + 1 if record.versions else 1
        body.version = str(next_version)
        record.versions.append(
            StoredVersion(version=str(next_version), created_at=now, definition=body)
        )
        record.versions = record.versions[-self._max_versions:]

        if is_active:
            self._activate(record)
        self._write(record)
        return workflow_id, body.version

    def _set_active_sync(self, workflow_id: str) -> None:
        record = self._require(workflow_id)
        self._activate(record)
        self._write(record)

    def _delete_sync(self, workflow_id: str) -> None:
        path = self._path_for(workflow_id)
        if not path.exists():
            raise NotFoundError(f"Workflow not found: {workflow_id}", status_code=404)
        path.unlink()

    # ── Internals ──

    def _activate(self, record: StoredWorkflow) -> None:
        """Mark ``record`` active and clear the flag everywhere else."""
        for other in self._read_all():
            if other.is_active and other.workflow_id != record.workflow_id:
                other.is_active = False
                self._write(other)
        record.is_active = True

    def _require(self, workflow_id: str) -> StoredWorkflow:
        if not self._path_for(workflow_id).exists():
            raise NotFoundError(f"Workflow not found: {workflow_id}", status_code=404)
        return self._read(workflow_id)

    def _read(self, workflow_id: str) -> StoredWorkflow:
        path = self._path_for(workflow_id)
        try:
            return StoredWorkflow.model_validate_json(path.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.error(f"Failed to load workflow {workflow_id}: {e}")
            raise CollaboratorError(f"Stored workflow {workflow_id} is unreadable") from e

    def _read_all(self) -> List[StoredWorkflow]:
        records: List[StoredWorkflow] = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                records.append(
                    StoredWorkflow.model_validate_json(path.read_text(encoding="utf-8"))
                )
            except ValueError as e:
                logger.warning(f"Skipping malformed workflow file {path.name}: {e}")
        return records

    def _write(self, record: StoredWorkflow) -> None:
        self._path_for(record.workflow_id).write_text(
            record.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )

    def _path_for(self, workflow_id: str) -> Path:
        # Sanitize ID for filesystem
        safe_id = "".join(c for c in workflow_id if c.isalnum() or c in "-_")
        return self._dir / f"{safe_id}.json"


# ── Singleton ──

_store_instance: Optional[WorkflowStore] = None


def get_workflow_store() -> WorkflowStore:
    """Return the global WorkflowStore singleton."""
    global _store_instance
    if _store_instance is None:
        _store_instance = WorkflowStore()
    return _store_instance
