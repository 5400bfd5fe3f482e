"""
Workflow API Client

HTTP client for the workflow service (persist / validate / execute)
and the agent directory service.  Implements every collaborator
interface the editing session needs.

Usage:
    async with WorkflowApiClient() as client:
        agents = await client.list_agents()
        workflow_id = await client.save(backend_definition, "Triage flow")

Errors:
    404 -> NotFoundError, 409 -> ConflictError, any other non-2xx,
    network failure or malformed 2xx body -> CollaboratorError.  The
    server's ``message`` / ``detail`` text (or the raw body) is carried
    on the exception.  Nothing is retried.
"""

from __future__ import annotations

from logging import getLogger
from typing import Any, List, Optional, Type, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from service.config.base import get_config
from service.config.sub_config.general.workflow_config import WorkflowEditorConfig
from service.workflow.collaborators import (
    AgentDirectory,
    ExecutionBackend,
    PersistenceBackend,
    ValidationBackend,
)
from service.workflow.exceptions import (
    ActivationError,
    CollaboratorError,
    ConflictError,
    NotFoundError,
)
from service.workflow.workflow_model import (
    AgentInfo,
    ValidationResult,
    WorkflowDefinition,
    WorkflowSummary,
    WorkflowVersion,
)

logger = getLogger(__name__)

_WORKFLOWS = "/api/v1/workflows"

ModelT = TypeVar("ModelT", bound=BaseModel)


def _error_detail(response: httpx.Response) -> Optional[str]:
    """``message`` or ``detail`` from an error body, else the raw text."""
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        detail = body.get("message") or body.get("detail")
        if detail is not None:
            return detail if isinstance(detail, str) else str(detail)
    return None


def _json(response: httpx.Response, fallback: str, expected: type = object) -> Any:
    """Decode a 2xx body; non-JSON or a body that is not ``expected`` is a CollaboratorError."""
    try:
        data = response.json()
    except ValueError as e:
        logger.error(f"{response.request.method} {response.request.url} returned a non-JSON body")
        raise CollaboratorError(
            f"{fallback}: response is not JSON",
            status_code=response.status_code,
            detail=response.text or None,
        ) from e
    if not isinstance(data, expected):
        logger.error(
            f"{response.request.method} {response.request.url} returned "
            f"{type(data).__name__}, expected {expected.__name__}"
        )
        raise CollaboratorError(
            f"{fallback}: unexpected response shape",
            status_code=response.status_code,
            detail=response.text or None,
        )
    return data


def _parse(model: Type[ModelT], data: Any, fallback: str) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error(f"Malformed {model.__name__} in response: {e}")
        raise CollaboratorError(f"{fallback}: malformed response", detail=str(e)) from e


def _unwrap_list(data: Any, key: str) -> List[Any]:
    """Accept either a bare list or ``{key: [...]}``."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    return []


class WorkflowApiClient(PersistenceBackend, ValidationBackend, ExecutionBackend, AgentDirectory):
    """
    Client for the workflow and agent services.

    Base URLs and timeout default to ``WorkflowEditorConfig``
    (``WORKFLOW_API_URL``, ``AGENT_API_URL``, ``WORKFLOW_API_TIMEOUT``).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        agent_base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Workflow service URL
            agent_base_url: Agent directory service URL
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests use ``httpx.MockTransport``)
        """
        config = get_config(WorkflowEditorConfig)
        self.base_url = (base_url or config.api_base_url).rstrip("/")
        self.agent_base_url = (agent_base_url or config.agent_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else config.request_timeout
        self.client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

        logger.info(
            f"WorkflowApiClient initialized with base_url: {self.base_url}, "
            f"agent_base_url: {self.agent_base_url}"
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "WorkflowApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ========================================================================
    # Transport
    # ========================================================================

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"{method} {url} timed out after {self.timeout}s")
            raise CollaboratorError(f"Request timed out: {method} {url}") from e
        except httpx.RequestError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise CollaboratorError(f"Service unavailable: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, fallback: str) -> None:
        if response.is_success:
            return
        detail = _error_detail(response)
        message = detail or fallback
        status = response.status_code
        logger.error(f"{response.request.method} {response.request.url} -> HTTP {status}: {message}")
        if status == 404:
            raise NotFoundError(message, status_code=status, detail=detail)
        if status == 409:
            raise ConflictError(message, status_code=status, detail=detail)
        raise CollaboratorError(message, status_code=status, detail=detail)

    def _workflow_url(self, path: str = "") -> str:
        return f"{self.base_url}{_WORKFLOWS}{path}"

    # ========================================================================
    # Execution
    # ========================================================================

    async def execute(self, goal: str, definition: WorkflowDefinition) -> str:
        response = await self._request(
            "POST",
            self._workflow_url("/execute"),
            json={
                "goal": goal,
                "use_graph": True,
                "workflow_definition": definition.to_backend_payload(),
            },
        )
        self._raise_for_status(response, "Workflow execution failed")
        run_id = _json(response, "Workflow execution failed", dict).get("run_id")
        if not run_id:
            raise CollaboratorError("Workflow execution response did not include a run_id")
        logger.info(f"Workflow execution started: run_id={run_id}")
        return run_id

    # ========================================================================
    # Persistence
    # ========================================================================

    async def list_workflows(self) -> List[WorkflowSummary]:
        response = await self._request("GET", self._workflow_url("/persist"))
        self._raise_for_status(response, "Failed to list workflows")
        items = _unwrap_list(_json(response, "Failed to list workflows"), "workflows")
        return [_parse(WorkflowSummary, item, "Failed to list workflows") for item in items]

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        response = await self._request(
            "GET", self._workflow_url("/definitions"), params={"workflow_id": workflow_id},
        )
        self._raise_for_status(response, f"Workflow definition not found: {workflow_id}")
        definition = _parse(
            WorkflowDefinition, _json(response, "Failed to load workflow"), "Failed to load workflow",
        )
        if not definition.workflow_id:
            definition.workflow_id = workflow_id
        return definition

    async def save(
        self,
        definition: WorkflowDefinition,
        name: str,
        is_active: bool = False,
    ) -> str:
        response = await self._request(
            "POST",
            self._workflow_url("/definitions"),
            json={"definition": definition.to_backend_payload(), "name": name},
        )
        self._raise_for_status(response, "Failed to save workflow definition")
        data = _json(response, "Failed to save workflow definition", dict)
        if data.get("success") is False:
            raise CollaboratorError(
                data.get("message") or "Failed to save workflow definition",
                detail=data.get("detail"),
            )
        workflow_id = data.get("workflow_id") or definition.workflow_id
        if not workflow_id:
            raise CollaboratorError("Save response did not include a workflow_id")
        logger.info(f"Workflow '{name}' saved as {workflow_id}")

        if is_active:
            try:
                await self.set_active(workflow_id)
            except CollaboratorError as e:
                raise ActivationError(
                    f"Workflow saved but could not be set active: {e.message}",
                    workflow_id=workflow_id,
                    detail=e.detail,
                ) from e
        return workflow_id

    async def get_active(self) -> Optional[WorkflowDefinition]:
        response = await self._request("GET", self._workflow_url("/active"))
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "Failed to load active workflow")
        data = _json(response, "Failed to load active workflow", dict)
        graph = data.get("graph_definition")
        if not graph:
            return None
        definition = _parse(WorkflowDefinition, graph, "Failed to load active workflow")
        if not definition.workflow_id:
            definition.workflow_id = data.get("workflow_id")
        if not definition.name:
            definition.name = data.get("name") or ""
        definition.is_active = True
        return definition

    async def set_active(self, workflow_id: str) -> None:
        response = await self._request(
            "POST", self._workflow_url(f"/{quote(workflow_id, safe='')}/set-active"),
        )
        self._raise_for_status(response, f"Failed to set workflow {workflow_id} active")
        logger.info(f"Workflow {workflow_id} set active")

    async def delete(self, workflow_id: str) -> None:
        response = await self._request(
            "DELETE", self._workflow_url(f"/persist/{quote(workflow_id, safe='')}"),
        )
        self._raise_for_status(response, f"Failed to delete workflow {workflow_id}")
        logger.info(f"Workflow {workflow_id} deleted")

    async def list_versions(self, workflow_id: str) -> List[WorkflowVersion]:
        response = await self._request(
            "GET", self._workflow_url(f"/persist/{quote(workflow_id, safe='')}/versions"),
        )
        self._raise_for_status(response, f"Failed to list versions of {workflow_id}")
        items = _unwrap_list(_json(response, "Failed to list versions"), "versions")
        return [_parse(WorkflowVersion, item, "Failed to list versions") for item in items]

    async def get_version(self, workflow_id: str, version: str) -> WorkflowDefinition:
        response = await self._request(
            "GET",
            self._workflow_url(
                f"/persist/{quote(workflow_id, safe='')}/versions/{quote(version, safe='')}"
            ),
        )
        self._raise_for_status(response, f"Version {version} of {workflow_id} not found")
        data = _json(response, "Failed to load workflow version")
        if isinstance(data, dict) and isinstance(data.get("definition"), dict):
            data = data["definition"]
        definition = _parse(WorkflowDefinition, data, "Failed to load workflow version")
        if not definition.workflow_id:
            definition.workflow_id = workflow_id
        return definition

    # ========================================================================
    # Validation
    # ========================================================================

    async def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        response = await self._request(
            "POST",
            self._workflow_url("/definitions/validate"),
            json=definition.to_backend_payload(),
        )
        if not response.is_success:
            detail = _error_detail(response) or "Validation failed"
            logger.warning(f"Validation service returned HTTP {response.status_code}: {detail}")
            return ValidationResult(valid=False, errors=[detail])
        return _parse(
            ValidationResult, _json(response, "Validation failed", dict), "Validation failed",
        )

    # ========================================================================
    # Agent directory
    # ========================================================================

    async def list_agents(self) -> List[AgentInfo]:
        response = await self._request("GET", f"{self.agent_base_url}/api/agents")
        self._raise_for_status(response, "Failed to load agents")
        items = _unwrap_list(_json(response, "Failed to load agents"), "agents")
        agents = [_parse(AgentInfo, item, "Failed to load agents") for item in items]
        logger.debug(f"Loaded {len(agents)} agents")
        return agents
