"""
Execution engine adapters.

The lifecycle deploys published templates to, and suspends/activates them
in, an external workflow runtime. This module provides:
- ExecutionEngine: the contract the lifecycle depends on
- HttpExecutionEngine: Flowable-style REST client over httpx
- InMemoryExecutionEngine: local engine for development and tests
- GuardedExecutionEngine: bounds every call with a timeout and normalizes
  failures into EngineError / DeploymentError / EngineTimeoutError
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Type

import httpx
from pydantic import BaseModel, Field

from src.templates.errors import DeploymentError, EngineError, EngineTimeoutError
from src.templates.validation import validate_bpmn_xml


logger = logging.getLogger(__name__)


class DeploymentResult(BaseModel):
    """Identifiers returned by a successful deployment."""
    process_definition_id: str = Field(description="Deployed process definition id")
    deployment_id: str = Field(description="Deployment id")


class InstanceCounts(BaseModel):
    """Process instance counters for one process definition."""
    instance_count: int = Field(default=0, ge=0, description="All instances ever started")
    running_instance_count: int = Field(default=0, ge=0, description="Instances still running")


class ExecutionEngine(Protocol):
    """Operations the lifecycle needs from the workflow runtime."""

    def deploy(self, name: str, resource_name: str, bpmn_xml: str, tenant_id: str) -> DeploymentResult:
        ...

    def suspend(self, process_definition_id: str) -> None:
        """Suspend the definition. Succeeds if it is already suspended."""
        ...

    def activate(self, process_definition_id: str) -> None:
        """Activate the definition. Succeeds if it is already active."""
        ...

    def get_instance_counts(self, process_definition_id: str) -> InstanceCounts:
        ...


class HttpExecutionEngine:
    """
    Client for a Flowable-compatible REST API.

    Usage:
        engine = HttpExecutionEngine("http://localhost:8080/flowable-rest/service/")
        result = engine.deploy("Leave request", "leave.bpmn20.xml", xml, "tenant-a")
    """

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        auth = (username, password) if username else None
        self._client = httpx.Client(
            base_url=base_url.rstrip("/") + "/",
            auth=auth,
            timeout=timeout,
            transport=transport,
        )
        self.timeout = timeout

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        error_cls: Type[EngineError] = EngineError,
        ok_statuses: Tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
            if response.status_code in ok_statuses:
                logger.info(f"Engine call {operation} answered HTTP {response.status_code}, treated as done")
                return response
            response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            raise EngineTimeoutError(operation, self.timeout) from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Engine call {operation} failed with HTTP {e.response.status_code}: {e.response.text}")
            raise error_cls(
                f"Execution engine rejected {operation}: HTTP {e.response.status_code}",
                {"operation": operation, "status_code": e.response.status_code, "body": e.response.text},
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Engine call {operation} failed: {e}")
            raise error_cls(
                f"Execution engine unreachable during {operation}: {e}",
                {"operation": operation},
            ) from e

    def deploy(self, name: str, resource_name: str, bpmn_xml: str, tenant_id: str) -> DeploymentResult:
        response = self._request(
            "POST",
            "repository/deployments",
            "deploy",
            DeploymentError,
            files={"file": (resource_name, bpmn_xml.encode("utf-8"), "application/xml")},
            data={"deploymentName": name, "tenantId": tenant_id},
        )
        deployment_id = response.json().get("id")
        if not deployment_id:
            raise DeploymentError("Deployment response carried no id", {"operation": "deploy"})

        definitions = self._request(
            "GET",
            "repository/process-definitions",
            "deploy",
            DeploymentError,
            params={"deploymentId": deployment_id},
        ).json().get("data") or []
        if not definitions:
            raise DeploymentError(
                f"Deployment {deployment_id} produced no process definition",
                {"operation": "deploy", "deployment_id": deployment_id},
            )

        logger.info(f"Deployed {resource_name} as {definitions[0]['id']} (deployment {deployment_id})")
        return DeploymentResult(
            process_definition_id=definitions[0]["id"],
            deployment_id=deployment_id,
        )

    def _set_state(self, process_definition_id: str, action: str) -> None:
        # Flowable answers 409 when the definition is already in the requested state.
        self._request(
            "PUT",
            f"repository/process-definitions/{process_definition_id}",
            action,
            ok_statuses=(409,),
            json={"action": action, "includeProcessInstances": False},
        )
        logger.info(f"Engine {action}: {process_definition_id}")

    def suspend(self, process_definition_id: str) -> None:
        self._set_state(process_definition_id, "suspend")

    def activate(self, process_definition_id: str) -> None:
        self._set_state(process_definition_id, "activate")

    def _total(self, path: str, process_definition_id: str) -> int:
        response = self._request(
            "GET",
            path,
            "get_instance_counts",
            params={"processDefinitionId": process_definition_id, "size": 0},
        )
        return int(response.json().get("total", 0))

    def get_instance_counts(self, process_definition_id: str) -> InstanceCounts:
        return InstanceCounts(
            instance_count=self._total("history/historic-process-instances", process_definition_id),
            running_instance_count=self._total("runtime/process-instances", process_definition_id),
        )


class _Definition:
    __slots__ = ("deployment_id", "suspended", "instance_count", "running_instance_count")

    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        self.suspended = False
        self.instance_count = 0
        self.running_instance_count = 0


class InMemoryExecutionEngine:
    """
    Engine that keeps deployments in memory.

    Process definition ids follow the ``<process id>:<version>:<deployment id>``
    shape, with versions counted per (tenant, process id).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._definitions: Dict[str, _Definition] = {}
        self._versions: Dict[tuple, int] = {}

    def deploy(self, name: str, resource_name: str, bpmn_xml: str, tenant_id: str) -> DeploymentResult:
        result = validate_bpmn_xml(bpmn_xml)
        if not result.is_valid:
            raise DeploymentError(f"Cannot deploy {resource_name}", {"errors": result.errors})

        deployment_id = str(uuid.uuid4())
        with self._lock:
            version_key = (tenant_id, result.process_id)
            version = self._versions.get(version_key, 0) + 1
            self._versions[version_key] = version
            definition_id = f"{result.process_id}:{version}:{deployment_id}"
            self._definitions[definition_id] = _Definition(deployment_id)

        logger.info(f"Deployed {resource_name} in memory as {definition_id}")
        return DeploymentResult(process_definition_id=definition_id, deployment_id=deployment_id)

    def _definition(self, process_definition_id: str) -> _Definition:
        definition = self._definitions.get(process_definition_id)
        if definition is None:
            raise EngineError(
                f"Process definition not found: {process_definition_id}",
                {"process_definition_id": process_definition_id},
            )
        return definition

    def suspend(self, process_definition_id: str) -> None:
        with self._lock:
            self._definition(process_definition_id).suspended = True

    def activate(self, process_definition_id: str) -> None:
        with self._lock:
            self._definition(process_definition_id).suspended = False

    def is_suspended(self, process_definition_id: str) -> bool:
        with self._lock:
            return self._definition(process_definition_id).suspended

    def set_instance_counts(self, process_definition_id: str, instance_count: int, running_instance_count: int) -> None:
        with self._lock:
            definition = self._definition(process_definition_id)
            definition.instance_count = instance_count
            definition.running_instance_count = running_instance_count

    def get_instance_counts(self, process_definition_id: str) -> InstanceCounts:
        with self._lock:
            definition = self._definition(process_definition_id)
            return InstanceCounts(
                instance_count=definition.instance_count,
                running_instance_count=definition.running_instance_count,
            )


class GuardedExecutionEngine:
    """
    Wraps an engine so no call blocks longer than ``timeout_seconds``.

    Calls run on a small worker pool. When the deadline passes the caller
    gets EngineTimeoutError while the worker is left to finish on its own.
    Any other failure surfaces as EngineError (DeploymentError for deploy).
    """

    def __init__(self, engine: ExecutionEngine, timeout_seconds: float = 10.0, max_workers: int = 4):
        self.engine = engine
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="engine")

    def _call(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        error_cls: Type[EngineError] = EngineError,
    ) -> Any:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as e:
            future.cancel()
            logger.error(f"Engine call {operation} timed out after {self.timeout_seconds}s")
            raise EngineTimeoutError(operation, self.timeout_seconds) from e
        except EngineTimeoutError:
            raise
        except EngineError as e:
            if isinstance(e, error_cls):
                raise
            raise error_cls(e.message, e.details) from e
        except Exception as e:
            logger.error(f"Engine call {operation} failed: {e}")
            raise error_cls(
                f"Execution engine call '{operation}' failed: {e}",
                {"operation": operation},
            ) from e

    def deploy(self, name: str, resource_name: str, bpmn_xml: str, tenant_id: str) -> DeploymentResult:
        return self._call(
            "deploy", self.engine.deploy, name, resource_name, bpmn_xml, tenant_id,
            error_cls=DeploymentError,
        )

    def suspend(self, process_definition_id: str) -> None:
        self._call("suspend", self.engine.suspend, process_definition_id)

    def activate(self, process_definition_id: str) -> None:
        self._call("activate", self.engine.activate, process_definition_id)

    def get_instance_counts(self, process_definition_id: str) -> InstanceCounts:
        return self._call("get_instance_counts", self.engine.get_instance_counts, process_definition_id)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
