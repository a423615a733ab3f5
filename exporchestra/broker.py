"""
Tool Broker - dispatch of side-effecting artifact operations.

The runtime never creates artifacts itself. For each step that may
proceed it hands a ToolRequest to the broker, which routes it to the
handler registered for the step's artifact type.

Handlers raise ToolError to report failures:
- ToolError(transient=True): safe to retry (store unavailable, rate limit)
- ToolError(transient=False): permanent (bad payload, unsupported type)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from exporchestra.contracts import ContractRegistry
from exporchestra.errors import ToolError, UnknownStatusMapping
from exporchestra.schemas import ArtifactReference
from exporchestra.store import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolRequest:
    """
    One side-effecting operation requested by a step.

    Attributes:
        artifact_type: Artifact type to create
        inputs: Resolved step inputs (artifact payload)
        artifact_name: Name of the artifact
        target_status: Raw status the artifact is created with
        step_id: Requesting step (for logging)
        signature: Step signature (for logging)
    """
    artifact_type: str
    inputs: dict[str, Any] = field(default_factory=dict)
    artifact_name: Optional[str] = None
    target_status: str = "draft"
    step_id: Optional[str] = None
    signature: Optional[str] = None


class ToolHandler(ABC):
    """
    Abstract base class for tool handlers.

    Handlers receive a ToolRequest and return a reference to the artifact
    they persisted.
    """

    @abstractmethod
    def execute(self, request: ToolRequest) -> ArtifactReference:
        """
        Execute a tool request.

        Args:
            request: The ToolRequest to execute

        Returns:
            Reference to the created artifact

        Raises:
            ToolError: If the operation fails
        """
        pass


class CreateArtifactHandler(ToolHandler):
    """
    Persist an artifact through an ArtifactStore.

    The raw target status is normalized with the contract registry; the
    stored record keeps both the raw and the canonical status.
    """

    def __init__(self, store: ArtifactStore, contracts: Optional[ContractRegistry] = None):
        self._store = store
        self._contracts = contracts or ContractRegistry.default()

    def execute(self, request: ToolRequest) -> ArtifactReference:
        try:
            status = self._contracts.normalize_status(request.target_status, request.artifact_type)
        except UnknownStatusMapping as e:
            raise ToolError(str(e), transient=False) from e
        try:
            return self._store.create(
                request.artifact_type,
                payload=dict(request.inputs),
                name=request.artifact_name,
                status=status,
                raw_status=request.target_status,
            )
        except OSError as e:
            raise ToolError(f"Artifact store unavailable: {e}", transient=True) from e


class ToolBroker:
    """
    Registry of tool handlers keyed by artifact type.

    Usage:
        broker = ToolBroker()
        broker.register("event", CreateArtifactHandler(store))

        ref = broker.invoke("event", {"title": "Launch"}, artifact_name="Launch")

        # Or register a store-backed handler for every contract type
        broker = ToolBroker.create_default(store)
    """

    def __init__(self) -> None:
        """Initialize an empty broker."""
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, artifact_type: str, handler: ToolHandler) -> None:
        """
        Register a handler for an artifact type.

        Args:
            artifact_type: Artifact type name
            handler: Handler instance for this type
        """
        self._handlers[artifact_type] = handler

    def get(self, artifact_type: str) -> ToolHandler:
        """
        Get the handler for an artifact type.

        Raises:
            KeyError: If no handler is registered for this type
        """
        if artifact_type not in self._handlers:
            registered = list(self._handlers.keys())
            raise KeyError(
                f"No handler registered for artifact type: {artifact_type}. "
                f"Registered: {registered}"
            )
        return self._handlers[artifact_type]

    def has(self, artifact_type: str) -> bool:
        return artifact_type in self._handlers

    def list_artifact_types(self) -> list[str]:
        return list(self._handlers.keys())

    def dispatch(self, request: ToolRequest) -> ArtifactReference:
        """
        Dispatch a request to the handler of its artifact type.

        Raises:
            ToolError: Unknown artifact type (permanent) or handler failure
        """
        if not self.has(request.artifact_type):
            raise ToolError(
                f"No tool available for artifact type '{request.artifact_type}'",
                transient=False,
            )
        logger.debug(
            f"Invoking tool for {request.artifact_type}",
            extra={"stage": "execute", "event": "tool_invoke", "metadata": {
                "step_id": request.step_id,
                "artifact_type": request.artifact_type,
            }},
        )
        return self.get(request.artifact_type).execute(request)

    def invoke(
        self,
        artifact_type: str,
        inputs: dict[str, Any],
        artifact_name: Optional[str] = None,
        target_status: str = "draft",
    ) -> ArtifactReference:
        """Build a ToolRequest and dispatch it."""
        return self.dispatch(ToolRequest(
            artifact_type=artifact_type,
            inputs=inputs,
            artifact_name=artifact_name,
            target_status=target_status,
        ))

    @classmethod
    def create_default(
        cls,
        store: ArtifactStore,
        contracts: Optional[ContractRegistry] = None,
    ) -> "ToolBroker":
        """
        Create a broker with a store-backed handler for every registered type.

        Args:
            store: ArtifactStore the handlers persist to
            contracts: Contract registry (default registry if None)

        Returns:
            Configured ToolBroker
        """
        contracts = contracts or ContractRegistry.default()
        broker = cls()
        handler = CreateArtifactHandler(store, contracts)
        for artifact_type in contracts.artifact_types:
            broker.register(artifact_type, handler)
        return broker
