"""Base class shared by every coordination protocol."""

from __future__ import annotations

import logging
from typing import Annotated, Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..collaborators import Collaborators
from ..config import StepwiseConfig
from ..contracts import RunStatus, UnknownQuery
from ..context import WorkflowContext

logger = logging.getLogger(__name__)


class Completion(BaseModel):
    """What a run reports when its coordination logic finishes."""

    status: RunStatus
    result: Dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    compensated: Optional[bool] = None
    unresolved_compensations: List[str] = Field(default_factory=list)


class Workflow:
    """One protocol's coordination logic over typed input and state.

    Subclasses declare ``kind``, ``query_type``, ``input_model``,
    ``state_model`` and the closed set of ``signal_types`` they accept.
    """

    kind: ClassVar[str]
    query_type: ClassVar[str]
    input_model: ClassVar[Type[BaseModel]]
    state_model: ClassVar[Type[BaseModel]]
    signal_types: ClassVar[Tuple[Type[BaseModel], ...]] = ()

    _adapter_cache: ClassVar[Dict[type, Optional[TypeAdapter]]] = {}

    def __init__(
        self,
        input: Dict[str, Any] | BaseModel,
        collaborators: Collaborators,
        config: StepwiseConfig,
        state: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.input = self.input_model.model_validate(
            input.model_dump() if isinstance(input, BaseModel) else input
        )
        self.collaborators = collaborators
        self.config = config
        self.state = (
            self.state_model.model_validate(state) if state else self.initial_state()
        )

    def initial_state(self) -> BaseModel:
        return self.state_model()

    @property
    def phase(self) -> str:
        return self.state.phase

    async def run(self, ctx: WorkflowContext) -> Completion:
        raise NotImplementedError

    async def enter(self, ctx: WorkflowContext, phase: str) -> None:
        """Move to ``phase`` and persist."""
        self.state.phase = phase
        await ctx.checkpoint()

    def fail(self, reason: str) -> None:
        """Record a failure the protocol itself did not handle."""
        self.state.phase = "failed"
        self.state.failure_reason = reason

    async def audit(
        self,
        ctx: WorkflowContext,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        **metadata: Any,
    ) -> None:
        """Append an audit entry; never fails the run."""
        if self.collaborators.audit is None:
            return
        await ctx.fire_and_forget(
            f"audit:{action}",
            self.collaborators.audit.append,
            actor_id,
            action,
            resource_type,
            resource_id,
            metadata,
        )

    # ------------------------------------------------------------------
    # Signals and queries
    @classmethod
    def signal_adapter(cls) -> Optional[TypeAdapter]:
        if cls not in cls._adapter_cache:
            if not cls.signal_types:
                adapter = None
            elif len(cls.signal_types) == 1:
                adapter = TypeAdapter(cls.signal_types[0])
            else:
                adapter = TypeAdapter(
                    Annotated[Union[cls.signal_types], Field(discriminator="type")]
                )
            cls._adapter_cache[cls] = adapter
        return cls._adapter_cache[cls]

    @classmethod
    def parse_signal(cls, signal_type: str, payload: Optional[Dict[str, Any]] = None) -> Optional[BaseModel]:
        """Validate a raw signal into this protocol's signal union."""
        adapter = cls.signal_adapter()
        if adapter is None:
            return None
        try:
            return adapter.validate_python({**(payload or {}), "type": signal_type})
        except ValidationError as e:
            logger.debug(f"Ignoring signal {signal_type} for {cls.kind}: {e}")
            return None

    def handle_signal(self, signal: BaseModel) -> bool:
        """Apply ``signal`` to state. Returns ``True`` if state changed."""
        return False

    def snapshot(self) -> Dict[str, Any]:
        return self.state.model_dump(mode="json")

    def query(self, query_type: str) -> Dict[str, Any]:
        if query_type != self.query_type:
            raise UnknownQuery(f"{self.kind} runs do not answer {query_type}")
        return self.snapshot()
