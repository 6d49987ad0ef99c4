"""LangGraph-based execution runtime for capability runs.

 The runtime takes a ``LoadedCapability`` and executes its flow with strong
 guarantees:

 - every task moves through a fail-closed state machine and ends in exactly
   one terminal state,
 - side effects are delegated to injected invokers (``EngineDeps``),
 - parallel branches are isolated until their join.

 The main entry point is ``FlowOrchestrator``; ``TaskDispatcher`` runs single
 tasks and ``ReferenceResolver`` evaluates binding expressions.
 """

from .context import CancelScope, ExecutionContext
from .dispatcher import TaskDispatcher
from .fsm import TaskState, TaskStateMachine
from .models import EngineDeps
from .orchestrator import FlowOrchestrator
from .resolver import ReferenceResolver

__all__ = [
    "CancelScope",
    "EngineDeps",
    "ExecutionContext",
    "FlowOrchestrator",
    "ReferenceResolver",
    "TaskDispatcher",
    "TaskState",
    "TaskStateMachine",
]
