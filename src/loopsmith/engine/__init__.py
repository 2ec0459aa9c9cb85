"""
engine — the turn-level agent execution engine.

    from loopsmith.engine import PhaseController, StageModels
"""

from loopsmith.engine.checkpoint import CheckpointStore, InMemoryCheckpointStore
from loopsmith.engine.context import SessionContext
from loopsmith.engine.controller import PhaseController
from loopsmith.engine.dedup import DeduplicationGuard
from loopsmith.engine.events import EventDispatcher, EventType
from loopsmith.engine.policy import CorrectionAction, ToolFailure
from loopsmith.engine.stages import CorrectionContext, Stage, StageModels, StagePrompt, StageRunner
from loopsmith.engine.types import CompletionStatus, ToolResult, TurnResult

__all__ = [
    "CheckpointStore",
    "CompletionStatus",
    "CorrectionAction",
    "CorrectionContext",
    "DeduplicationGuard",
    "EventDispatcher",
    "EventType",
    "InMemoryCheckpointStore",
    "PhaseController",
    "SessionContext",
    "Stage",
    "StageModels",
    "StagePrompt",
    "StageRunner",
    "ToolFailure",
    "ToolResult",
    "TurnResult",
]
