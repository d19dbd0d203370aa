from .attachments import Attachment, SplitInput, split_attachments
from .context import TurnContext
from .group_director import GroupDialogueDirector, SpeakerTurn, parse_plan
from .orchestrator import (
    AgentOrchestrator,
    MostRecentActivitySelector,
    TurnResult,
    WeightedRecencySelector,
    build_selector,
)
from .tool_loop import ToolExecutionLoop

__all__ = [
    "AgentOrchestrator",
    "Attachment",
    "GroupDialogueDirector",
    "MostRecentActivitySelector",
    "SpeakerTurn",
    "SplitInput",
    "ToolExecutionLoop",
    "TurnContext",
    "TurnResult",
    "WeightedRecencySelector",
    "build_selector",
    "parse_plan",
    "split_attachments",
]
