from .long_term import EpisodicMemory, LongTermMemory
from .persona_memory import FactRecall, PersonaMemoryEngine
from .store import MemoryStore
from .vector_recall import VectorRecallBridge

__all__ = [
    "EpisodicMemory",
    "FactRecall",
    "LongTermMemory",
    "MemoryStore",
    "PersonaMemoryEngine",
    "VectorRecallBridge",
]
