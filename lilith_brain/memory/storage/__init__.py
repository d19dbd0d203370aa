from .episodic import MemoryEpisodicMixin
from .facts import MemoryFactsMixin
from .history import MemoryHistoryMixin
from .relationships import MemoryRelationshipsMixin
from .schema import MemorySchemaMixin
from .vectors import MemoryVectorsMixin

__all__ = [
    "MemorySchemaMixin",
    "MemoryRelationshipsMixin",
    "MemoryHistoryMixin",
    "MemoryFactsMixin",
    "MemoryEpisodicMixin",
    "MemoryVectorsMixin",
]
