from .engine import EmotionEngine, EmotionSnapshot, PersonaState, active_personas, effective_affection
from .rules import AFFECTION_RULES, MOOD_RULES, TRUST_RULES, RelationshipRule, rule_by_score

__all__ = [
    "AFFECTION_RULES",
    "MOOD_RULES",
    "TRUST_RULES",
    "EmotionEngine",
    "EmotionSnapshot",
    "PersonaState",
    "RelationshipRule",
    "active_personas",
    "effective_affection",
    "rule_by_score",
]
