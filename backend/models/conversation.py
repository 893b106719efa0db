"""Conversation data models."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)


@dataclass(frozen=True)
class Turn:
    """Represents a single message within a conversation."""
    id: str
    role: str  # "user" or "assistant"
    content: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data["content"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            metadata=data.get("metadata") or {},
        )


@dataclass
class ConversationMetadata:
    """Bookkeeping kept alongside the turns of a conversation."""
    first_turn_time: Optional[datetime] = None
    last_turn_time: Optional[datetime] = None
    turn_count: int = 0
    emotional_profile: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "first_turn_time": self.first_turn_time.isoformat() if self.first_turn_time else None,
            "last_turn_time": self.last_turn_time.isoformat() if self.last_turn_time else None,
            "turn_count": self.turn_count,
            "emotional_profile": self.emotional_profile,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMetadata":
        first = data.get("first_turn_time")
        last = data.get("last_turn_time")
        return cls(
            first_turn_time=datetime.fromisoformat(first) if first else None,
            last_turn_time=datetime.fromisoformat(last) if last else None,
            turn_count=data.get("turn_count", 0),
            emotional_profile=list(data.get("emotional_profile") or []),
        )


@dataclass
class Conversation:
    """Ordered turn history for one sender."""
    sender: str
    turns: List[Turn] = field(default_factory=list)
    metadata: ConversationMetadata = field(default_factory=ConversationMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turns": [turn.to_dict() for turn in self.turns],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, sender: str, data: Dict[str, Any]) -> "Conversation":
        return cls(
            sender=sender,
            turns=[Turn.from_dict(t) for t in data.get("turns", [])],
            metadata=ConversationMetadata.from_dict(data.get("metadata") or {}),
        )
