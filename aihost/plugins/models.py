"""Data exchanged with plugin code: conversation messages and model entries."""

from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from aihost.plugins.errors import InvalidHistory


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConversationMessage(BaseModel):
    """One turn of a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class ModelDescriptor(BaseModel):
    """A model offered by a plugin."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


def normalize_history(history: Iterable[Any]) -> List[ConversationMessage]:
    """Validate a conversation history, keeping order and duplicates as given.

    Accepts ConversationMessage instances or ``{"role", "content"}`` mappings.

    Raises:
        InvalidHistory: a message is malformed or has an unknown role
    """
    if history is None:
        return []
    if isinstance(history, (str, bytes, dict)):
        raise InvalidHistory("Conversation history must be a sequence of messages")

    messages = []
    for index, item in enumerate(history):
        if isinstance(item, ConversationMessage):
            messages.append(item)
            continue
        try:
            messages.append(ConversationMessage.model_validate(item))
        except PydanticValidationError as e:
            raise InvalidHistory(f"Invalid message at index {index}: {e}") from e
    return messages


def history_payload(messages: Iterable[ConversationMessage]) -> List[dict]:
    """Plain-dict form of a history, as handed to plugin code."""
    return [m.model_dump(mode="json") for m in messages]
