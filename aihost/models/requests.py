"""Request models for API endpoints."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from aihost.plugins.models import ConversationMessage


class PluginLoadRequest(BaseModel):
    """Request body for loading a plugin package from a local path."""

    path: str = Field(..., description="Path to a .ai archive or plugin directory")

    @field_validator("path")
    @classmethod
    def path_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("path cannot be empty")
        return v.strip()


class PluginSettingsUpdate(BaseModel):
    """Request body for updating a plugin's settings."""

    settings: Dict[str, Optional[str]]


class PromptRequest(BaseModel):
    """Request body for sending a conversation to a plugin."""

    history: List[ConversationMessage] = Field(..., description="Conversation so far, oldest first")
    model: Optional[str] = Field(None, description="Model id from the plugin's catalog")
    settings: Optional[Dict[str, Optional[str]]] = Field(
        None, description="Override the plugin's stored settings for this call"
    )

    class Config:
        json_schema_extra = {
            "examples": [
                {
                    "summary": "Single question",
                    "value": {
                        "history": [{"role": "user", "content": "Hello!"}],
                        "model": "gpt-4o-mini",
                    },
                }
            ]
        }
