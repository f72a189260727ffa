"""Pydantic request models for API endpoints."""

from typing import Any

from pydantic import BaseModel


class ChatBody(BaseModel):
    message: str


class UpdateSession(BaseModel):
    title: str | None = None
    pinned: bool | None = None


class QuickStartChoice(BaseModel):
    index: int


class ImportBody(BaseModel):
    data: Any
    overwrite: bool = False


class ContextEntry(BaseModel):
    text: str


class UpdatePreferences(BaseModel):
    theme: str | None = None
    fontSize: str | None = None
    persona: str | None = None
