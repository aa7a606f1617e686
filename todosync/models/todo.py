"""Typed inputs for the three collections: todos, projects, tags."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

TodoStatus = Literal["todo", "in_progress", "done", "cancelled"]
TodoPriority = Literal["low", "medium", "high", "urgent"]


class _Input(BaseModel):
    model_config = {"extra": "forbid"}

    def to_fields(self) -> dict[str, Any]:
        """Fields for the remote store: only what the caller set, JSON-ready."""
        return self.model_dump(mode="json", exclude_unset=True)


class CreateTodoInput(_Input):
    """What the UI sends to create a todo."""

    title: str = Field(min_length=1, max_length=500)
    project_id: str
    description: str | None = None
    status: TodoStatus = "todo"
    priority: TodoPriority = "medium"
    due_date: date | None = None
    scheduled_date: date | None = None
    tag_ids: list[str] = Field(default_factory=list)
    display_order: int = 0

    def to_fields(self) -> dict[str, Any]:
        # defaults matter on create: the optimistic record must look like the server's
        return self.model_dump(mode="json")


class UpdateTodoInput(_Input):
    """Partial todo update. Unset fields are left alone; None clears a date."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    status: TodoStatus | None = None
    priority: TodoPriority | None = None
    due_date: date | None = None
    scheduled_date: date | None = None
    completed_at: datetime | None = None
    project_id: str | None = None
    tag_ids: list[str] | None = None
    display_order: int | None = None


class CreateProjectInput(_Input):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    color: str | None = None
    icon: str | None = None
    is_archived: bool = False
    display_order: int = 0

    def to_fields(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class UpdateProjectInput(_Input):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    color: str | None = None
    icon: str | None = None
    is_archived: bool | None = None
    display_order: int | None = None


class CreateTagInput(_Input):
    name: str = Field(min_length=1, max_length=50)
    color: str = "#6b7280"

    def to_fields(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class UpdateTagInput(_Input):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    color: str | None = None


INPUT_MODELS: dict[str, tuple[type[_Input], type[_Input]]] = {
    "todos": (CreateTodoInput, UpdateTodoInput),
    "projects": (CreateProjectInput, UpdateProjectInput),
    "tags": (CreateTagInput, UpdateTagInput),
}
