"""
Pydantic models for todo-sync.

All remote and input data shapes defined here. No imports from services.
"""

from todosync.models.remote import FeedMessage, RemoteRow, normalize_fields, revision_from
from todosync.models.todo import (
    INPUT_MODELS,
    CreateProjectInput,
    CreateTagInput,
    CreateTodoInput,
    UpdateProjectInput,
    UpdateTagInput,
    UpdateTodoInput,
)

__all__ = [
    "RemoteRow",
    "FeedMessage",
    "revision_from",
    "normalize_fields",
    "CreateTodoInput",
    "UpdateTodoInput",
    "CreateProjectInput",
    "UpdateProjectInput",
    "CreateTagInput",
    "UpdateTagInput",
    "INPUT_MODELS",
]
