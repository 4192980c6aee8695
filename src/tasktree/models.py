"""
Pydantic models for Task Tree API request/response validation.

Request bodies are validated structurally here (unknown types and missing
required fields become 422); business rules such as color format or parent
ownership are enforced by the repositories and surface as 400.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator
from pydantic.networks import validate_email

from .exceptions import BadRequestError
from .patch import PatchModel

MIN_PASSWORD_LENGTH = 4


# Lists


class ListCreate(BaseModel):
    """Request model for creating a list."""

    title: str = Field(..., max_length=500, description="List title")
    description: Optional[str] = Field(None, description="Free-form description")
    color: str = Field(..., description="Six digit hex color, e.g. #ffaa00")
    parent_id: Optional[UUID] = Field(None, description="Parent list ID for hierarchy")


class ListPatch(PatchModel):
    """Partial update for a list; omitted keys are left unchanged."""

    title: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None
    color: Optional[str] = None
    parent_id: Optional[UUID] = None


# Tasks


class TaskCreate(BaseModel):
    """Request model for creating a task."""

    list_id: UUID = Field(..., description="Owning list ID")
    parent_id: Optional[UUID] = Field(None, description="Parent task ID for hierarchy")
    due_at: datetime = Field(..., description="Due timestamp")
    due_text: str = Field(..., description="Free-form due description, e.g. 'tomorrow'")
    completed: Optional[bool] = Field(None, description="Defaults to false")
    title: str = Field(..., max_length=500, description="Task title")
    description: Optional[str] = None


class TaskPatch(PatchModel):
    """Partial update for a task; omitted keys are left unchanged."""

    list_id: Optional[UUID] = None
    parent_id: Optional[UUID] = None
    due_at: Optional[datetime] = None
    due_text: Optional[str] = None
    completed: Optional[bool] = None
    title: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None


# Labels


class LabelCreate(BaseModel):
    """Request model for creating a label."""

    title: str = Field(..., max_length=200, description="Label title")
    description: Optional[str] = None
    color: str = Field(..., description="Six digit hex color")


class LabelPatch(PatchModel):
    """Partial update for a label."""

    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    color: Optional[str] = None


class LabelAttach(BaseModel):
    """Body of ``POST /tasks/{id}/labels``."""

    id: UUID = Field(..., description="Label ID to attach")


# Accounts


class EmailLogin(BaseModel):
    email: str
    password: str


class EmailRegistration(BaseModel):
    """Request model for email registration."""

    email: str
    password: str
    username: str

    @field_validator("username")
    @classmethod
    def strip_username(cls, v):
        return v.strip()

    def validate_rules(self) -> None:
        """
        Check the business rules the schema cannot express.

        Raises:
            BadRequestError: invalid email, short password or empty username
        """
        try:
            validate_email(self.email)
        except ValueError:
            raise BadRequestError("Email is not valid.")
        if len(self.password) < MIN_PASSWORD_LENGTH:
            raise BadRequestError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
            )
        if not self.username:
            raise BadRequestError("Username cannot be empty.")


class DiscordLogin(BaseModel):
    access_token: str = Field(..., min_length=1)


# Responses


class PostResponse(BaseModel):
    """Response for a successful create."""

    id: str


class SessionPayload(BaseModel):
    user_id: str
    session_token: str


class PageResponse(BaseModel):
    """One page of a resource listing."""

    items: List[Dict[str, Any]]
    limit: int
    page: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    success: bool = False
    error: str
    code: Optional[int] = None
    details: Optional[Dict[str, Any]] = None


class SuccessResponse(BaseModel):
    """Standard success response model."""

    success: bool = True
    message: str
    data: Optional[Dict[str, Any]] = None


def create_error_response(
    message: str, code: Optional[int] = None, details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    return {"success": False, "error": message, "code": code, "details": details}


def create_success_response(message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Create a standardized success response dictionary."""
    return {"success": True, "message": message, "data": data}
