"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from pydantic import BaseModel, Field
from typing import Any, List, Optional


class RegisterIn(BaseModel):
    """Payload for self-registration."""
    email: str
    password: str
    first_name: str = ""
    last_name: str = ""
    role: str = "participant"


class LoginIn(BaseModel):
    """Payload for the login endpoint."""
    email: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str
    token_type: str = "bearer"
    user: dict


class ProfileUpdate(BaseModel):
    """Self-service profile changes; omitted fields are left as they are."""
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class BlockIn(BaseModel):
    """A block as submitted by researchers. `id` is set when editing an existing block."""
    id: Optional[int] = None
    type: str
    title: Optional[str] = None
    description: Optional[str] = None
    settings: dict = Field(default_factory=dict)


class StudyCreate(BaseModel):
    """Request body for creating a study."""
    title: str
    description: str = ""
    study_type: str = "usability"
    target_participants: int = Field(default=10, ge=1)
    settings: dict = Field(default_factory=dict)
    blocks: List[BlockIn] = Field(default_factory=list)


class StudyUpdate(BaseModel):
    """Partial update; omitted fields are left untouched."""
    title: Optional[str] = None
    description: Optional[str] = None
    study_type: Optional[str] = None
    target_participants: Optional[int] = Field(default=None, ge=1)
    settings: Optional[dict] = None
    blocks: Optional[List[BlockIn]] = None


class StatusChange(BaseModel):
    status: str


class ApplicationIn(BaseModel):
    """Screening answers submitted with an application."""
    responses: dict = Field(default_factory=dict)


class ApplicationReview(BaseModel):
    status: str
    notes: Optional[str] = None


class BlockResponseIn(BaseModel):
    """A participant's answer to a single block."""
    block_id: int
    response: Any = None
    time_spent: float = 0.0
    is_last_block: bool = False
    metadata: dict = Field(default_factory=dict)


class PointsAssign(BaseModel):
    target_user_id: Optional[int] = None
    user_email: Optional[str] = None
    amount: int
    reason: Optional[str] = None
    expires_in_days: Optional[int] = Field(default=None, ge=1)


class PointsConsume(BaseModel):
    amount: int
    study_id: Optional[int] = None
    reason: Optional[str] = None


class TemplateCreate(BaseModel):
    title: str
    description: str = ""
    category: str = "general"
    study_type: str = "usability"
    is_public: bool = True
    blocks: List[BlockIn] = Field(default_factory=list)


class UseTemplateIn(BaseModel):
    title: Optional[str] = None


class ReviewIn(BaseModel):
    rating: int
    comment: str
    title: str = ""
    usage_context: str = ""
    organization_size: str = ""


class ReviewUpdate(BaseModel):
    rating: Optional[int] = None
    comment: Optional[str] = None
    title: Optional[str] = None
    usage_context: Optional[str] = None
    organization_size: Optional[str] = None


class AdminUserCreate(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str
    role: str = "participant"


class AdminUserUpdate(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None


class BulkUserAction(BaseModel):
    """Apply one action to many users; `data` carries action arguments (e.g. role)."""
    user_ids: List[int]
    action: str
    data: dict = Field(default_factory=dict)
