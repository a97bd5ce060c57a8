"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table; free-form payloads (block settings, response
data, screening answers) are stored in JSON columns.
"""

from typing import Any, Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


USER_ROLES = ("participant", "researcher", "admin")
USER_STATUSES = ("active", "suspended")
STUDY_STATUSES = ("draft", "active", "paused", "completed", "archived")
STUDY_TYPES = ("usability", "survey", "interview", "card_sort", "tree_test", "unmoderated")
APPLICATION_STATUSES = ("pending", "accepted", "rejected", "withdrawn")


class User(SQLModel, table=True):
    """A registered account.

    Fields:
    - `email`: unique login name (stored lower-cased)
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: one of participant, researcher, admin
    - `status`: active or suspended; suspended users cannot log in
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    role: str = Field(default="participant", index=True)
    status: str = Field(default="active", index=True)
    last_login_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Study(SQLModel, table=True):
    """A researcher-authored study made of ordered blocks."""
    id: Optional[int] = Field(default=None, primary_key=True)
    researcher_id: int = Field(foreign_key='user.id', index=True)
    title: str
    description: str = ""
    study_type: str = "usability"
    status: str = Field(default="draft", index=True)
    target_participants: int = 10
    settings: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StudyBlock(SQLModel, table=True):
    """A single block of a study. `position` orders blocks inside the study."""
    id: Optional[int] = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key='study.id', index=True)
    position: int = 0
    block_type: str
    title: str = ""
    description: str = ""
    settings: dict = Field(default_factory=dict, sa_column=Column(JSON))


class StudyApplication(SQLModel, table=True):
    """A participant's request to take part in a study."""
    id: Optional[int] = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key='study.id', index=True)
    participant_id: int = Field(foreign_key='user.id', index=True)
    status: str = Field(default="pending", index=True)
    application_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    notes: Optional[str] = None
    applied_at: datetime = Field(default_factory=utcnow)
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = Field(default=None, foreign_key='user.id')


class StudySession(SQLModel, table=True):
    """One participant's run through a study."""
    id: Optional[int] = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key='study.id', index=True)
    participant_id: int = Field(foreign_key='user.id', index=True)
    status: str = Field(default="active", index=True)
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class BlockResponse(SQLModel, table=True):
    """A participant's answer to one block inside a session.

    `response` holds the block-type specific payload; at most one row
    exists per (session, block) pair.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key='studysession.id', index=True)
    block_id: int = Field(foreign_key='studyblock.id', index=True)
    block_type: str
    response: Any = Field(default=None, sa_column=Column(JSON))
    time_spent: float = 0.0
    response_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Recording(SQLModel, table=True):
    """Screen or audio capture uploaded for a session."""
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key='studysession.id', index=True)
    study_id: int = Field(foreign_key='study.id', index=True)
    participant_id: int = Field(foreign_key='user.id', index=True)
    filename: str
    content_type: str
    size_bytes: int
    duration_seconds: Optional[float] = None
    storage_path: str
    created_at: datetime = Field(default_factory=utcnow)


class PointsBalance(SQLModel, table=True):
    """Running points totals per user."""
    user_id: int = Field(foreign_key='user.id', primary_key=True)
    total_points: int = 0
    available_points: int = 0
    used_points: int = 0
    expired_points: int = 0
    last_updated: datetime = Field(default_factory=utcnow)


class PointsTransaction(SQLModel, table=True):
    """Ledger entry. `amount` is signed; `balance` is available points after the entry."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    tx_type: str = Field(index=True)
    amount: int
    balance: int
    reason: str = ""
    assigned_by: Optional[int] = Field(default=None, foreign_key='user.id')
    study_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    expiry_processed: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Template(SQLModel, table=True):
    """A community study template that can be turned into a new study."""
    id: Optional[int] = Field(default=None, primary_key=True)
    author_id: int = Field(foreign_key='user.id', index=True)
    title: str
    description: str = ""
    category: str = Field(default="general", index=True)
    study_type: str = "usability"
    blocks: list = Field(default_factory=list, sa_column=Column(JSON))
    is_public: bool = True
    average_rating: float = 0.0
    review_count: int = 0
    usage_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TemplateReview(SQLModel, table=True):
    """A rating and comment left on a template; one per reviewer."""
    id: Optional[int] = Field(default=None, primary_key=True)
    template_id: int = Field(foreign_key='template.id', index=True)
    reviewer_id: int = Field(foreign_key='user.id', index=True)
    reviewer_name: str
    rating: int
    title: str = ""
    comment: str
    usage_context: str = ""
    organization_size: str = ""
    helpful_count: int = 0
    is_approved: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
