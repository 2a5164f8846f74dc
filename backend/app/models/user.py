"""User model for authentication and authorization."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from app.core.clock import utc_now


class UserBase(SQLModel):
    """Base user fields."""

    email: str = Field(unique=True, index=True)
    name: str
    is_active: bool = Field(default=True)
    # Investigator capability: cross-workspace audit query and verification
    is_super_admin: bool = Field(default=False)


class User(UserBase, table=True):
    """User database model."""

    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    hashed_password: str
    created_at: datetime = Field(default_factory=utc_now)


class UserRead(UserBase):
    """Schema for reading a user."""

    id: int
    created_at: datetime
