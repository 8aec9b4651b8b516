"""Request bodies and response projections for auth, user and admin endpoints."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ums.models.user import User, UserRole, UserStatus

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]")
PASSWORD_RULE = (
    "Password must contain at least one uppercase letter, one lowercase letter, "
    "one number, and one special character"
)


def _normalize_email(value: str) -> str:
    value = (value or "").strip().lower()
    if not EMAIL_RE.match(value):
        raise ValueError("Invalid email address")
    return value


def _check_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if not PASSWORD_RE.match(value):
        raise ValueError(PASSWORD_RULE)
    return value


Email = Annotated[str, AfterValidator(_normalize_email)]
StrongPassword = Annotated[str, AfterValidator(_check_password_strength)]


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterBody(_Body):
    name: str = Field(min_length=2, max_length=50)
    email: Email
    password: StrongPassword
    confirm_password: str = Field(alias="confirmPassword")
    phone: str | None = None

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v: str, info: ValidationInfo) -> str:
        if "password" in info.data and v != info.data["password"]:
            raise ValueError("Passwords don't match")
        return v


class LoginBody(_Body):
    email: Email
    password: str = Field(min_length=1)


class EmailBody(_Body):
    email: Email


class ResetPasswordBody(_Body):
    password: StrongPassword
    confirm_password: str = Field(alias="confirmPassword")

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v: str, info: ValidationInfo) -> str:
        if "password" in info.data and v != info.data["password"]:
            raise ValueError("Passwords don't match")
        return v


class RefreshBody(_Body):
    refresh_token: str = Field(alias="refreshToken", min_length=1)


class ChangePasswordBody(_Body):
    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: StrongPassword = Field(alias="newPassword")
    confirm_password: str = Field(alias="confirmPassword")

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v: str, info: ValidationInfo) -> str:
        if "new_password" in info.data and v != info.data["new_password"]:
            raise ValueError("Passwords don't match")
        return v


class AdminUserUpdateBody(_Body):
    role: UserRole | None = None
    status: UserStatus | None = None


class UserPublic(BaseModel):
    """What callers may see of a user: never the password hash or any token."""

    id: int
    name: str
    email: str
    phone: str | None = None
    role: UserRole
    status: UserStatus
    emailVerified: bool
    createdAt: datetime | None = None
    updatedAt: datetime | None = None

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            phone=user.phone,
            role=user.role,
            status=user.status,
            emailVerified=user.email_verified,
            createdAt=user.created_at,
            updatedAt=user.updated_at,
        )


def ok(data: Any = None, message: str = "") -> dict:
    body: dict = {"success": True, "message": message}
    if data is not None:
        body["data"] = data.model_dump(mode="json") if isinstance(data, BaseModel) else data
    return body
