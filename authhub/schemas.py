from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints

from .models import AuthProvider, IntegrationProvider, UserRole


Password = Annotated[str, Field(min_length=6, max_length=72)]
FullName = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)
]
StudentId = Annotated[str, StringConstraints(strip_whitespace=True, max_length=64)]


class RegisterRequest(BaseModel):
    email: EmailStr
    password: Password
    full_name: FullName
    student_id: Optional[StudentId] = None


class UserCreate(RegisterRequest):
    student_id: Annotated[
        str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)
    ]


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[Password] = None
    full_name: Optional[FullName] = None
    student_id: Optional[StudentId] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: Annotated[str, Field(min_length=1)]


class UserSummary(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: str
    student_id: Optional[str] = None
    role: UserRole

    model_config = ConfigDict(from_attributes=True)


class UserProfile(UserSummary):
    avatar_url: Optional[str] = None
    primary_provider: AuthProvider
    created_at: datetime
    last_login: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: UserSummary
    access_token: str
    token_type: str = "bearer"


class LinkedAccount(BaseModel):
    provider: IntegrationProvider
    provider_username: Optional[str] = None
    provider_email: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    message: str


class OAuthProvider(BaseModel):
    provider: str
    display_name: str
    start_url: str


class OAuthProvidersResponse(BaseModel):
    providers: list[OAuthProvider]
