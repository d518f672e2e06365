import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Enum,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.sql.sqltypes import TIMESTAMP

from .database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class UserRole(str, enum.Enum):
    STUDENT = "STUDENT"
    GROUP_LEADER = "GROUP_LEADER"
    LECTURER = "LECTURER"
    ADMIN = "ADMIN"


class AuthProvider(str, enum.Enum):
    EMAIL = "EMAIL"
    GITHUB = "GITHUB"
    JIRA = "JIRA"


class IntegrationProvider(str, enum.Enum):
    GITHUB = "GITHUB"
    JIRA = "JIRA"

    @property
    def slug(self) -> str:
        return self.value.lower()

    @property
    def auth_provider(self) -> AuthProvider:
        return AuthProvider(self.value)


class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=_new_id)
    # Nullable only for legacy rows created before email became mandatory.
    email = Column(String, nullable=True, unique=True, index=True)
    full_name = Column(String, nullable=False)
    password_hash = Column(String, nullable=True)
    student_id = Column(String, nullable=True)
    role = Column(
        Enum(UserRole, name="user_role"), nullable=False, default=UserRole.STUDENT
    )
    primary_provider = Column(
        Enum(AuthProvider, name="auth_provider"),
        nullable=False,
        default=AuthProvider.EMAIL,
    )
    avatar_url = Column(String, nullable=True)
    created_at = Column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )
    last_login = Column(TIMESTAMP(timezone=True), nullable=True)

    identity_links = relationship(
        "IdentityLink", back_populates="user", cascade="all, delete-orphan"
    )


class IdentityLink(Base):
    __tablename__ = "identity_links"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "provider_user_id",
            name="uq_identity_links_provider_user_id",
        ),
        UniqueConstraint("user_id", "provider", name="uq_identity_links_user_provider"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider = Column(
        Enum(IntegrationProvider, name="integration_provider"), nullable=False
    )
    provider_user_id = Column(String, nullable=False)
    provider_username = Column(String, nullable=True)
    provider_email = Column(String, nullable=True)
    access_token = Column(String, nullable=False)
    refresh_token = Column(String, nullable=True)
    used_for_login = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )
    last_refreshed_at = Column(TIMESTAMP(timezone=True), nullable=True)

    user = relationship("User", back_populates="identity_links")
