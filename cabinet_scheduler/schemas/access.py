"""Access control schemas: the calling actor, decisions and audit entries."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

SYSTEM_ACTOR_ID = "system"
SYSTEM_ROLE = "system"


class ActorRole(str, Enum):
    """Actor role enumeration."""

    ADMIN = "admin"
    MANAGER = "manager"
    PRACTITIONER = "practitioner"
    ASSISTANT = "assistant"


class Operation(str, Enum):
    """Operation enumeration used to build `<resource>:<operation>` permissions."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class Resource(str, Enum):
    """Protected resource enumeration."""

    APPOINTMENTS = "appointments"
    PATIENTS = "patients"
    REPORTS = "reports"


class TenantActor(BaseModel):
    """Authenticated identity for one request. Immutable, never persisted."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    role: ActorRole
    assigned_cabinets: frozenset[str] = frozenset()
    permissions: frozenset[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        """Check if the actor has the admin role."""
        return self.role == ActorRole.ADMIN


class AccessDecision(BaseModel):
    """Outcome of an access check."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> "AccessDecision":
        """Build an allowing decision."""
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "AccessDecision":
        """Build a denying decision."""
        return cls(allowed=False, reason=reason)


class AuditEntry(BaseModel):
    """One access audit record."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    actor_id: str
    role: str
    resource: str
    operation: str
    cabinet_id: str | None = None
    allowed: bool
    reason: str | None = None
