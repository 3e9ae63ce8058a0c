"""
Request context

The acting user, their role and their tenant, passed explicitly into every
workflow call. The engine trusts this value and never authenticates.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import AuthorizationError


class Role(Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class RequestContext:
    """Identity and tenant scope of one request"""
    user_id: str
    role: Role
    school_id: str
    town_class: Optional[str] = None

    @property
    def is_teacher(self) -> bool:
        return self.role in (Role.TEACHER, Role.SUPER_ADMIN)

    def require_teacher(self) -> None:
        if not self.is_teacher:
            raise AuthorizationError("Teacher role required")

    def require_student(self) -> None:
        if self.role != Role.STUDENT:
            raise AuthorizationError("Student role required")

    def require_school(self, school_id: str, what: str = "record") -> None:
        """Reject access to another tenant's records"""
        if self.role != Role.SUPER_ADMIN and school_id != self.school_id:
            raise AuthorizationError(f"{what} belongs to another school")
