"""
User Directory

Boundary collaborator holding the users the engine acts on: role, school,
town class and current job salary. Identity issuance and job applications
live outside the engine; only what the ledger needs is kept here.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .context import Role
from .errors import ConflictError, NotFoundError, ValidationError
from .money import quantize
from .storage import StorageInterface, StorageRecord


@dataclass
class User(StorageRecord):
    username: str
    role: Role
    school_id: str
    town_class: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    job_title: Optional[str] = None
    job_salary: Optional[Decimal] = None  # None means unemployed

    @property
    def is_employed(self) -> bool:
        return self.job_salary is not None

    @property
    def display_name(self) -> str:
        full = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full or self.username


class UserDirectory:
    """Users, classes and job salaries per school"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "users"

    def register_user(self, username: str, role: Role, school_id: str,
                      town_class: Optional[str] = None,
                      first_name: Optional[str] = None,
                      last_name: Optional[str] = None) -> User:
        if not username:
            raise ValidationError("username is required")
        if self.find_by_username(school_id, username):
            raise ConflictError(f"Username {username} already exists")
        if role == Role.STUDENT and not town_class:
            raise ValidationError("Students must belong to a town class")

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            username=username,
            role=role,
            school_id=school_id,
            town_class=town_class,
            first_name=first_name,
            last_name=last_name
        )
        self._save_user(user)
        return user

    def get_user(self, user_id: str) -> User:
        data = self.storage.load(self.table_name, user_id)
        if not data:
            raise NotFoundError(f"User {user_id} not found")
        return User.from_dict(data)

    def find_by_username(self, school_id: str, username: str) -> Optional[User]:
        data = self.storage.find_one(self.table_name, {"school_id": school_id, "username": username})
        return User.from_dict(data) if data else None

    def list_students(self, school_id: str, town_class: Optional[str] = None) -> List[User]:
        filters = {"school_id": school_id, "role": Role.STUDENT}
        if town_class is not None:
            filters["town_class"] = town_class
        students = [User.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        students.sort(key=lambda u: u.username)
        return students

    def list_employed(self, school_id: str, town_class: str) -> List[User]:
        return [u for u in self.list_students(school_id, town_class) if u.is_employed]

    def list_unemployed(self, school_id: str, town_class: str) -> List[User]:
        return [u for u in self.list_students(school_id, town_class) if not u.is_employed]

    def assign_job(self, user_id: str, job_title: str, salary) -> User:
        user = self.get_user(user_id)
        if user.role != Role.STUDENT:
            raise ValidationError("Only students can hold jobs")
        amount = quantize(salary)
        if amount < 0:
            raise ValidationError("Salary cannot be negative")
        user.job_title = job_title
        user.job_salary = amount
        user.touch()
        self._save_user(user)
        return user

    def clear_job(self, user_id: str) -> User:
        user = self.get_user(user_id)
        user.job_title = None
        user.job_salary = None
        user.touch()
        self._save_user(user)
        return user

    def _save_user(self, user: User) -> None:
        self.storage.save(self.table_name, user.id, user.to_dict())
