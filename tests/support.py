"""
Shared setup for the economy test suites
"""

from town_economy.config import EconomyConfig
from town_economy.context import RequestContext, Role
from town_economy.storage import InMemoryStorage
from town_economy.system import TownEconomySystem


SCHOOL = "school-1"
OTHER_SCHOOL = "school-2"
TOWN = "7A"


def build_economy(storage=None, **overrides) -> TownEconomySystem:
    """System over in-memory storage with a teacher and one town"""
    settings = {"database_url": "memory://", "auth_enabled": False}
    settings.update(overrides)
    config = EconomyConfig(**settings)
    system = TownEconomySystem(storage=storage or InMemoryStorage(), config=config)
    system.treasury.create_town(SCHOOL, TOWN, "Seventh Town")
    return system


def teacher_context(system: TownEconomySystem, school_id: str = SCHOOL,
                    username: str = "ms_teacher") -> RequestContext:
    teacher = system.register_teacher(school_id, username)
    return RequestContext(user_id=teacher.id, role=Role.TEACHER, school_id=school_id)


def student_context(system: TownEconomySystem, username: str, balance=None,
                    teacher: RequestContext = None, town_class: str = TOWN,
                    school_id: str = SCHOOL) -> RequestContext:
    """Enroll a student and optionally fund them through a teacher deposit"""
    user = system.enroll_student(school_id, username, town_class)
    if balance is not None and teacher is not None:
        system.accounts.deposit(teacher, username, balance)
    return RequestContext(user_id=user.id, role=Role.STUDENT, school_id=school_id, town_class=town_class)


def balance_of(system: TownEconomySystem, ctx: RequestContext):
    return system.accounts.get_account_for_user(ctx.user_id).balance
