"""
Student roster filtering for the admin members view.

Filters are exact matches on role, school and belt (by belt id or name), plus
a case-insensitive search across name, email, school and role. Ordering goes
through the shared comparator so ties resolve the same way as in the library.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

from api.enums import SortKey, SortOrder
from api.models import Curriculum, Student
from api.sorting import sort_students

# Sort keys that make sense for members
ROSTER_SORT_KEYS = (
    SortKey.FULL_NAME,
    SortKey.CREATED_AT,
    SortKey.LAST_LOGIN,
    SortKey.LOGIN_COUNT,
    SortKey.LAST_VIEW,
    SortKey.VIEW_COUNT,
)

# Query value meaning "no filter", as sent by the roster's dropdowns
ALL = "all"


@dataclass
class RosterFacets:
    roles: List[str] = field(default_factory=list)
    schools: List[str] = field(default_factory=list)
    belts: List[Curriculum] = field(default_factory=list)


def _active(value: Optional[str]) -> bool:
    return bool(value) and value != ALL


def matches_roster_search(student: Student, query: Optional[str]) -> bool:
    if not query or not query.strip():
        return True
    needle = query.strip().casefold()
    fields = (student.email, student.full_name, student.school, student.role)
    return any(needle in value.casefold() for value in fields if value)


def _belt_matches(student: Student, belt: str) -> bool:
    if student.belt is None:
        return False
    return student.belt.id == belt or student.belt.name.casefold() == belt.casefold()


def filter_students(
    students: Iterable[Student],
    role: Optional[str] = None,
    school: Optional[str] = None,
    belt: Optional[str] = None,
    search: Optional[str] = None,
) -> List[Student]:
    result = []
    for student in students:
        if _active(role) and student.role != role:
            continue
        if _active(school) and student.school != school:
            continue
        if _active(belt) and not _belt_matches(student, belt):
            continue
        if not matches_roster_search(student, search):
            continue
        result.append(student)
    return result


def resolve_roster_sort(sort_key: Union[SortKey, str, None]) -> SortKey:
    """Roster sort keys only. Anything else sorts by name."""
    try:
        key = SortKey(sort_key)
    except ValueError:
        return SortKey.FULL_NAME
    return key if key in ROSTER_SORT_KEYS else SortKey.FULL_NAME


def roster(
    students: Iterable[Student],
    role: Optional[str] = None,
    school: Optional[str] = None,
    belt: Optional[str] = None,
    search: Optional[str] = None,
    sort_key: Union[SortKey, str, None] = SortKey.FULL_NAME,
    direction: Union[SortOrder, str] = SortOrder.ASC,
) -> List[Student]:
    """Filter then sort members."""
    matched = filter_students(students, role=role, school=school, belt=belt, search=search)
    return sort_students(matched, resolve_roster_sort(sort_key), direction)


def roster_facets(students: Iterable[Student]) -> RosterFacets:
    """Distinct non-blank roles and schools (sorted by name) and belts (sorted by rank)."""
    roles = set()
    schools = set()
    belts = {}
    for student in students:
        if student.role and student.role.strip():
            roles.add(student.role)
        if student.school and student.school.strip():
            schools.add(student.school)
        if student.belt is not None:
            belts.setdefault(student.belt.id, student.belt)

    return RosterFacets(
        roles=sorted(roles, key=str.casefold),
        schools=sorted(schools, key=str.casefold),
        belts=sorted(belts.values(), key=lambda b: (b.display_order, b.name.casefold())),
    )
