from datetime import datetime
from typing import Dict, Optional

PLACEHOLDERS = [
    "User_FirstName",
    "User_LastName",
    "User_Email",
    "User_Username",
    "User_Address",
    "Course_FullName",
    "Course_Url",
    "Teacher_FirstName",
    "Teacher_LastName",
    "Teacher_Email",
    "Teacher_Username",
    "Teacher_Address",
    "Current_time",
]


def _person_values(prefix: str, person) -> Dict[str, str]:
    if person is None:
        return {}
    return {
        f"{prefix}_FirstName": person.first_name or "",
        f"{prefix}_LastName": person.last_name or "",
        f"{prefix}_Email": person.email or "",
        f"{prefix}_Username": person.username or "",
        f"{prefix}_Address": person.address or "",
    }


def replace_placeholders(
    template: str,
    user=None,
    course=None,
    teacher=None,
    now: Optional[datetime] = None,
    course_url_base: str = "/course/view",
) -> str:
    """
    Substitute {Placeholder} tokens in a message template.

    Placeholders whose source object is missing are left untouched.
    """
    values: Dict[str, str] = {}
    values.update(_person_values("User", user))
    values.update(_person_values("Teacher", teacher))
    if course is not None:
        values["Course_FullName"] = course.fullname
        values["Course_Url"] = f"{course_url_base}?id={course.id}"
    if now is not None:
        values["Current_time"] = now.strftime("%d-%m-%Y %H:%M:%S")

    rendered = template
    for name in PLACEHOLDERS:
        if name in values:
            rendered = rendered.replace("{" + name + "}", values[name])
    return rendered
