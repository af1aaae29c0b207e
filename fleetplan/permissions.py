"""
permissions.py - Action x subject capability model.

A session is the only thing the rest of the code knows about identity:
``{"user_id": int, "roles": [str, ...]}`` or ``None``.
"""

from fleetplan.errors import AuthenticationRequired, PermissionDenied

ACTIONS = ("read", "write")
SUBJECTS = ("users", "todo", "requests", "task-assignment", "my-tasks",
            "vehicles", "locations")
ROLES = ("admin", "planner", "driver", "user")


def _rw(*subjects):
    return [(action, s) for s in subjects for action in ACTIONS]


ROLE_ABILITIES = {
    "user": _rw("todo"),
    "driver": _rw("todo", "my-tasks"),
    "planner": _rw("todo", "requests", "task-assignment", "vehicles", "locations"),
    "admin": _rw("users", "todo", "requests", "task-assignment", "my-tasks",
                 "vehicles", "locations"),
}


def abilities_from_roles(roles):
    """Union of abilities for the given roles, first-seen order, no duplicates."""
    if not roles:
        return []
    result, seen = [], set()
    for role in roles:
        for ability in ROLE_ABILITIES.get(role, []):
            if ability not in seen:
                seen.add(ability)
                result.append(ability)
    return result


def can(abilities, action, subject):
    if not abilities:
        return False
    return any(a == action and s == subject for a, s in abilities)


def make_session(user_id, role):
    return {"user_id": user_id, "roles": [role] if role else []}


def require_user(session):
    if not session:
        raise AuthenticationRequired()
    return session


def require_ability(session, action, subject):
    require_user(session)
    if not can(abilities_from_roles(session["roles"]), action, subject):
        raise PermissionDenied(f"Not allowed to {action} {subject}")
    return session


def require_any_ability(session, *abilities):
    require_user(session)
    granted = abilities_from_roles(session["roles"])
    if not any(can(granted, a, s) for a, s in abilities):
        wanted = ", ".join(f"{a} {s}" for a, s in abilities)
        raise PermissionDenied(f"Requires one of: {wanted}")
    return session
