from __future__ import annotations

from .models import Condition

AVAILABLE = "Available"
FAILED = "Failed"

# Failure reasons recorded on a cluster.
REASON_BOOTSTRAP = "ClusterBootstrap"
REASON_INCONSISTENT = "ClusterInconsistent"


def get_condition(obj, ctype: str) -> Condition | None:
    for c in obj.status.conditions:
        if c.type == ctype:
            return c
    return None


def set_condition(obj, ctype: str, status: bool, reason: str = "", message: str = "") -> None:
    """Replace the condition of this type, keeping its position in the list."""
    new = Condition(type=ctype, status=status, reason=reason, message=message)
    for i, c in enumerate(obj.status.conditions):
        if c.type == ctype:
            obj.status.conditions[i] = new
            return
    obj.status.conditions.append(new)


def remove_condition(obj, ctype: str) -> None:
    obj.status.conditions = [c for c in obj.status.conditions if c.type != ctype]


def is_available(obj) -> bool:
    c = get_condition(obj, AVAILABLE)
    return bool(c and c.status)


def set_available(obj) -> None:
    set_condition(obj, AVAILABLE, True)


def unset_available(obj) -> None:
    set_condition(obj, AVAILABLE, False)


def is_failed(obj) -> bool:
    c = get_condition(obj, FAILED)
    return bool(c and c.status)


def set_failed(obj, reason: str, message: str) -> None:
    set_condition(obj, FAILED, True, reason, message)


def unset_failed(obj) -> None:
    remove_condition(obj, FAILED)
