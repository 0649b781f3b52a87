from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

ROLE_ADMIN = "ADMIN"
ROLE_CO_ADMIN = "CO_ADMIN"
ROLE_TEACHER = "TEACHER"
ROLE_STUDENT = "STUDENT"

PRIVILEGED_ROLES = (ROLE_ADMIN, ROLE_CO_ADMIN, ROLE_TEACHER)


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str


def is_privileged(role: Optional[str]) -> bool:
    return role in PRIVILEGED_ROLES


def has_trail_access(db: Session, actor: Actor, trail_id: str) -> bool:
    """ADMIN sees every trail, CO_ADMIN needs an explicit grant, TEACHER needs
    an assignment or a trail open to all teachers."""
    if actor.role == ROLE_ADMIN:
        return True
    if actor.role == ROLE_CO_ADMIN:
        row = db.execute(
            text("SELECT 1 FROM admin_trail_access WHERE admin_id=:uid AND trail_id=:tid"),
            {"uid": actor.user_id, "tid": trail_id},
        ).first()
        return row is not None
    if actor.role == ROLE_TEACHER:
        row = db.execute(
            text("""SELECT 1 FROM trails t
                    WHERE t.id=:tid AND (
                        t.teacher_visibility='ALL_TEACHERS'
                        OR EXISTS (SELECT 1 FROM trail_teachers tt
                                   WHERE tt.trail_id=t.id AND tt.teacher_id=:uid))"""),
            {"uid": actor.user_id, "tid": trail_id},
        ).first()
        return row is not None
    return False
