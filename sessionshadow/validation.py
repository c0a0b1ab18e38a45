"""
Validation - Invariant checks applied before a loaded session is trusted
"""

import uuid
from typing import List, Optional

from .errors import ValidationError
from .models import Session


def _is_valid_id(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def check_session(session: Session) -> List[str]:
    """Return the list of invariant violations (empty when valid)."""
    problems = []

    if not session.id or not session.id.strip():
        problems.append("empty session id")
    if not session.description or not session.description.strip():
        problems.append("empty description")

    if session.started_at is not None and session.stopped_at is not None:
        if session.stopped_at < session.started_at:
            problems.append("stopped_at is before started_at")

    if session.stats.command_count != len(session.commands):
        problems.append(
            f"command_count {session.stats.command_count} != "
            f"{len(session.commands)} stored commands"
        )
    if session.stats.annotation_count != len(session.annotations):
        problems.append(
            f"annotation_count {session.stats.annotation_count} != "
            f"{len(session.annotations)} stored annotations"
        )

    seen = set()
    for annotation in session.annotations:
        if not _is_valid_id(annotation.id):
            problems.append(f"invalid annotation id: {annotation.id!r}")
        elif annotation.id in seen:
            problems.append(f"duplicate annotation id: {annotation.id}")
        seen.add(annotation.id)

    return problems


def validate_session(session: Session, source: Optional[str] = None) -> Session:
    """
    Raise ValidationError if the session breaks an invariant.

    Returns the session unchanged so calls can be chained.
    """
    problems = check_session(session)
    if problems:
        raise ValidationError(problems, source)
    return session


def is_valid(session: Session) -> bool:
    return not check_session(session)
