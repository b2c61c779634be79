"""Demographic profile updates pushed by the user-profile collaborator."""

from __future__ import annotations

import logging
from typing import Optional, Union

from sqlalchemy.orm import Session

from ..db.schema import User
from ..models import Gender
from .leaderboard import LeaderboardCache

_log = logging.getLogger(__name__)


def upsert_profile(
    session: Session,
    user_id: str,
    *,
    gender: Optional[Union[Gender, str]] = None,
    birth_year: Optional[int] = None,
    weight_kg: Optional[float] = None,
    name: Optional[str] = None,
    leaderboards: Optional[LeaderboardCache] = None,
) -> User:
    """Create or update a user's demographics.

    Only the fields passed (not None) are written; the rest keep their stored
    values. When gender or birth year changes, cached leaderboards of every
    segment the user has efforts on are deleted.
    """

    gender_value = Gender(gender).value if gender is not None else None
    if birth_year is not None and not 1900 <= int(birth_year) <= 2100:
        raise ValueError(f"Implausible birth year: {birth_year}")
    if weight_kg is not None and weight_kg <= 0:
        raise ValueError("weight_kg must be positive")

    user = session.get(User, user_id)
    created = user is None
    if user is None:
        user = User(id=user_id)
        session.add(user)
    demographics_changed = created or (
        (gender_value is not None and user.gender != gender_value)
        or (birth_year is not None and user.birth_year != birth_year)
    )
    if gender_value is not None:
        user.gender = gender_value
    if birth_year is not None:
        user.birth_year = birth_year
    if weight_kg is not None:
        user.weight_kg = weight_kg
    if name is not None:
        user.name = name
    session.flush()

    if demographics_changed:
        removed = (leaderboards or LeaderboardCache()).invalidate_for_user(session, user_id)
        _log.info(
            "Demographics changed for user %s; invalidated %d leaderboard rows",
            user_id,
            removed,
        )
    return user


def get_gender(session: Session, user_id: str) -> Optional[Gender]:
    user = session.get(User, user_id)
    if user is None or user.gender is None:
        return None
    return Gender(user.gender)


__all__ = ["get_gender", "upsert_profile"]
