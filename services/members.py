# services/members.py
"""
Organization members: add, change role, remove.

Owners (and platform admins) manage everyone. Admins manage admins and
members but can neither touch an owner nor hand out the owner role.
An organization always keeps at least one owner.
"""
from __future__ import annotations

import secrets
from typing import List, Optional, Tuple

from flask import current_app

from app import db
from models import Organization, User
from services.errors import Conflict, Forbidden, NotFound, ValidationFailed
from services.events import record_event

ROLES = ("owner", "admin", "member")


def list_members(organization: Organization) -> List[User]:
    return User.query.filter_by(organization_id=organization.id).order_by(User.id.asc()).all()


def get_member(organization: Organization, user_id: int) -> User:
    user = User.query.filter_by(id=user_id, organization_id=organization.id).first()
    if user is None:
        raise NotFound("Member not found")
    return user


def _is_owner(actor: User) -> bool:
    return bool(actor.is_admin) or actor.role == "owner"


def _owner_count(organization_id: int) -> int:
    return User.query.filter_by(organization_id=organization_id, role="owner").count()


def _event(event_type: str, user: User, actor: User, **meta) -> None:
    record_event(
        event_type, "user", user.id,
        organization_id=user.organization_id,
        actor_id=actor.id,
        metadata={"email": user.email, "role": user.role, **meta},
        deliver=False,
    )


def add_member(organization: Organization, actor: User, email: str, role: str = "member",
               name: Optional[str] = None, password: Optional[str] = None) -> Tuple[User, Optional[str]]:
    """
    Create a user inside `organization`. Without a password a temporary one
    is generated and returned once (it is never stored in clear).
    """
    if role not in ROLES:
        raise ValidationFailed(f"Unknown role: {role}")
    if role == "owner" and not _is_owner(actor):
        raise Forbidden("Only owners can add owners.")
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        raise Conflict("Email is already in use.")

    temporary = None if password else secrets.token_urlsafe(12)
    user = User(email=email, name=name, role=role, organization_id=organization.id)
    user.set_password(password or temporary)
    db.session.add(user)
    db.session.flush()
    _event("MEMBER_ADDED", user, actor)
    current_app.logger.info("[Members] user=%s added to org=%s as %s by %s",
                            user.id, organization.id, role, actor.id)
    return user, temporary


def change_role(member: User, role: str, actor: User) -> User:
    if role not in ROLES:
        raise ValidationFailed(f"Unknown role: {role}")
    if role == member.role:
        return member
    if (member.role == "owner" or role == "owner") and not _is_owner(actor):
        raise Forbidden("Only owners can change owner roles.")
    if member.role == "owner" and _owner_count(member.organization_id) <= 1:
        raise ValidationFailed("Cannot demote the only owner of the organization.")

    previous = member.role
    member.role = role
    _event("MEMBER_ROLE_CHANGED", member, actor, previous_role=previous)
    current_app.logger.info("[Members] user=%s role %s -> %s by %s", member.id, previous, role, actor.id)
    return member


def remove_member(member: User, actor: User) -> None:
    """Detach the user from the organization; the account itself stays."""
    if member.role == "owner":
        if not _is_owner(actor):
            raise Forbidden("Only owners can remove owners.")
        if _owner_count(member.organization_id) <= 1:
            raise ValidationFailed("Cannot remove the only owner of the organization.")

    _event("MEMBER_REMOVED", member, actor)
    member.organization_id = None
    member.role = "member"
    member.api_token_hash = None
    current_app.logger.info("[Members] user=%s removed by %s", member.id, actor.id)
