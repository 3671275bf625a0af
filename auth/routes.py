# auth/routes.py
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy.exc import IntegrityError

from app import db
from models import Organization, User
from schemas import LoginRequest, MemberCreate, RegisterRequest, RoleUpdate
from services.guards import current_org, require_manager
from services.members import add_member, change_role, get_member, list_members, remove_member

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _me(user: User) -> dict:
    out = user.to_dict()
    org = user.organization
    out["organization"] = {"id": org.id, "name": org.name, "country": org.country} if org else None
    return out


@auth_bp.route("/register", methods=["POST"])
def register():
    if current_user.is_authenticated:
        return jsonify({"error": "Already signed in."}), 400

    body = RegisterRequest.model_validate(request.get_json(silent=True) or {})

    if User.query.filter_by(email=body.email).first():
        return jsonify({"error": "Email is already in use."}), 409

    # First user of a new organization owns it
    org = Organization(name=body.organization_name, email=body.email, country=body.country)
    user = User(email=body.email, name=body.name, role="owner", organization=org)
    user.set_password(body.password)
    db.session.add_all([org, user])
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "Email is already in use."}), 409

    login_user(user, remember=True)
    current_app.logger.info("[Auth] registered user=%s org=%s", user.id, org.id)
    return jsonify(_me(user)), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    body = LoginRequest.model_validate(request.get_json(silent=True) or {})
    user = User.query.filter_by(email=body.email.lower()).first()
    if not user or not user.check_password(body.password):
        current_app.logger.info("[Auth] failed login for %s", body.email.lower())
        return jsonify({"error": "Invalid credentials."}), 401

    login_user(user, remember=body.remember)
    return jsonify(_me(user))


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify(_me(current_user))


@auth_bp.route("/token", methods=["POST"])
@login_required
def issue_token():
    """
    Issue a fresh API token (replaces any previous one).
    Use as: Authorization: Bearer <user_id>.<token>
    """
    token = current_user.issue_api_token()
    db.session.commit()
    current_app.logger.info("[Auth] API token issued user=%s", current_user.id)
    return jsonify({"token": f"{current_user.id}.{token}"}), 201


# ------------------------- members -------------------------

@auth_bp.route("/members", methods=["GET"])
@login_required
def list_org_members():
    return jsonify({"members": [u.to_dict() for u in list_members(current_org())]})


@auth_bp.route("/members", methods=["POST"])
@login_required
@require_manager
def add_org_member():
    body = MemberCreate.model_validate(request.get_json(silent=True) or {})
    user, temporary = add_member(current_org(), current_user, body.email, role=body.role,
                                 name=body.name, password=body.password)
    db.session.commit()
    out = user.to_dict()
    if temporary:
        # shown once; the member should change it after signing in
        out["temporary_password"] = temporary
    return jsonify(out), 201


@auth_bp.route("/members/<int:user_id>/role", methods=["PATCH"])
@login_required
@require_manager
def update_member_role(user_id: int):
    body = RoleUpdate.model_validate(request.get_json(silent=True) or {})
    member = change_role(get_member(current_org(), user_id), body.role, current_user)
    db.session.commit()
    return jsonify(member.to_dict())


@auth_bp.route("/members/<int:user_id>", methods=["DELETE"])
@login_required
@require_manager
def remove_org_member(user_id: int):
    remove_member(get_member(current_org(), user_id), current_user)
    db.session.commit()
    return jsonify({"ok": True})
