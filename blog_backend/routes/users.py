from __future__ import annotations

import io

from flask import abort, current_app
from flask.views import MethodView
from flask_smorest import Blueprint
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from blog_backend.auth import require_user
from blog_backend.extensions import db
from blog_backend.models import User
from blog_backend.schemas.user import (
    ChangePasswordSchema,
    CheckEmailSchema,
    LoginSchema,
    RefreshTokenSchema,
    RegisterSchema,
    UpdateProfileSchema,
)
from blog_backend.services.accounts import (
    email_in_use,
    generate_username,
    is_email_like,
    normalize_email,
)
from blog_backend.services.avatars import render_placeholder_avatar
from blog_backend.services.tokens import InvalidToken
from blog_backend.web import (
    REFRESH_COOKIE_NAME,
    api_response,
    clear_auth_cookies,
    cookie_value,
    load_payload,
    relay_delete,
    relay_upload,
    set_auth_cookies,
    uploaded_file,
)

_AVATAR_FOLDER = "avatars"
_REGISTER_ATTEMPTS = 2


def _valid_email(raw: str) -> str:
    email = normalize_email(raw)
    if not is_email_like(email):
        abort(400, description="Invalid Email Format")
    return email


def _require_image(storage) -> None:
    if not (storage.mimetype or "").startswith("image/"):
        abort(400, description="Avatar Must Be An Image")


def _store_avatar(storage, *, name: str):
    if storage is not None:
        _require_image(storage)
        return relay_upload(
            storage.stream,
            folder=_AVATAR_FOLDER,
            filename=storage.filename,
            content_type=storage.mimetype,
        )
    placeholder = io.BytesIO(render_placeholder_avatar(name))
    return relay_upload(
        placeholder, folder=_AVATAR_FOLDER, filename="avatar.png", content_type="image/png"
    )


def _rotate_tokens(user: User) -> tuple[str, str]:
    """Issue a token pair and make the new refresh token the only valid one."""
    issuer = current_app.extensions["token_issuer"]
    access_token = issuer.issue_access_token(user)
    refresh_token = issuer.issue_refresh_token(user.id)
    user.refresh_token = refresh_token
    return access_token, refresh_token


def _session_response(user: User, *, access_token: str, refresh_token: str, message: str, status: int):
    current_app.extensions["session_cache"].store(user.to_session())
    resp = api_response(
        {"user": user.to_dict(), "accessToken": access_token, "refreshToken": refresh_token},
        message,
        status,
    )
    set_auth_cookies(resp, access_token=access_token, refresh_token=refresh_token)
    return resp


def _own_account(user_id: str) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        abort(404, description="User Not Found")
    return user


def register_user_routes(api) -> Blueprint:
    users_blp = Blueprint(
        "users",
        "users",
        url_prefix="/api/v1/users",
        description="Registration, sessions and profile management",
    )

    @users_blp.route("/check-email", methods=["POST"])
    def check_email():
        data = load_payload(CheckEmailSchema())
        email = _valid_email(data["email"])
        exists = email_in_use(email)
        return api_response({"emailExists": exists}, f"Email: {email}, Exists: {exists}")

    @users_blp.route("/register", methods=["POST"])
    def register():
        data = load_payload(RegisterSchema())
        name = data["name"].strip()
        if not name:
            abort(400, description="Name Is Required")
        email = _valid_email(data["email"])
        if email_in_use(email):
            abort(409, description="User With Email Already Exists")

        avatar = _store_avatar(uploaded_file("avatar"), name=name)
        # A concurrent signup can take the generated username before our insert;
        # that clash gets one more attempt with a fresh handle.
        for attempt in range(_REGISTER_ATTEMPTS):
            user = User(
                name=name,
                username=generate_username(name),
                email=email,
                role="regular",
                avatar_url=avatar.url,
                avatar_public_id=avatar.public_id,
            )
            user.password = data["password"]
            try:
                db.session.add(user)
                db.session.flush()
                access_token, refresh_token = _rotate_tokens(user)
                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                if email_in_use(email):
                    relay_delete(avatar.public_id)
                    abort(409, description="User With Email Already Exists")
                if attempt == _REGISTER_ATTEMPTS - 1:
                    relay_delete(avatar.public_id)
                    abort(409, description="Username Already Taken, Please Retry")
                current_app.logger.warning(
                    "Username %s was taken during signup; retrying", user.username
                )
            except SQLAlchemyError:
                db.session.rollback()
                relay_delete(avatar.public_id)
                raise

        current_app.logger.info("Registered account %s", user.id)
        return _session_response(
            user,
            access_token=access_token,
            refresh_token=refresh_token,
            message="User Registered Successfully",
            status=201,
        )

    @users_blp.route("/login", methods=["POST"])
    def login():
        data = load_payload(LoginSchema())
        email = normalize_email(data["email"])
        user = User.query.filter_by(email=email).first()
        if user is None or not user.check_password(data["password"]):
            abort(401, description="Invalid User Credentials")

        access_token, refresh_token = _rotate_tokens(user)
        db.session.commit()
        current_app.logger.info("Account %s logged in", user.id)
        return _session_response(
            user,
            access_token=access_token,
            refresh_token=refresh_token,
            message="User Logged In Successfully",
            status=200,
        )

    @users_blp.route("/logout", methods=["GET"])
    def logout():
        session_user = require_user()
        user = db.session.get(User, session_user.id)
        if user is not None:
            user.refresh_token = None
            db.session.commit()
        current_app.extensions["session_cache"].invalidate(session_user.id)
        current_app.logger.info("Account %s logged out", session_user.id)
        resp = api_response({}, "User Logged Out Successfully")
        clear_auth_cookies(resp)
        return resp

    @users_blp.route("/refresh-token", methods=["POST"])
    def refresh_access_token():
        data = load_payload(RefreshTokenSchema())
        token = cookie_value(REFRESH_COOKIE_NAME) or (data.get("refreshToken") or "").strip()
        if not token:
            abort(401, description="Unauthorized Request")
        try:
            claims = current_app.extensions["token_issuer"].verify_refresh_token(token)
        except InvalidToken:
            abort(401, description="Invalid Refresh Token")
        user = db.session.get(User, claims["sub"])
        if user is None:
            abort(401, description="Invalid Refresh Token")
        if user.refresh_token != token:
            abort(401, description="Refresh Token Is Expired Or Used")

        access_token, refresh_token = _rotate_tokens(user)
        db.session.commit()
        current_app.extensions["session_cache"].store(user.to_session())
        resp = api_response(
            {"accessToken": access_token, "refreshToken": refresh_token},
            "Access Token Refreshed",
        )
        set_auth_cookies(resp, access_token=access_token, refresh_token=refresh_token)
        return resp

    @users_blp.route("/")
    class UserProfile(MethodView):
        def get(self):
            session_user = require_user()
            user = _own_account(session_user.id)
            return api_response({"user": user.to_dict()}, "User Details Fetched Successfully")

        def put(self):
            session_user = require_user()
            data = load_payload(UpdateProfileSchema())
            name = data.get("name", "").strip()
            email_raw = data.get("email", "").strip()
            if not name and not email_raw:
                abort(400, description="Atleast One Field Is Required")

            user = _own_account(session_user.id)
            if email_raw:
                email = _valid_email(email_raw)
                if email_in_use(email, exclude_user_id=user.id):
                    abort(409, description="User With Email Already Exists")
                user.email = email
            if name:
                user.name = name
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                abort(409, description="User With Email Already Exists")

            current_app.extensions["session_cache"].store(user.to_session())
            return api_response({"user": user.to_dict()}, "User Details Updated Successfully")

    @users_blp.route("/change-avatar", methods=["PUT"])
    def change_avatar():
        session_user = require_user()
        storage = uploaded_file("avatar")
        if storage is None:
            abort(400, description="Avatar File Is Missing")
        user = _own_account(session_user.id)

        avatar = _store_avatar(storage, name=user.name)
        previous_public_id = user.avatar_public_id
        user.avatar_url = avatar.url
        user.avatar_public_id = avatar.public_id
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            relay_delete(avatar.public_id)
            raise
        relay_delete(previous_public_id)

        current_app.extensions["session_cache"].store(user.to_session())
        return api_response({"user": user.to_dict()}, "Avatar Updated Successfully")

    @users_blp.route("/change-password", methods=["PUT"])
    def change_password():
        session_user = require_user()
        data = load_payload(ChangePasswordSchema())
        user = _own_account(session_user.id)
        if not user.check_password(data["oldPassword"]):
            abort(400, description="Invalid Old Password")
        user.password = data["newPassword"]
        db.session.commit()
        current_app.logger.info("Account %s changed password", user.id)
        return api_response({}, "Password Changed Successfully")

    api.register_blueprint(users_blp)
    return users_blp
