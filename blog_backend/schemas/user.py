from marshmallow import ValidationError, fields, validate

from blog_backend.schemas.base import RequestSchema

MIN_PASSWORD_LENGTH = 6
# bcrypt only hashes the first 72 bytes and newer releases reject anything longer.
MAX_PASSWORD_BYTES = 72


def _password_fits_bcrypt(value: str) -> None:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password Must Be At Most {MAX_PASSWORD_BYTES} Bytes")


_NEW_PASSWORD_RULES = [
    validate.Length(
        min=MIN_PASSWORD_LENGTH,
        error=f"Password Must Be At Least {MIN_PASSWORD_LENGTH} Characters",
    ),
    _password_fits_bcrypt,
]


class CheckEmailSchema(RequestSchema):
    email = fields.Str(required=True, error_messages={"required": "Email Is Required"})


class RegisterSchema(RequestSchema):
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=120, error="Name Is Required"),
        error_messages={"required": "Name Is Required"},
    )
    email = fields.Str(required=True, error_messages={"required": "Email Is Required"})
    password = fields.Str(
        required=True,
        validate=_NEW_PASSWORD_RULES,
        error_messages={"required": "Password Is Required"},
    )


class LoginSchema(RequestSchema):
    email = fields.Str(required=True, error_messages={"required": "Email Is Required"})
    password = fields.Str(required=True, error_messages={"required": "Password Is Required"})


class RefreshTokenSchema(RequestSchema):
    refreshToken = fields.Str(required=False, allow_none=True)


class UpdateProfileSchema(RequestSchema):
    name = fields.Str(
        required=False, validate=validate.Length(min=1, max=120, error="Name Cannot Be Empty")
    )
    email = fields.Str(required=False)


class ChangePasswordSchema(RequestSchema):
    oldPassword = fields.Str(
        required=True, error_messages={"required": "Old Password Is Required"}
    )
    newPassword = fields.Str(
        required=True,
        validate=_NEW_PASSWORD_RULES,
        error_messages={"required": "New Password Is Required"},
    )
