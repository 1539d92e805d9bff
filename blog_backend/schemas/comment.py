from marshmallow import fields, validate

from blog_backend.schemas.base import RequestSchema


class CommentCreateSchema(RequestSchema):
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, error="All Fields Are Required!"),
        error_messages={"required": "All Fields Are Required!"},
    )
    blog_id = fields.Str(required=True, error_messages={"required": "All Fields Are Required!"})


class CommentUpdateSchema(RequestSchema):
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, error="Comment is required"),
        error_messages={"required": "Comment is required"},
    )


class CommentListArgsSchema(RequestSchema):
    blog_id = fields.Str(required=True, error_messages={"required": "Invalid Blog ID!"})
