from marshmallow import ValidationError, fields, validate

from blog_backend.schemas.base import RequestSchema


def split_tags(raw: str) -> list[str]:
    """Split ``"#a, #b"`` into ``["#a", "#b"]``."""
    return [tag.strip() for tag in raw.split(",")]


class TagList(fields.Field):
    """Comma separated tags (or a JSON list); every tag must start with ``#``."""

    def _deserialize(self, value, attr, data, **kwargs):
        if isinstance(value, str):
            tags = split_tags(value)
        elif isinstance(value, list) and all(isinstance(t, str) for t in value):
            tags = [t.strip() for t in value]
        else:
            raise ValidationError("Tags must be strings starting with '#'")
        if not tags or not any(tags):
            raise ValidationError("Tags Are Required")
        if not all(tag.startswith("#") for tag in tags):
            raise ValidationError("Tags must be strings starting with '#'")
        return tags


class BlogCreateSchema(RequestSchema):
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255, error="Title Is Required"),
        error_messages={"required": "Title Is Required"},
    )
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, error="Content Is Required"),
        error_messages={"required": "Content Is Required"},
    )
    tags = TagList(required=True, error_messages={"required": "Tags Are Required"})


class BlogUpdateSchema(RequestSchema):
    title = fields.Str(required=False, validate=validate.Length(max=255))
    content = fields.Str(required=False)


class PageArgsSchema(RequestSchema):
    page = fields.Int(load_default=1, validate=validate.Range(min=1))
    limit = fields.Int(load_default=10, validate=validate.Range(min=1, max=100))
