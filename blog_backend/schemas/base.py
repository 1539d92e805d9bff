from marshmallow import EXCLUDE, Schema


class RequestSchema(Schema):
    class Meta:
        unknown = EXCLUDE
