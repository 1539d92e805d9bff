from __future__ import annotations

from flask import abort
from flask.views import MethodView
from flask_smorest import Blueprint

from blog_backend.auth import require_user
from blog_backend.extensions import db
from blog_backend.models import Blog, Comment
from blog_backend.routes.blogs import FORBIDDEN_MESSAGE
from blog_backend.schemas.comment import (
    CommentCreateSchema,
    CommentListArgsSchema,
    CommentUpdateSchema,
)
from blog_backend.web import api_response, is_uuid, load_args, load_payload


def _authored_comment(comment_id: str, user_id: str) -> Comment:
    """Fetch a comment owned by `user_id`.

    Anything other than the caller's own comment yields 403, malformed ids
    included.
    """
    if not is_uuid(comment_id):
        abort(403, description=FORBIDDEN_MESSAGE)
    comment = Comment.query.filter_by(id=comment_id, author_id=user_id).first()
    if comment is None:
        abort(403, description=FORBIDDEN_MESSAGE)
    return comment


def register_comment_routes(api) -> Blueprint:
    comments_blp = Blueprint(
        "comments",
        "comments",
        url_prefix="/api/v1/comments",
        description="Comments attached to blog posts",
    )

    @comments_blp.route("/")
    class CommentCollection(MethodView):
        def post(self):
            user = require_user()
            data = load_payload(CommentCreateSchema())
            blog_id = data["blog_id"].strip()
            if not is_uuid(blog_id) or db.session.get(Blog, blog_id) is None:
                abort(400, description="Blog Not Found")

            comment = Comment(content=data["content"], author_id=user.id, blog_id=blog_id)
            db.session.add(comment)
            db.session.commit()
            return api_response({"comment": comment.to_dict()}, "Comment Add Successfully", 201)

        def get(self):
            require_user()
            args = load_args(CommentListArgsSchema())
            blog_id = args["blog_id"].strip()
            if not is_uuid(blog_id):
                abort(400, description="Invalid Blog ID!")
            comments = (
                Comment.query.filter_by(blog_id=blog_id)
                .order_by(Comment.created_at, Comment.id)
                .all()
            )
            return api_response(
                {"total": len(comments), "comments": [c.to_dict() for c in comments]},
                "Comments Fetched Successfully",
            )

    @comments_blp.route("/<string:comment_id>")
    class CommentItem(MethodView):
        def put(self, comment_id: str):
            user = require_user()
            comment = _authored_comment(comment_id, user.id)
            data = load_payload(CommentUpdateSchema())
            comment.content = data["content"]
            db.session.commit()
            return api_response({"comment": comment.to_dict()}, "Comment Updated Successfully")

        def delete(self, comment_id: str):
            user = require_user()
            comment = _authored_comment(comment_id, user.id)
            db.session.delete(comment)
            db.session.commit()
            return api_response({}, "Comment Deleted Successfully")

    api.register_blueprint(comments_blp)
    return comments_blp
