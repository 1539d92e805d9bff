from __future__ import annotations

from flask import abort, current_app
from flask.views import MethodView
from flask_smorest import Blueprint
from sqlalchemy.exc import SQLAlchemyError

from blog_backend.auth import require_user
from blog_backend.extensions import db
from blog_backend.models import Blog, Comment
from blog_backend.schemas.blog import BlogCreateSchema, BlogUpdateSchema, PageArgsSchema
from blog_backend.web import (
    api_response,
    is_uuid,
    load_args,
    load_payload,
    relay_delete,
    relay_upload,
    uploaded_file,
)

_IMAGE_FOLDER = "blogs"
FORBIDDEN_MESSAGE = "You Don't Have Permission To Perform This Operation!"


def _blog_or_404(blog_id: str) -> Blog:
    if not is_uuid(blog_id):
        abort(400, description="Invalid Blog ID")
    blog = db.session.get(Blog, blog_id)
    if blog is None:
        abort(404, description="Blog Not Found")
    return blog


def _require_author(blog: Blog, user_id: str) -> None:
    if blog.author_id != user_id:
        abort(403, description=FORBIDDEN_MESSAGE)


def register_blog_routes(api) -> Blueprint:
    blogs_blp = Blueprint(
        "blogs",
        "blogs",
        url_prefix="/api/v1/blogs",
        description="Create, list, read, update and delete blog posts",
    )

    @blogs_blp.route("/")
    class BlogCollection(MethodView):
        def post(self):
            user = require_user()
            data = load_payload(BlogCreateSchema())

            image = None
            storage = uploaded_file("image")
            if storage is not None:
                if not (storage.mimetype or "").startswith("image/"):
                    abort(400, description="Blog Image Must Be An Image")
                # Nothing is persisted unless the upload succeeds.
                image = relay_upload(
                    storage.stream,
                    folder=_IMAGE_FOLDER,
                    filename=storage.filename,
                    content_type=storage.mimetype,
                )

            blog = Blog(
                title=data["title"].strip(),
                content=data["content"],
                tags=data["tags"],
                author_id=user.id,
                image_url=image.url if image else None,
                image_public_id=image.public_id if image else None,
            )
            db.session.add(blog)
            try:
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                relay_delete(image.public_id if image else None)
                raise
            current_app.logger.info("Account %s created blog %s", user.id, blog.id)
            return api_response(blog.to_dict(), "Blog Successfully Created", 201)

        def get(self):
            require_user()
            args = load_args(PageArgsSchema())
            page, limit = args["page"], args["limit"]
            blogs = (
                Blog.query.order_by(Blog.created_at.desc(), Blog.id)
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            # Separate count query; it can drift from the page under concurrent writes.
            total = Blog.query.count()
            return api_response(
                {
                    "total": total,
                    "page": page,
                    "limit": limit,
                    "blogs": [blog.to_dict() for blog in blogs],
                },
                "Blogs Fetched Successfully",
            )

    @blogs_blp.route("/<string:blog_id>")
    class BlogItem(MethodView):
        def get(self, blog_id: str):
            require_user()
            blog = _blog_or_404(blog_id)
            return api_response({"blog": blog.to_dict()}, "Blog Fetched Successfully")

        def put(self, blog_id: str):
            user = require_user()
            if not is_uuid(blog_id):
                abort(400, description="Invalid Blog ID")
            data = load_payload(BlogUpdateSchema())
            title = (data.get("title") or "").strip()
            content = data.get("content") or ""
            if not title and not content:
                abort(400, description="Atleast One Field Is Required")

            blog = _blog_or_404(blog_id)
            _require_author(blog, user.id)
            if title:
                blog.title = title
            if content:
                blog.content = content
            db.session.commit()
            return api_response({"blog": blog.to_dict()}, "Blog Updated Successfully")

        def delete(self, blog_id: str):
            user = require_user()
            blog = _blog_or_404(blog_id)
            _require_author(blog, user.id)

            relay_delete(blog.image_public_id)
            Comment.query.filter_by(blog_id=blog.id).delete(synchronize_session=False)
            db.session.delete(blog)
            db.session.commit()
            current_app.logger.info("Account %s deleted blog %s", user.id, blog_id)
            return api_response({}, "Blog Deleted Successfully")

    api.register_blueprint(blogs_blp)
    return blogs_blp
