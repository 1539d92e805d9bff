from blog_backend.models.blog import Blog
from blog_backend.models.comment import Comment
from blog_backend.models.user import User, session_user_dict

__all__ = [
    "Blog",
    "Comment",
    "User",
    "session_user_dict",
]
