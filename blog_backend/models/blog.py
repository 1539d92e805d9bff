from __future__ import annotations

import uuid

from blog_backend.extensions import db, utcnow


class Blog(db.Model):
    __tablename__ = "blogs"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = db.Column(db.String(255), index=True, nullable=False)
    content = db.Column(db.Text, nullable=False)
    image_url = db.Column(db.Text, nullable=True)
    image_public_id = db.Column(db.String(255), nullable=True)
    author_id = db.Column(db.String(36), db.ForeignKey("users.id"), index=True, nullable=False)
    tags = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, index=True, nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def to_dict(self) -> dict:
        image = None
        if self.image_url:
            image = {"url": self.image_url, "publicId": self.image_public_id}
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "image": image,
            "author": self.author_id,
            "tags": list(self.tags or []),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
