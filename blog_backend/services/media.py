from __future__ import annotations

import os
import uuid
from dataclasses import dataclass

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from flask import current_app


class MediaUploadError(Exception):
    pass


@dataclass(frozen=True)
class StoredMedia:
    url: str
    public_id: str


class MediaRelay:
    """Uploads images to S3-compatible object storage and deletes them by key."""

    def __init__(self, client, *, bucket: str, public_base_url: str) -> None:
        self._client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_config(cls, config) -> "MediaRelay | None":
        access_key = config.get("MEDIA_ACCESS_KEY_ID")
        secret_key = config.get("MEDIA_SECRET_ACCESS_KEY")
        bucket = config.get("MEDIA_BUCKET")
        if not access_key or not secret_key or not bucket:
            return None
        session = boto3.session.Session()
        client = session.client(
            service_name="s3",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            endpoint_url=config.get("MEDIA_ENDPOINT_URL") or None,
        )
        public_base = config.get("MEDIA_PUBLIC_BASE_URL") or f"https://{bucket}.s3.amazonaws.com"
        return cls(client, bucket=bucket, public_base_url=public_base)

    def url_for(self, public_id: str) -> str:
        return f"{self.public_base_url}/{public_id}"

    def upload(
        self,
        stream,
        *,
        folder: str,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> StoredMedia:
        ext = os.path.splitext(filename or "")[1].lower()
        public_id = f"{folder}/{uuid.uuid4().hex}{ext}"
        extra_args = {"ContentType": content_type} if content_type else None
        try:
            if extra_args:
                self._client.upload_fileobj(stream, self.bucket, public_id, ExtraArgs=extra_args)
            else:
                self._client.upload_fileobj(stream, self.bucket, public_id)
        except (BotoCoreError, ClientError) as e:
            current_app.logger.error("Media upload to %s failed: %s", public_id, e)
            raise MediaUploadError(str(e)) from e
        return StoredMedia(url=self.url_for(public_id), public_id=public_id)

    def delete(self, public_id: str) -> bool:
        if not public_id:
            return False
        try:
            self._client.delete_object(Bucket=self.bucket, Key=public_id)
        except (BotoCoreError, ClientError) as e:
            current_app.logger.warning("Media delete of %s failed: %s", public_id, e)
            return False
        return True
