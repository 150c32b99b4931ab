"""
S3/R2 object storage for media blobs.

Storage references are plain object keys (e.g. ``videos/grid_ab12cd34_3_take2.webm``).
Full http(s) URLs are accepted wherever a reference is and passed through.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from runtime.errors import DistributionFailure, UploadFailure

logger = logging.getLogger(__name__)

REMOTE_SCHEMES = ("http://", "https://", "s3://")


def is_remote_ref(ref: str, key_prefix: str = "videos") -> bool:
    """True when ``ref`` already names durably stored media."""
    if not ref:
        return False
    return ref.startswith(REMOTE_SCHEMES) or ref.startswith(f"{key_prefix}/")


class ObjectStore:
    def __init__(
        self,
        endpoint: Optional[str] = None,
        bucket: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: Optional[str] = None,
        presign_ttl: int = 3600,
        client=None,
    ):
        self.endpoint = endpoint or os.getenv("S3_ENDPOINT")
        self.bucket = bucket or os.getenv("S3_BUCKET")
        self.access_key = access_key or os.getenv("S3_ACCESS_KEY")
        self.secret_key = secret_key or os.getenv("S3_SECRET_KEY")
        self.region = region or os.getenv("S3_REGION", "auto")
        self.presign_ttl = presign_ttl
        self._s3_client = client

    @property
    def s3(self):
        """Lazy S3 client initialization."""
        if self._s3_client is None:
            if not all([self.endpoint, self.bucket, self.access_key, self.secret_key]):
                raise RuntimeError("S3/R2 configuration incomplete. Check env vars.")

            self._s3_client = boto3.client(
                "s3",
                endpoint_url=self.endpoint,
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                region_name=self.region,
                config=Config(signature_version="s3v4"),
            )
        return self._s3_client

    def public_url(self, key: str) -> str:
        return f"{self.endpoint}/{self.bucket}/{key}"

    def key_from_ref(self, ref: str) -> Optional[str]:
        """Extract the object key from a ref, or None for foreign URLs."""
        if ref.startswith("s3://"):
            return ref[len("s3://"):].split("/", 1)[-1]
        if ref.startswith(("http://", "https://")):
            if self.bucket and f"/{self.bucket}/" in ref:
                return ref.split(f"/{self.bucket}/", 1)[-1].split("?", 1)[0]
            return None
        return ref

    def upload_file(self, local_path: Path, key: str, content_type: str = "video/mp4") -> str:
        try:
            self.s3.upload_file(
                str(local_path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError, RuntimeError, OSError) as e:
            raise UploadFailure(f"upload of {local_path} failed: {e}") from e
        return key

    def upload_bytes(self, data: bytes, key: str, content_type: str = "video/webm") -> str:
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError, RuntimeError) as e:
            raise UploadFailure(f"upload to {key} failed: {e}") from e
        return key

    def download(self, ref: str, local_path: Path) -> Path:
        key = self.key_from_ref(ref)
        if key is None:
            raise UploadFailure(f"not a storage reference: {ref}")
        self.s3.download_file(self.bucket, key, str(local_path))
        return local_path

    def presigned_url(self, ref: str) -> Optional[str]:
        if ref.startswith(("http://", "https://")):
            return ref
        key = self.key_from_ref(ref)
        try:
            return self.s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.presign_ttl,
            )
        except (BotoCoreError, ClientError, RuntimeError) as e:
            logger.warning(f"presign failed for {ref}: {e}")
            return None

    def publish(self, local_path: Path, key: str) -> str:
        """Upload a finished artifact and return its public URL."""
        try:
            self.upload_file(local_path, key, content_type="video/mp4")
        except UploadFailure as e:
            raise DistributionFailure(str(e)) from e
        return self.public_url(key)
