import logging
import os
import shutil
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import NotFound, StorageError

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.environ.get("UPLOAD_DIR", "/data/uploads")

R2_ACCOUNT_ID = os.environ.get("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.environ.get("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.environ.get("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET = os.environ.get("R2_BUCKET", "")


class LocalStorage:
    """Object keys resolved under a directory shared with the upload service.

    Absolute keys are treated as file paths, which is how uploads were keyed
    before object storage was introduced.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        path = Path(key)
        if path.is_absolute():
            return path
        root = self.root.resolve()
        resolved = (root / path).resolve()
        if not resolved.is_relative_to(root):
            raise StorageError(f"key escapes storage root: {key}")
        return resolved

    def download(self, key: str, dest_path: str) -> None:
        src = self.path_for(key)
        if not src.is_file():
            raise NotFound(f"audio file missing at {src}")
        try:
            shutil.copyfile(src, dest_path)
        except OSError as e:
            raise StorageError(f"copy {src}: {e}") from e

    def upload(self, key: str, src_path: str, content_type: str) -> None:
        dest = self.path_for(key)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src_path, dest)
        except OSError as e:
            raise StorageError(f"write {dest}: {e}") from e
        logger.info(f"Stored {key} ({content_type}) at {dest}")


class R2Storage:
    """Cloudflare R2 bucket accessed through the S3 API."""

    def __init__(self, account_id: str, access_key_id: str, secret_access_key: str, bucket_name: str, client=None):
        self.endpoint_url = f"https://{account_id}.r2.cloudflarestorage.com"
        self.bucket_name = bucket_name
        self.client = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name="auto",
            config=Config(
                connect_timeout=10,
                read_timeout=60,
                retries={"max_attempts": 3, "mode": "standard"},
                s3={"addressing_style": "path"},
            ),
        )

    def download(self, key: str, dest_path: str) -> None:
        try:
            obj = self.client.get_object(Bucket=self.bucket_name, Key=key)
            with open(dest_path, "wb") as f:
                for chunk in obj["Body"].iter_chunks():
                    f.write(chunk)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404"):
                raise NotFound(f"r2 object {key!r} not found") from e
            raise StorageError(f"r2 get object {key!r}: {e}") from e
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"r2 get object {key!r}: {e}") from e

    def upload(self, key: str, src_path: str, content_type: str) -> None:
        try:
            with open(src_path, "rb") as f:
                self.client.put_object(Bucket=self.bucket_name, Key=key, Body=f, ContentType=content_type)
        except (ClientError, BotoCoreError, OSError) as e:
            raise StorageError(f"r2 put object {key!r}: {e}") from e
        logger.info(f"Uploaded {key} to R2 bucket {self.bucket_name}")


def r2_enabled() -> bool:
    return bool(R2_ACCOUNT_ID and R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY and R2_BUCKET)


def get_storage():
    if r2_enabled():
        logger.info(f"Using R2 bucket {R2_BUCKET}")
        return R2Storage(R2_ACCOUNT_ID, R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY, R2_BUCKET)
    logger.info(f"Using local storage at {UPLOAD_DIR}")
    return LocalStorage(UPLOAD_DIR)
