import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from payhook.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def get_s3_client(settings: Settings | None = None):
    settings = settings or get_settings()
    return boto3.client(
        "s3",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        endpoint_url=settings.aws_endpoint_url,
    )


def archive_key(kind: str, sha256: str) -> str:
    return f"{kind}/{sha256}"


def archive_raw_body(s3_client, bucket: str, kind: str, sha256: str, raw: bytes, content_type: str) -> str | None:
    """
    Store the verified raw body exactly as received, so its signature can be
    checked again later.

    Returns the object key, or None when archiving is disabled or failed.
    Archive failures never fail the delivery.
    """
    if not bucket:
        return None
    key = archive_key(kind, sha256)
    try:
        s3_client.put_object(
            Bucket=bucket,
            Key=key,
            Body=raw,
            ContentType=content_type,
            ServerSideEncryption="AES256",
        )
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Failed to archive delivery body to S3: {e}")
        return None
    return key
