from __future__ import annotations

import logging
import os
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from clinic_rooms.utils import require_env

logger = logging.getLogger("email")


class EmailSendError(Exception):
    """Raised when SES email sending fails."""


def _get_ses_client():
    region = require_env("AWS_REGION")
    access_key = os.environ.get("AWS_ACCESS_KEY_ID")
    secret_key = os.environ.get("AWS_SECRET_ACCESS_KEY")

    # Fall back to the default credential chain (instance role, profile).
    if access_key and secret_key:
        return boto3.client(
            "ses",
            region_name=region,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
        )
    return boto3.client("ses", region_name=region)


def send_email_ses(
    *,
    to_address: str,
    subject: str,
    html_body: str,
    text_body: Optional[str] = None,
) -> dict[str, Any]:
    """Send an email using AWS SES.

    Synchronous; called from the outbox dispatcher, never from a request
    handler that changes booking state.
    """

    try:
        source = require_env("AWS_SES_FROM_EMAIL")
        client = _get_ses_client()
    except RuntimeError as e:
        raise EmailSendError(str(e))

    msg: dict[str, Any] = {
        "Subject": {"Data": subject, "Charset": "UTF-8"},
        "Body": {
            "Html": {"Data": html_body, "Charset": "UTF-8"},
        },
    }
    if text_body:
        msg["Body"]["Text"] = {"Data": text_body, "Charset": "UTF-8"}

    try:
        resp = client.send_email(Source=source, Destination={"ToAddresses": [to_address]}, Message=msg)
        logger.info("SES send_email ok: MessageId=%s", resp.get("MessageId"))
        return resp
    except ClientError as e:
        logger.error("SES ClientError: %s", e, exc_info=True)
        raise EmailSendError(str(e))
    except BotoCoreError as e:
        logger.error("SES BotoCoreError: %s", e, exc_info=True)
        raise EmailSendError(str(e))
