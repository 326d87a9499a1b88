"""AWS SES client wrapper for async email sending."""

import logging
from typing import Any

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings

logger = logging.getLogger(__name__)


class SESError(Exception):
    """Base exception for SES operations."""

    pass


class SESClient:
    """Async wrapper for AWS SES operations."""

    def __init__(self):
        """Initialize SES client with AWS credentials from settings."""
        self.session = aioboto3.Session(
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            region_name=settings.AWS_REGION,
        )

    @retry(
        retry=retry_if_exception_type((ClientError,)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _send(self, params: dict[str, Any]) -> str:
        async with self.session.client("ses") as ses:
            response = await ses.send_email(**params)
            return response["MessageId"]

    async def send_email(
        self,
        source: str,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> str:
        """
        Send an email via AWS SES with retry logic.

        Args:
            source: Sender email address
            to: Recipient email address
            subject: Email subject
            html: HTML email body
            text: Plain text email body (optional)

        Returns:
            SES MessageId

        Raises:
            SESError: If email sending fails after retries
        """
        message: dict[str, Any] = {
            "Subject": {"Data": subject},
            "Body": {"Html": {"Data": html}},
        }

        if text:
            message["Body"]["Text"] = {"Data": text}

        params: dict[str, Any] = {
            "Source": source,
            "Destination": {"ToAddresses": [to]},
            "Message": message,
        }

        logger.info(f"Sending email to {to} with subject: {subject}")
        try:
            ses_message_id = await self._send(params)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            error_message = e.response.get("Error", {}).get("Message", str(e))

            logger.error(f"SES send failed: {error_code} - {error_message}")

            if error_code == "MessageRejected":
                raise SESError(f"Email rejected by SES: {error_message}")
            elif error_code == "AccountSendingPausedException":
                raise SESError("Account sending is paused")
            else:
                raise SESError(f"SES error ({error_code}): {error_message}")
        except BotoCoreError as e:
            logger.error(f"Unexpected error sending email: {str(e)}")
            raise SESError(f"Failed to send email: {str(e)}")

        logger.info(f"Email sent successfully. SES MessageId: {ses_message_id}")
        return ses_message_id


# Global SES client instance
ses_client = SESClient()
