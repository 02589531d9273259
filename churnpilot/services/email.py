"""Email sending service — SMTP and SES backends."""

import asyncio
import logging
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

import aiosmtplib

from churnpilot.config import get_settings
from churnpilot.exceptions import DispatchError

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class SendResult:
    success: bool
    provider_message_id: str = ""


async def send_email_smtp(
    to_email: str,
    subject: str,
    html_body: str,
    from_name: str = "",
    from_email: str = "",
) -> SendResult:
    """Send a single email via SMTP."""
    from_name = from_name or settings.smtp_from_name
    from_email = from_email or settings.smtp_from_email

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to_email
    msg["Message-ID"] = make_msgid(domain=from_email.split("@")[-1] or None)
    msg.attach(MIMEText(html_body, "html", "utf-8"))

    try:
        await aiosmtplib.send(
            msg,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user or None,
            password=settings.smtp_password or None,
            start_tls=settings.smtp_use_tls,
            timeout=settings.dispatch_timeout_seconds,
        )
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        raise DispatchError(f"SMTP delivery failed: {e}") from e

    logger.info(f"Email sent to {to_email}")
    return SendResult(success=True, provider_message_id=msg["Message-ID"])


async def send_email_ses(
    to_email: str,
    subject: str,
    html_body: str,
    from_name: str = "",
    from_email: str = "",
) -> SendResult:
    """Send a single email via Amazon SES."""
    import boto3
    from botocore.exceptions import BotoCoreError, ClientError

    from_name = from_name or settings.smtp_from_name
    from_email = from_email or settings.smtp_from_email

    client = boto3.client(
        "ses",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
    )

    try:
        response = await asyncio.to_thread(
            client.send_email,
            Source=f"{from_name} <{from_email}>",
            Destination={"ToAddresses": [to_email]},
            Message={
                "Subject": {"Charset": "UTF-8", "Data": subject},
                "Body": {"Html": {"Charset": "UTF-8", "Data": html_body}},
            },
        )
    except (BotoCoreError, ClientError) as e:
        logger.error(f"SES failed for {to_email}: {e}")
        raise DispatchError(f"SES delivery failed: {e}") from e

    logger.info(f"SES email sent to {to_email}")
    return SendResult(success=True, provider_message_id=response.get("MessageId", ""))


async def send_email(to_email: str, subject: str, html_body: str) -> SendResult:
    """Route to configured backend. Raises DispatchError on failure."""
    if settings.mail_backend == "ses":
        return await send_email_ses(to_email, subject, html_body)
    return await send_email_smtp(to_email, subject, html_body)
