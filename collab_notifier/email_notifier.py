"""Email delivery for digest messages (SMTP or AWS SES)."""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import MailConfig
from .errors import DeliveryFailure

logger = logging.getLogger(__name__)


def build_message(to_email: str, subject: str, text: str, html: Optional[str], from_email: str) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.attach(MIMEText(text, "plain"))
    if html:
        msg.attach(MIMEText(html, "html"))
    return msg


def send_email_smtp(
    to_email: str,
    subject: str,
    text: str,
    html: Optional[str],
    config: MailConfig,
) -> None:
    """
    Send an email through the configured SMTP server.

    Args:
        to_email: Recipient email address.
        subject: Email subject line.
        text: Plain-text body.
        html: Optional HTML alternative.
        config: Mail configuration.

    Raises:
        smtplib.SMTPException: If sending fails.
    """
    msg = build_message(to_email, subject, text, html, config.from_email)

    logger.debug(f"Connecting to SMTP server: {config.smtp_host}:{config.smtp_port}")
    if config.smtp_port == 465:
        server = smtplib.SMTP_SSL(config.smtp_host, config.smtp_port, timeout=config.timeout_seconds)
    else:
        server = smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=config.timeout_seconds)
        if config.smtp_use_ssl:
            server.starttls()
    try:
        server.login(config.smtp_username, config.smtp_password)
        server.send_message(msg)
    except smtplib.SMTPAuthenticationError:
        logger.error(
            f"SMTP authentication failed for {config.smtp_username}. "
            f"For Gmail use an App Password, not your regular password."
        )
        raise
    finally:
        server.quit()
    logger.info(f"Email sent successfully to {to_email}")


def send_email_ses(
    to_email: str,
    subject: str,
    text: str,
    html: Optional[str],
    config: MailConfig,
    client=None,
) -> str:
    """
    Send an email via AWS SES.

    Returns:
        The SES message id.
    """
    ses = client or boto3.client("ses", region_name=config.ses_region)
    body = {"Text": {"Data": text}}
    if html:
        body["Html"] = {"Data": html}
    response = ses.send_email(
        Source=config.from_email,
        Destination={"ToAddresses": [to_email]},
        Message={"Subject": {"Data": subject}, "Body": body},
    )
    logger.info(f"Email sent to {to_email}: {response['MessageId']}")
    return response["MessageId"]


class Mailer:
    """
    Async front for the blocking senders.

    Each send runs in a worker thread bounded by the configured timeout. Any
    failure, timeout included, is raised as DeliveryFailure so a digest run can
    log it and move on to the next user.
    """

    def __init__(self, config: MailConfig):
        self.config = config
        self._ses_client = None

    @property
    def enabled(self) -> bool:
        return self.config.provider != "disabled"

    def _send_blocking(self, to_email: str, subject: str, text: str, html: Optional[str]) -> None:
        if self.config.provider == "ses":
            if self._ses_client is None:
                self._ses_client = boto3.client("ses", region_name=self.config.ses_region)
            send_email_ses(to_email, subject, text, html, self.config, client=self._ses_client)
        else:
            send_email_smtp(to_email, subject, text, html, self.config)

    async def send(self, to_email: str, subject: str, text: str, html: Optional[str] = None) -> bool:
        """
        Send one message.

        Returns:
            False if mail is disabled (nothing was sent), True otherwise.

        Raises:
            DeliveryFailure: If the provider failed or timed out.
        """
        if not self.enabled:
            logger.info(f"Mail disabled; not sending '{subject}' to {to_email}")
            return False
        if not text or not text.strip():
            logger.info("Message is empty; not sending email.")
            return False
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._send_blocking, to_email, subject, text, html),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise DeliveryFailure(f"mail to {to_email} timed out after {self.config.timeout_seconds}s") from e
        except (smtplib.SMTPException, OSError, ClientError, BotoCoreError) as e:
            raise DeliveryFailure(f"mail to {to_email} failed: {e}") from e
        return True
