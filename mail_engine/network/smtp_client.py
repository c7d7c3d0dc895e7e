"""
SMTP implementation of ``MailTransport``.

Builds a MIME message from a ``ComposeEmail`` and delivers it with password
authentication. Port 465 uses implicit TLS; any other port upgrades with
STARTTLS unless the account disables TLS.
"""
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Optional

from mail_engine import config
from mail_engine.models import ComposeEmail, EmailAccount
from mail_engine.network.session import MailTransport
from mail_engine.utils.errors import (
    SmtpAuthenticationError,
    SmtpConnectionError,
    SmtpSendError,
)
from mail_engine.utils.mime import parse_message_ids


logger = logging.getLogger(__name__)


def build_mime_message(account: EmailAccount, compose: ComposeEmail,
                       message_id: Optional[str] = None) -> MIMEMultipart:
    """
    Build a MIME message from a composed email.

    Args:
        account: The sending account (From header and Message-ID domain).
        compose: The composed message. ``in_reply_to``/``references`` are
            copied into threading headers when set.
        message_id: Optional Message-ID (with or without angle brackets).

    Returns:
        A multipart/alternative message ready to send. Bcc is not written
        into the headers.
    """
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((account.name, account.email_address)) if account.name \
        else account.email_address
    msg["To"] = ", ".join(compose.to)
    if compose.cc:
        msg["Cc"] = ", ".join(compose.cc)
    msg["Subject"] = compose.subject
    msg["Date"] = formatdate(localtime=True)
    domain = account.email_address.rpartition("@")[2] or None
    if message_id:
        msg["Message-ID"] = f"<{message_id.strip('<>')}>"
    else:
        msg["Message-ID"] = make_msgid(domain=domain)
    if compose.in_reply_to:
        msg["In-Reply-To"] = compose.in_reply_to
    if compose.references:
        msg["References"] = compose.references

    if compose.text_body or not compose.html_body:
        msg.attach(MIMEText(compose.text_body or "", "plain", "utf-8"))
    if compose.html_body:
        msg.attach(MIMEText(compose.html_body, "html", "utf-8"))
    return msg


class SmtpTransport(MailTransport):
    """Delivers messages over SMTP, one connection per send."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def _open(self, account: EmailAccount) -> smtplib.SMTP:
        host = account.smtp_host
        port = account.smtp_port or config.DEFAULT_SMTP_PORT
        timeout = config.NETWORK_TIMEOUT_SECONDS if self.timeout is None else self.timeout
        logger.info("Connecting to SMTP server %s:%s", host, port)
        try:
            if port == 465:
                connection = smtplib.SMTP_SSL(host, port, timeout=timeout,
                                              context=ssl.create_default_context())
            else:
                connection = smtplib.SMTP(host, port, timeout=timeout)
                if account.smtp_use_tls:
                    connection.starttls(context=ssl.create_default_context())
        except (OSError, smtplib.SMTPException) as e:
            raise SmtpConnectionError(f"Failed to connect to SMTP server {host}:{port}: {e}") from e

        try:
            connection.login(account.smtp_username or account.email_address, account.smtp_password)
        except smtplib.SMTPAuthenticationError as e:
            self._quit(connection)
            raise SmtpAuthenticationError(f"SMTP authentication failed: {e}") from e
        except (OSError, smtplib.SMTPException) as e:
            self._quit(connection)
            raise SmtpConnectionError(f"SMTP login failed: {e}") from e
        return connection

    @staticmethod
    def _quit(connection: smtplib.SMTP) -> None:
        try:
            connection.quit()
        except (OSError, smtplib.SMTPException):
            connection.close()

    def send(self, account: EmailAccount, compose: ComposeEmail) -> str:
        """
        Send a composed email.

        Returns:
            The Message-ID assigned to the message, without angle brackets.

        Raises:
            SmtpError: If connecting, authenticating or sending fails.
        """
        recipients = compose.all_recipients()
        if not recipients:
            raise SmtpSendError("No recipients specified")
        if not compose.subject:
            logger.warning("Sending email without subject")

        mime_msg = build_mime_message(account, compose)
        message_id = parse_message_ids(mime_msg["Message-ID"])[0]

        connection = self._open(account)
        try:
            refused = connection.send_message(mime_msg, from_addr=account.email_address,
                                              to_addrs=recipients)
        except smtplib.SMTPRecipientsRefused as e:
            raise SmtpSendError(f"Recipients refused: {e}") from e
        except smtplib.SMTPException as e:
            raise SmtpSendError(f"SMTP error: {e}") from e
        except OSError as e:
            raise SmtpConnectionError(f"Connection lost while sending: {e}") from e
        finally:
            self._quit(connection)

        if refused:
            raise SmtpSendError(f"Failed to send to recipients: {', '.join(refused)}")
        logger.info("Sent message %s to %d recipient(s)", message_id, len(recipients))
        return message_id
