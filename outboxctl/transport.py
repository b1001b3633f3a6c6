"""
Mail transport adapters.

A transport turns one resolved OutboundMessage into a provider call and
reports the outcome as a SendResult. Failures carry a classification:

  permanent=True   retrying the same message cannot help (5xx, bad recipient)
  permanent=False  worth another attempt after backoff (4xx, timeouts, network)

Transports may also raise TransientDeliveryError / PermanentDeliveryError;
the worker treats that exactly like the matching failed SendResult. Sends are
not deduplicated here: a transient failure after the provider accepted the
message can lead to a second delivery on retry.
"""

import logging
import os
import re
import smtplib
import socket
import time
import uuid
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Dict, Optional

from .exceptions import PermanentDeliveryError, TransientDeliveryError
from .models import OutboundMessage, TenantCredential

log = logging.getLogger(__name__)

_monotonic = time.monotonic


@dataclass
class SendResult:
    ok: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    permanent: bool = False

    @classmethod
    def delivered(cls, provider_message_id: Optional[str]) -> "SendResult":
        return cls(ok=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, error: str, *, permanent: bool = False) -> "SendResult":
        return cls(ok=False, error=error, permanent=permanent)


class Transport:
    """Interface every transport implements."""

    name = "base"

    def send(self, credential: TenantCredential, message: OutboundMessage, *, timeout: float) -> SendResult:
        raise NotImplementedError("Transport.send() must be implemented by subclasses")


class DryRunTransport(Transport):
    """Never touches the network; every send succeeds with a synthetic id."""

    name = "dry-run"

    def send(self, credential, message, *, timeout):
        log.info(
            "dry-run send to %s: %s", message.recipient, message.subject,
            extra={"tenant_id": credential.tenant_id, "event": "dry_run_send"},
        )
        return SendResult.delivered(f"dry-run-{uuid.uuid4()}")


def _strip_html(body: str) -> str:
    text = re.sub(r"<br\s*/?>", "\n", body, flags=re.IGNORECASE)
    return re.sub(r"<[^>]*>", "", text)


def build_email(credential: TenantCredential, message: OutboundMessage, *, default_sender: str) -> EmailMessage:
    sender = credential.sender_email or default_sender
    msg = EmailMessage()
    msg["From"] = formataddr((credential.sender_name or "", sender)) if credential.sender_name else sender
    msg["To"] = message.recipient
    msg["Subject"] = message.subject
    domain = sender.rsplit("@", 1)[-1] if "@" in sender else None
    msg["Message-ID"] = make_msgid(domain=domain)
    if message.in_reply_to:
        msg["In-Reply-To"] = message.in_reply_to
        msg["References"] = message.in_reply_to

    msg.set_content(_strip_html(message.body))
    msg.add_alternative(message.body, subtype="html")
    for att in message.attachments:
        maintype, _, subtype = att.content_type.partition("/")
        msg.add_attachment(
            att.content.encode("utf-8"),
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=att.filename,
        )
    return msg


class SmtpTransport(Transport):
    name = "smtp"

    def __init__(self, host: str, port: int = 587, username: Optional[str] = None,
                 password: Optional[str] = None, use_tls: bool = True,
                 default_sender: Optional[str] = None):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.default_sender = default_sender or username or "no-reply@localhost"

    @classmethod
    def from_env(cls) -> "SmtpTransport":
        host = os.getenv("SMTP_HOST", "").strip()
        if not host:
            raise ValueError("SMTP_HOST must be set to use the smtp transport.")
        return cls(
            host=host,
            port=int(os.getenv("SMTP_PORT", "587")),
            username=os.getenv("SMTP_USER") or None,
            password=os.getenv("SMTP_PASS") or None,
            use_tls=os.getenv("SMTP_STARTTLS", "true").lower() in ("1", "true", "yes", "on"),
            default_sender=os.getenv("SMTP_FROM") or None,
        )

    def _deliver(self, msg: EmailMessage, timeout: float):
        """
        One SMTP session bounded by `timeout` seconds overall.

        smtplib applies its timeout to each socket operation, so before every
        protocol step the socket timeout is cut to what is left of the budget.
        A server trickling bytes within a single step can still hold that step
        past the deadline; the following step then fails at once, and a send
        that outlives its lease loses it to the stale-lease path.
        """
        deadline = _monotonic() + timeout

        def budget(s):
            left = deadline - _monotonic()
            if left <= 0:
                raise socket.timeout(f"SMTP session exceeded {timeout}s")
            if s.sock is not None:
                s.sock.settimeout(left)

        with smtplib.SMTP(self.host, self.port, timeout=timeout) as s:
            budget(s)
            s.ehlo()
            if self.use_tls:
                budget(s)
                s.starttls()
                budget(s)
                s.ehlo()
            if self.username and self.password:
                budget(s)
                s.login(self.username, self.password)
            budget(s)
            s.send_message(msg)

    def send(self, credential, message, *, timeout):
        msg = build_email(credential, message, default_sender=self.default_sender)
        try:
            self._deliver(msg, timeout)
        except smtplib.SMTPRecipientsRefused as e:
            return SendResult.failed(f"recipient refused: {e.recipients}", permanent=True)
        except smtplib.SMTPResponseException as e:
            # 5xx is final, 4xx asks us to come back later
            detail = e.smtp_error.decode("utf-8", "replace") if isinstance(e.smtp_error, bytes) else str(e.smtp_error)
            return SendResult.failed(f"smtp {e.smtp_code}: {detail}", permanent=e.smtp_code >= 500)
        except (smtplib.SMTPException, socket.timeout, OSError) as e:
            return SendResult.failed(f"{type(e).__name__}: {e}")
        return SendResult.delivered(msg["Message-ID"])


_TRANSPORTS: Dict[str, type] = {
    "dry-run": DryRunTransport,
    "smtp": SmtpTransport,
}


def get_transport(name: Optional[str]) -> Transport:
    key = (name or "dry-run").strip().lower()
    if key not in _TRANSPORTS:
        raise ValueError(f"Unknown transport {name!r}; choose from: {', '.join(sorted(_TRANSPORTS))}")
    if key == "smtp":
        return SmtpTransport.from_env()
    return DryRunTransport()


def call_transport(transport: Transport, credential: TenantCredential, message: OutboundMessage,
                   *, timeout: float) -> SendResult:
    """Normalise raised delivery errors into SendResult."""
    try:
        return transport.send(credential, message, timeout=timeout)
    except PermanentDeliveryError as e:
        return SendResult.failed(str(e) or type(e).__name__, permanent=True)
    except TransientDeliveryError as e:
        return SendResult.failed(str(e) or type(e).__name__)
