"""
Mosaic Distributor

Publishes a finished mosaic and tells the contributors where it is.
Nothing in here is allowed to fail a pipeline run: storage and mail
errors are logged and the run falls back to the locally served URL.
"""

import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from pathlib import Path
from typing import Iterable, List, Optional

import config
from runtime.errors import DistributionFailure

logger = logging.getLogger(__name__)


def dedupe_recipients(recipients: Iterable[str]) -> List[str]:
    seen = []
    for r in recipients or []:
        email = (r or "").strip().lower()
        if email and email not in seen:
            seen.append(email)
    return seen


@dataclass
class DistributionResult:
    url: str
    local_url: str
    uploaded: bool = False
    notified: bool = False
    attached: bool = False
    recipients: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class EmailNotifier:
    def __init__(
        self,
        host: Optional[str] = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        user: Optional[str] = config.SMTP_USER,
        password: Optional[str] = config.SMTP_PASSWORD,
        use_tls: bool = config.SMTP_USE_TLS,
        sender: str = config.MAIL_FROM,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.sender = sender

    def build_message(self, recipients: List[str], url: str, attachment: Optional[Path] = None) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = "Your Boogie Square mosaic is ready"
        msg["From"] = self.sender
        msg["To"] = self.sender
        msg["Bcc"] = ", ".join(recipients)
        msg.set_content(
            "All 16 squares are filled and the final mosaic has been rendered.\n\n"
            f"Watch it here: {url}\n"
        )
        if attachment is not None:
            msg.add_attachment(
                attachment.read_bytes(),
                maintype="video",
                subtype="mp4",
                filename=attachment.name,
            )
        return msg

    def send(self, recipients: List[str], url: str, attachment: Optional[Path] = None) -> None:
        if not self.host:
            raise DistributionFailure("SMTP_HOST not configured")
        try:
            msg = self.build_message(recipients, url, attachment)
            with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(msg, to_addrs=recipients)
        except (smtplib.SMTPException, OSError) as e:
            raise DistributionFailure(f"mail to {len(recipients)} recipients failed: {e}") from e


class Distributor:
    def __init__(
        self,
        object_store=None,
        notifier: Optional[EmailNotifier] = None,
        attachment_max_bytes: int = config.ATTACHMENT_MAX_BYTES,
        public_base_url: str = config.PUBLIC_BASE_URL,
        key_prefix: str = "mosaics",
    ):
        self.object_store = object_store
        self.notifier = notifier
        self.attachment_max_bytes = attachment_max_bytes
        self.public_base_url = public_base_url.rstrip("/")
        self.key_prefix = key_prefix

    def local_url(self, final_clip: Path) -> str:
        return f"{self.public_base_url}/outputs/{final_clip.name}"

    def distribute(self, final_clip: Path, recipients: Optional[Iterable[str]] = None) -> DistributionResult:
        local_url = self.local_url(final_clip)
        result = DistributionResult(url=local_url, local_url=local_url)

        if self.object_store is not None:
            try:
                result.url = self.object_store.publish(final_clip, f"{self.key_prefix}/{final_clip.name}")
                result.uploaded = True
                logger.info(f"✅ Mosaic uploaded: {result.url}")
            except DistributionFailure as e:
                logger.warning(f"Mosaic upload failed, serving locally: {e}")
                result.errors.append(str(e))

        result.recipients = dedupe_recipients(recipients or [])
        if not result.recipients:
            return result
        if self.notifier is None:
            logger.warning("No notifier configured, skipping mosaic notification")
            return result

        try:
            size = final_clip.stat().st_size
        except OSError as e:
            logger.warning(f"Cannot size mosaic for attachment, sending link only: {e}")
            size = self.attachment_max_bytes
        attach = size < self.attachment_max_bytes
        if not attach:
            logger.info(f"Mosaic is {size} bytes, sending link only")
        try:
            self.notifier.send(result.recipients, result.url, final_clip if attach else None)
            result.notified = True
            result.attached = attach
        except DistributionFailure as e:
            logger.warning(f"Mosaic notification failed: {e}")
            result.errors.append(str(e))
        return result
