# notifications.py
import logging
import smtplib
from email.message import EmailMessage
from typing import Dict, Optional

from databases import Database
from starlette.concurrency import run_in_threadpool

from lab_reservations import config
from lab_reservations.data_models import DispatchResult, NotificationType, ReservationStatus, utcnow
from lab_reservations.database import database as default_database
from lab_reservations.errors import TransportFailure
from lab_reservations.models import notifications

logger = logging.getLogger(__name__)

STATUS_MESSAGES: Dict[str, Dict[str, str]] = {
    ReservationStatus.APPROVED.value: {
        "title": "Reservation Approved",
        "message": "Your reservation for {equipment} has been approved. "
                   "You can now use the equipment during your scheduled time.",
    },
    ReservationStatus.REJECTED.value: {
        "title": "Reservation Rejected",
        "message": "Your reservation for {equipment} has been rejected. "
                   "Please contact the administrator for more information.",
    },
    ReservationStatus.ONGOING.value: {
        "title": "Reservation Started",
        "message": "Your reservation for {equipment} is now active. "
                   "Please follow all equipment usage guidelines.",
    },
    ReservationStatus.FINISHED.value: {
        "title": "Reservation Completed",
        "message": "Your reservation for {equipment} has been completed. "
                   "Thank you for using our service.",
    },
}


def status_message(status: str, equipment_name: str) -> Dict[str, str]:
    """Title and body shown to the requester for a status change."""
    status = getattr(status, "value", status)
    template = STATUS_MESSAGES.get(status)
    if template is None:
        return {
            "title": "Reservation Update",
            "message": f"Your reservation for {equipment_name} status has been updated to {status}.",
        }
    return {
        "title": template["title"],
        "message": template["message"].format(equipment=equipment_name),
    }


class SmtpEmailSender:
    """Sends plain-text mail over SMTP. Does nothing when no host is configured."""

    def __init__(self, host: str = None, port: int = None, username: Optional[str] = None,
                 password: Optional[str] = None, from_email: str = None, use_tls: bool = None):
        self.host = config.SMTP_HOST if host is None else host
        self.port = port or config.SMTP_PORT
        self.username = username if username is not None else config.SMTP_USERNAME
        self.password = password if password is not None else config.SMTP_PASSWORD
        self.from_email = from_email or config.SMTP_FROM_EMAIL
        self.use_tls = config.SMTP_USE_TLS if use_tls is None else use_tls

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)

    async def send(self, to: str, subject: str, text: str) -> bool:
        if not self.enabled:
            logger.debug("SMTP disabled, not sending '%s' to %s", subject, to)
            return False

        message = EmailMessage()
        message["From"] = self.from_email
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        try:
            await run_in_threadpool(self._send, message)
        except (smtplib.SMTPException, OSError) as e:
            raise TransportFailure(f"Could not send email to {to}: {e}") from e
        logger.info("Email '%s' sent to %s", subject, to)
        return True


class NotificationDispatcher:
    """Tells a requester about a status change: one stored notification plus one email.

    ``dispatch`` never raises; anything that goes wrong ends up in the
    returned result's warnings.
    """

    def __init__(self, db: Optional[Database] = None, email_sender=None):
        self.db = db or default_database
        self.email_sender = email_sender if email_sender is not None else SmtpEmailSender()

    async def create_notification(self, user_id: int, title: str, message: str,
                                  type: NotificationType = NotificationType.SYSTEM) -> int:
        query = notifications.insert().values(
            user_id=user_id,
            title=title,
            message=message,
            type=NotificationType(type).value,
            read=False,
            created_at=utcnow(),
        )
        return await self.db.execute(query)

    async def dispatch(self, target_user_id: int, equipment_name: str, new_status,
                       email: Optional[str] = None) -> DispatchResult:
        result = DispatchResult()
        content = status_message(new_status, equipment_name)

        try:
            result.notification_id = await self.create_notification(
                target_user_id, content["title"], content["message"],
                NotificationType.RESERVATION_UPDATE,
            )
        except Exception as e:
            logger.error("Failed to create notification for user %s", target_user_id, exc_info=True)
            result.warnings.append(f"notification: {e}")

        if email:
            try:
                result.email_sent = bool(await self.email_sender.send(email, content["title"], content["message"]))
            except Exception as e:
                logger.warning("Failed to email user %s: %s", target_user_id, e)
                result.warnings.append(f"email: {e}")

        return result
