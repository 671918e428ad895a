# backend/app/services/deletion_notification_service.py

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import List, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.config import settings
from app.data_access.mongo_client import AUTHENTICATED_USERS
from app.services.notification_service import NotificationService
from app.utils.helpers import escape_regex

logger = logging.getLogger(__name__)

VERIFY_DELETION_PATH = "/account/public/verify-deletion"
ADMIN_ACTION_URL = "/admin/deletion-requests"


def verification_url(token: str) -> str:
    scheme = "http" if settings.PUBLIC_HOST.startswith(("localhost", "127.0.0.1")) else "https"
    return f"{scheme}://{settings.PUBLIC_HOST}{settings.API_V1_STR}{VERIFY_DELETION_PATH}?token={token}"


def _send_smtp(message: EmailMessage) -> None:
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=20) as smtp:
        if settings.SMTP_USE_TLS:
            smtp.starttls()
        if settings.SMTP_USER and settings.SMTP_PASSWORD:
            smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD.get_secret_value())
        smtp.send_message(message)


class DeletionNotificationService:
    """
    Tells users and admins about each step of an account deletion.

    Users get in-app notifications while their account exists and email for
    anything that must reach them outside the app (verification links,
    completion). Admins, resolved from ADMIN_USER_EMAILS, get in-app notices.
    """

    def __init__(self, users_db: AsyncIOMotorDatabase, media_db: AsyncIOMotorDatabase):
        self.users_db = users_db
        self.notifications = NotificationService(media_db)

    async def send_email(self, to: str, subject: str, body: str) -> str:
        """Sends through SMTP when configured, otherwise logs the message. Returns the method used."""
        if not settings.SMTP_HOST:
            logger.info(f"SMTP not configured, email to {to} logged instead.\nSubject: {subject}\n\n{body}")
            return "logged"

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = settings.SMTP_FROM or settings.SMTP_USER or f"no-reply@{settings.PUBLIC_HOST.split(':')[0]}"
        message["To"] = to
        message.set_content(body)
        await asyncio.to_thread(_send_smtp, message)
        logger.info(f"Sent '{subject}' email to {to}")
        return "smtp"

    async def _admin_user_ids(self) -> List[str]:
        if not settings.ADMIN_USER_EMAILS:
            return []
        query = {"$or": [
            {"email": {"$regex": f"^{escape_regex(email)}$", "$options": "i"}}
            for email in settings.ADMIN_USER_EMAILS
        ]}
        admins = await self.users_db[AUTHENTICATED_USERS].find(query, {"_id": 1}).to_list(length=None)
        return [str(a["_id"]) for a in admins]

    async def _notify_admins(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        admin_ids = await self._admin_user_ids()
        if not admin_ids:
            logger.warning(f"No admin accounts to notify about '{data['type']}'")
            return []
        notification = {**data, "category": "admin", "data": {**data.get("data", {}), "actionUrl": ADMIN_ACTION_URL}}
        return await self.notifications.create_bulk_notifications(
            [{**notification, "userId": admin_id} for admin_id in admin_ids]
        )

    async def send_request_confirmation(self, request: Dict[str, Any]) -> Dict[str, Any]:
        scheduled = request["scheduledDeletionAt"].strftime("%Y-%m-%d")
        return await self.notifications.replace_by_group_key(str(request["userId"]), f"deletion_request_{request['userId']}", {
            "type": "account_deletion_request",
            "title": "Account Deletion Request Received",
            "message": (
                f"Your account will be permanently deleted on {scheduled} "
                "unless you cancel this request."
            ),
            "priority": "high",
            "category": "account",
            "data": {
                "deletionRequestId": str(request["_id"]),
                "scheduledDeletionAt": request["scheduledDeletionAt"],
                "actionUrl": "/account/deletion-status",
                "canCancel": True,
            },
        })

    async def send_verification_email(self, request: Dict[str, Any], token: str) -> str:
        body = (
            "You have requested to delete your account. To proceed, open the link below "
            "to verify your email address:\n\n"
            f"{verification_url(token)}\n\n"
            f"This link will expire in {settings.DELETION_TOKEN_TTL_HOURS} hours.\n\n"
            "If you did not request this deletion, please ignore this email.\n\n"
            f"Once verified, your account will be scheduled for permanent deletion in "
            f"{settings.DELETION_GRACE_PERIOD_DAYS} days. You can cancel the request at any time before then."
        )
        return await self.send_email(request["email"], "Verify Your Account Deletion Request", body)

    async def send_admin_request_notice(self, request: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._notify_admins({
            "type": "admin_deletion_request",
            "title": "New Account Deletion Request",
            "message": f"New {request['requestType']} deletion request from {request['email']}",
            "priority": "medium",
            "data": {
                "deletionRequestId": str(request["_id"]),
                "email": request["email"],
                "requestType": request["requestType"],
                "scheduledDeletionAt": request["scheduledDeletionAt"],
            },
        })

    async def send_cancellation_confirmation(self, request: Dict[str, Any]) -> None:
        if request.get("userId"):
            await self.notifications.replace_by_group_key(str(request["userId"]), f"deletion_cancelled_{request['userId']}", {
                "type": "account_deletion_cancelled",
                "title": "Account Deletion Cancelled",
                "message": "Your account deletion request has been cancelled. Your account will remain active.",
                "priority": "medium",
                "category": "account",
                "data": {"deletionRequestId": str(request["_id"]), "cancelledAt": request.get("cancelledAt")},
            })
        await self.send_email(
            request["email"],
            "Account Deletion Request Cancelled",
            "Your account deletion request has been cancelled. Your account will remain active "
            "and no data will be deleted.\n\nIf you did not cancel this request, please contact support.",
        )

    async def send_deletion_reminder(self, request: Dict[str, Any], days_remaining: int) -> None:
        scheduled = request["scheduledDeletionAt"].strftime("%Y-%m-%d")
        message = (
            f"Your account is scheduled for deletion in {days_remaining} days ({scheduled}). "
            "You can still cancel this request if you change your mind."
        )
        if request.get("userId"):
            await self.notifications.replace_by_group_key(str(request["userId"]), f"deletion_reminder_{request['userId']}", {
                "type": "account_deletion_reminder",
                "title": "Account Deletion Reminder",
                "message": message,
                "priority": "high",
                "category": "account",
                "data": {"deletionRequestId": str(request["_id"]), "daysRemaining": days_remaining, "canCancel": True},
            })
        await self.send_email(request["email"], f"Account Deletion Reminder - {days_remaining} Days Remaining", message)

    async def send_completion_notice(self, request: Dict[str, Any], results: Dict[str, int]) -> None:
        await self.send_email(
            request["email"],
            "Account Deletion Completed",
            "Your account deletion request has been completed. All your personal data has been "
            "permanently removed from our systems.",
        )
        await self._notify_admins({
            "type": "deletion_completed",
            "title": "Account Deletion Completed",
            "message": f"Account deletion completed for {request['email']}",
            "priority": "medium",
            "data": {"deletionRequestId": str(request["_id"]), "email": request["email"], "deletionResults": results},
        })

    async def send_failure_notice(self, request: Dict[str, Any], error: Optional[str]) -> List[Dict[str, Any]]:
        return await self._notify_admins({
            "type": "deletion_failure",
            "title": "Account Deletion Failed",
            "message": f"Failed to delete account for {request['email']}: {error}",
            "priority": "high",
            "data": {"deletionRequestId": str(request["_id"]), "email": request["email"], "error": error},
        })
