# backend/app/services/account_deletion_service.py

import logging
import math
import secrets
from datetime import timedelta
from typing import Awaitable, List, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError
from bson import ObjectId

from app.core.config import settings
from app.data_access.mongo_client import (
    AUTHENTICATED_USERS,
    WEB_SESSIONS,
    auth_session_repository,
    is_expired,
    qr_session_repository,
)
from app.services.deletion_notification_service import DeletionNotificationService
from app.utils.helpers import ensure_utc, escape_regex, utc_now
from app.utils.validation import EMAIL_PATTERN

logger = logging.getLogger(__name__)

DELETION_REQUESTS = "DeletionRequests"
VERIFICATION_TOKENS = "DeletionVerificationTokens"
AUDIT_LOG = "DeletionAuditLog"

STATUS_PENDING_VERIFICATION = "pending_verification"
STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_PENDING_VERIFICATION)
MAX_REASON_LENGTH = 500


class AccountDeletionError(Exception):
    """Base class for deletion request failures."""
    pass


class AccountNotFoundError(AccountDeletionError):
    pass


class DeletionAlreadyPendingError(AccountDeletionError):
    pass


class InvalidDeletionRequestError(AccountDeletionError):
    pass


class DeletionRateLimitError(AccountDeletionError):
    pass


class InvalidVerificationTokenError(AccountDeletionError):
    pass


class DeletionRequestNotFoundError(AccountDeletionError):
    pass


def generate_verification_token() -> str:
    """32 URL-safe characters."""
    return secrets.token_urlsafe(24)


def _clean_reason(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    if not isinstance(reason, str):
        raise InvalidDeletionRequestError("Reason must be a string")
    if len(reason) > MAX_REASON_LENGTH:
        raise InvalidDeletionRequestError(f"Reason must be less than {MAX_REASON_LENGTH} characters")
    return reason.strip() or None


def _oid(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(str(value)):
        raise DeletionRequestNotFoundError(f"Invalid deletion request id: {value}")
    return ObjectId(str(value))


class AccountDeletionService:
    """
    Account deletion requests with a grace period, email verification for
    requests made without signing in, and an audit trail of every step.

    Status lifecycle: pending_verification -> pending -> completed | cancelled | failed.
    """

    def __init__(self, users_db: AsyncIOMotorDatabase, media_db: AsyncIOMotorDatabase):
        self.users_db = users_db
        self.media_db = media_db
        self.requests = users_db[DELETION_REQUESTS]
        self.tokens = users_db[VERIFICATION_TOKENS]
        self.audit = users_db[AUDIT_LOG]
        self.notifier = DeletionNotificationService(users_db, media_db)

    async def _notify(self, what: str, send: Awaitable[Any]) -> None:
        """Runs a notification; delivery failures are logged and never undo the deletion step."""
        try:
            await send
        except (PyMongoError, OSError) as e:
            logger.error(f"Failed to send {what}: {e}", exc_info=True)

    async def _audit(
        self,
        request_id: ObjectId,
        action: str,
        performed_by: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.audit.insert_one({
            "deletionRequestId": request_id,
            "action": action,
            "performedBy": ObjectId(performed_by) if performed_by and ObjectId.is_valid(str(performed_by)) else None,
            "performedAt": utc_now(),
            "details": details or {},
        })

    def _new_request(self, user: Dict[str, Any], request_type: str, status: str, reason: Optional[str]) -> Dict[str, Any]:
        now = utc_now()
        return {
            "_id": ObjectId(),
            "userId": user["_id"],
            "email": (user.get("email") or "").lower(),
            "requestType": request_type,
            "status": status,
            "reason": reason,
            "requestedAt": now,
            "scheduledDeletionAt": now + timedelta(days=settings.DELETION_GRACE_PERIOD_DAYS),
            "createdAt": now,
            "updatedAt": now,
        }

    async def create_authenticated_request(self, user_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Schedules deletion of a signed-in user's account after the grace period.

        Raises:
            AccountNotFoundError: If the user does not exist.
            DeletionAlreadyPendingError: If a request is already active.
        """
        reason = _clean_reason(reason)
        user = await self.users_db[AUTHENTICATED_USERS].find_one({"_id": ObjectId(str(user_id))})
        if not user:
            raise AccountNotFoundError("User not found")
        if await self.requests.find_one({"userId": user["_id"], "status": {"$in": list(ACTIVE_STATUSES)}}):
            raise DeletionAlreadyPendingError("A deletion request is already pending for this user")

        request = self._new_request(user, "authenticated", STATUS_PENDING, reason)
        await self.requests.insert_one(request)
        await self._audit(request["_id"], "request_created", user_id, {"requestType": "authenticated", "reason": reason})
        logger.info(f"Deletion request {request['_id']} created for user {user_id}")

        await self._notify("deletion confirmation", self.notifier.send_request_confirmation(request))
        await self._notify("admin deletion notice", self.notifier.send_admin_request_notice(request))
        return request

    async def create_public_request(
        self, email: str, reason: Optional[str] = None, client_ip: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Creates an unverified deletion request for the account behind ``email``
        and a verification token valid for 24 hours.

        Returns:
            ``{"deletionRequest": {...}, "verificationToken": {...}}``

        Raises:
            InvalidDeletionRequestError: For a malformed email or reason.
            AccountNotFoundError: If no account uses the email.
            DeletionAlreadyPendingError: If a request is already active.
            DeletionRateLimitError: After 3 requests from one IP within an hour.
        """
        if not isinstance(email, str) or not EMAIL_PATTERN.match(email.strip()):
            raise InvalidDeletionRequestError("Invalid email format")
        email = email.strip().lower()
        reason = _clean_reason(reason)

        user = await self.users_db[AUTHENTICATED_USERS].find_one(
            {"email": {"$regex": f"^{escape_regex(email)}$", "$options": "i"}}
        )
        if not user:
            raise AccountNotFoundError("No account found with this email address")
        if await self.requests.find_one({"email": email, "status": {"$in": list(ACTIVE_STATUSES)}}):
            raise DeletionAlreadyPendingError("A deletion request is already pending for this email")

        if client_ip:
            cutoff = utc_now() - timedelta(hours=1)
            recent = await self.requests.find({"metadata.clientIp": client_ip}, {"requestedAt": 1}).to_list(length=None)
            if sum(1 for r in recent if (ensure_utc(r.get("requestedAt")) or cutoff) > cutoff) >= settings.DELETION_REQUESTS_PER_IP_PER_HOUR:
                raise DeletionRateLimitError("Too many deletion requests from this IP address. Please try again later.")

        request = self._new_request(user, "public", STATUS_PENDING_VERIFICATION, reason)
        request["metadata"] = {"clientIp": client_ip, "userAgent": None}
        now = utc_now()
        token = {
            "_id": ObjectId(),
            "deletionRequestId": request["_id"],
            "email": email,
            "token": generate_verification_token(),
            "expiresAt": now + timedelta(hours=settings.DELETION_TOKEN_TTL_HOURS),
            "used": False,
            "createdAt": now,
        }
        await self.requests.insert_one(request)
        try:
            await self.tokens.insert_one(token)
        except PyMongoError as e:
            # Every public request has a token.
            logger.error(f"Failed to store verification token for request {request['_id']}: {e}", exc_info=True)
            await self.requests.delete_one({"_id": request["_id"]})
            raise
        await self._audit(request["_id"], "public_request_created", None, {"requestType": "public", "reason": reason})
        logger.info(f"Public deletion request {request['_id']} awaiting email verification")

        await self._notify("verification email", self.notifier.send_verification_email(request, token["token"]))
        await self._notify("admin deletion notice", self.notifier.send_admin_request_notice(request))
        return {"deletionRequest": request, "verificationToken": token}

    async def verify_deletion_token(self, token: str) -> Dict[str, Any]:
        """
        Confirms a public request: the token is consumed and the request becomes pending.

        Raises:
            InvalidVerificationTokenError: If the token is unknown, used or expired.
        """
        now = utc_now()
        record = await self.tokens.find_one({"token": token, "used": False})
        if not record or is_expired(record.get("expiresAt"), now):
            raise InvalidVerificationTokenError("Invalid or expired verification token")

        await self.tokens.update_one({"_id": record["_id"]}, {"$set": {"used": True, "usedAt": now}})
        request = await self.requests.find_one_and_update(
            {"_id": record["deletionRequestId"]},
            {"$set": {"status": STATUS_PENDING, "verifiedAt": now, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not request:
            raise DeletionRequestNotFoundError("Deletion request not found")
        await self._audit(record["deletionRequestId"], "email_verified", None, {"email": record.get("email")})
        await self._notify("deletion confirmation", self.notifier.send_request_confirmation(request))
        return request

    async def get_deletion_requests(
        self, filters: Optional[Dict[str, Any]] = None, page: int = 0, limit: int = 20
    ) -> Dict[str, Any]:
        """Admin listing, newest first, with the account attached as ``user``; page is 0-based."""
        filters = filters or {}
        query: Dict[str, Any] = {}
        if filters.get("status"):
            query["status"] = filters["status"]
        if filters.get("requestType"):
            query["requestType"] = filters["requestType"]
        if filters.get("email"):
            query["email"] = {"$regex": escape_regex(filters["email"]), "$options": "i"}
        if filters.get("userId"):
            query["userId"] = ObjectId(str(filters["userId"]))

        total = await self.requests.count_documents(query)
        requests = await self.requests.find(query).sort("requestedAt", DESCENDING) \
            .skip(page * limit).limit(limit).to_list(length=limit)

        user_ids = list({r["userId"] for r in requests if r.get("userId")})
        users = await self.users_db[AUTHENTICATED_USERS].find(
            {"_id": {"$in": user_ids}}, {"name": 1, "email": 1, "image": 1}
        ).to_list(length=None) if user_ids else []
        users_by_id = {u["_id"]: u for u in users}
        for request in requests:
            request["user"] = users_by_id.get(request.get("userId"))

        return {
            "requests": requests,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": -(-total // limit) if limit else 0,
                "hasMore": (page + 1) * limit < total,
            },
        }

    async def get_latest_request(self, user_id: Optional[str] = None, email: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if user_id:
            query["userId"] = ObjectId(str(user_id))
        if email:
            query["email"] = email.strip().lower()
        if not query:
            return None
        docs = await self.requests.find(query).sort("requestedAt", DESCENDING).limit(1).to_list(length=1)
        return docs[0] if docs else None

    async def cancel_deletion_request(
        self,
        request_id: str,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Cancels an active request. ``user_id`` restricts it to that user's own requests.

        Raises:
            DeletionRequestNotFoundError: If no cancellable request matches.
        """
        query: Dict[str, Any] = {"_id": _oid(request_id), "status": {"$in": list(ACTIVE_STATUSES)}}
        if user_id:
            query["userId"] = ObjectId(str(user_id))
        now = utc_now()
        request = await self.requests.find_one_and_update(
            query,
            {"$set": {
                "status": STATUS_CANCELLED,
                "cancelledAt": now,
                "cancelledBy": performed_by,
                "cancellationReason": reason,
                "updatedAt": now,
            }},
            return_document=ReturnDocument.AFTER,
        )
        if not request:
            raise DeletionRequestNotFoundError("Deletion request not found or cannot be cancelled")
        await self._audit(request["_id"], "request_cancelled", performed_by, {"reason": reason})
        logger.info(f"Deletion request {request_id} cancelled")
        await self._notify("cancellation confirmation", self.notifier.send_cancellation_confirmation(request))
        return request

    async def _delete_user_data(self, user_oid: ObjectId) -> Dict[str, int]:
        """Removes the user's documents from every collection that holds them; returns counts per collection."""
        user_id = str(user_oid)
        both_forms = {"$in": [user_oid, user_id]}
        results: Dict[str, int] = {}

        results["PlaybackStatus"] = (await self.media_db["PlaybackStatus"].delete_many({"userId": both_forms})).deleted_count
        results["Watchlist"] = (await self.media_db["Watchlist"].delete_many({"userId": both_forms})).deleted_count
        results["Playlists"] = (await self.media_db["Playlists"].delete_many({"ownerId": both_forms})).deleted_count
        await self.media_db["Playlists"].update_many(
            {"collaborators.userId": user_oid}, {"$pull": {"collaborators": {"userId": user_oid}}}
        )
        results["PlaylistVisibility"] = (await self.users_db["PlaylistVisibility"].delete_many({"userId": both_forms})).deleted_count
        results["Notifications"] = (await self.media_db["Notifications"].delete_many({"userId": both_forms})).deleted_count
        results["authSessions"] = await auth_session_repository(self.users_db).delete_for_user(user_id)
        results["qrAuthSessions"] = await qr_session_repository(self.users_db).delete_for_user(user_id)
        results["session"] = (await self.users_db[WEB_SESSIONS].delete_many({"userId": both_forms})).deleted_count
        results["usedTokens"] = (await self.users_db["usedTokens"].delete_many({"userId": user_id})).deleted_count
        results[AUTHENTICATED_USERS] = (await self.users_db[AUTHENTICATED_USERS].delete_one({"_id": user_oid})).deleted_count
        return results

    async def execute_account_deletion(self, request_id: str, performed_by: Optional[str] = None) -> Dict[str, Any]:
        """
        Deletes the account behind a pending request.

        Steps run one after another; when one fails the request is marked
        failed with the error and the exception propagates.

        Raises:
            DeletionRequestNotFoundError: If the request does not exist.
            InvalidDeletionRequestError: If the request is not pending.
        """
        request_oid = _oid(request_id)
        request = await self.requests.find_one({"_id": request_oid})
        if not request:
            raise DeletionRequestNotFoundError("Deletion request not found")
        if request.get("status") != STATUS_PENDING:
            raise InvalidDeletionRequestError("Deletion request is not in pending status")

        try:
            results = await self._delete_user_data(request["userId"])
        except PyMongoError as e:
            logger.error(f"Account deletion {request_id} failed: {e}", exc_info=True)
            await self.requests.update_one(
                {"_id": request_oid},
                {"$set": {"status": STATUS_FAILED, "error": str(e), "updatedAt": utc_now()}},
            )
            await self._audit(request_oid, "deletion_failed", performed_by, {"error": str(e)})
            await self._notify("deletion failure notice", self.notifier.send_failure_notice(request, str(e)))
            raise

        now = utc_now()
        await self.requests.update_one(
            {"_id": request_oid},
            {"$set": {
                "status": STATUS_COMPLETED,
                "completedAt": now,
                "completedBy": performed_by,
                "deletionResults": results,
                "updatedAt": now,
            }},
        )
        await self._audit(request_oid, "deletion_completed", performed_by, {"deletionResults": results})
        logger.info(f"Account deletion {request_id} completed: {results}")
        await self._notify("deletion completion notice", self.notifier.send_completion_notice(request, results))
        return {"success": True, "deletionResults": results}

    async def get_deletion_audit_logs(self, request_id: str) -> List[Dict[str, Any]]:
        return await self.audit.find({"deletionRequestId": _oid(request_id)}) \
            .sort("performedAt", ASCENDING).to_list(length=None)

    async def get_ready_for_deletion(self) -> List[Dict[str, Any]]:
        """Pending requests whose grace period is over."""
        now = utc_now()
        pending = await self.requests.find({"status": STATUS_PENDING}).to_list(length=None)
        return [r for r in pending if is_expired(r.get("scheduledDeletionAt"), now)]

    async def cleanup_expired_tokens(self) -> int:
        now = utc_now()
        tokens = await self.tokens.find({}, {"expiresAt": 1}).to_list(length=None)
        expired = [t["_id"] for t in tokens if is_expired(t.get("expiresAt"), now)]
        if not expired:
            return 0
        result = await self.tokens.delete_many({"_id": {"$in": expired}})
        return result.deleted_count

    async def send_deletion_reminders(self, days_before: int = 7) -> int:
        """Reminds each pending request's owner once, when deletion is ``days_before`` days away or closer."""
        now = utc_now()
        horizon = now + timedelta(days=days_before)
        pending = await self.requests.find(
            {"status": STATUS_PENDING, "reminderSentAt": {"$exists": False}}
        ).to_list(length=None)
        sent = 0
        for request in pending:
            scheduled = ensure_utc(request.get("scheduledDeletionAt"))
            if not scheduled or scheduled <= now or scheduled > horizon:
                continue
            days_remaining = math.ceil((scheduled - now).total_seconds() / 86400)
            await self._notify("deletion reminder", self.notifier.send_deletion_reminder(request, days_remaining))
            await self.requests.update_one({"_id": request["_id"]}, {"$set": {"reminderSentAt": now}})
            sent += 1
        return sent

    async def process_scheduled_deletions(self, performed_by: Optional[str] = None) -> Dict[str, Any]:
        """
        The periodic job: sends reminders, executes every request whose grace
        period is over, and drops expired verification tokens.
        """
        reminders = await self.send_deletion_reminders()
        ready = await self.get_ready_for_deletion()
        succeeded, failed = [], []
        for request in ready:
            try:
                await self.execute_account_deletion(str(request["_id"]), performed_by=performed_by)
                succeeded.append(str(request["_id"]))
            except (PyMongoError, AccountDeletionError) as e:
                logger.error(f"Scheduled deletion {request['_id']} failed: {e}")
                failed.append({"requestId": str(request["_id"]), "error": str(e)})
        expired_tokens = await self.cleanup_expired_tokens()
        logger.info(
            f"Scheduled deletion run: {len(succeeded)} completed, {len(failed)} failed, "
            f"{reminders} reminders, {expired_tokens} expired tokens removed"
        )
        return {
            "processed": len(ready),
            "succeeded": succeeded,
            "failed": failed,
            "remindersSent": reminders,
            "expiredTokensRemoved": expired_tokens,
        }
