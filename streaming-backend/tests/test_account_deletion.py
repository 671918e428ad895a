from datetime import timedelta

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from app.core.config import settings
from app.services.account_deletion_service import (
    AccountDeletionService,
    AccountNotFoundError,
    DeletionAlreadyPendingError,
    DeletionRateLimitError,
    DeletionRequestNotFoundError,
    InvalidDeletionRequestError,
    InvalidVerificationTokenError,
    generate_verification_token,
)
from app.utils.helpers import utc_now

from conftest import ADMIN_ID, OTHER_USER_ID, USER_ID


@pytest.fixture
def service(users_db, media_db, users):
    return AccountDeletionService(users_db, media_db)


def test_verification_tokens_are_url_safe():
    token = generate_verification_token()
    assert len(token) == 32
    assert token != generate_verification_token()


async def test_authenticated_request_lifecycle(service):
    request = await service.create_authenticated_request(str(USER_ID), "  moving on  ")

    assert request["status"] == "pending"
    assert request["reason"] == "moving on"
    assert request["email"] == "viewer@example.com"
    assert (request["scheduledDeletionAt"] - request["requestedAt"]) == timedelta(days=30)

    with pytest.raises(DeletionAlreadyPendingError):
        await service.create_authenticated_request(str(USER_ID))

    with pytest.raises(DeletionRequestNotFoundError):
        await service.cancel_deletion_request(str(request["_id"]), user_id=str(OTHER_USER_ID))

    cancelled = await service.cancel_deletion_request(str(request["_id"]), performed_by=str(USER_ID), user_id=str(USER_ID))
    assert cancelled["status"] == "cancelled"
    with pytest.raises(DeletionRequestNotFoundError):
        await service.cancel_deletion_request(str(request["_id"]))

    actions = [log["action"] for log in await service.get_deletion_audit_logs(str(request["_id"]))]
    assert actions == ["request_created", "request_cancelled"]


async def test_invalid_requests(service):
    with pytest.raises(AccountNotFoundError):
        await service.create_authenticated_request(str(ObjectId()))
    with pytest.raises(InvalidDeletionRequestError):
        await service.create_authenticated_request(str(USER_ID), "x" * 501)
    with pytest.raises(InvalidDeletionRequestError):
        await service.create_public_request("not-an-email")
    with pytest.raises(AccountNotFoundError):
        await service.create_public_request("nobody@example.com")


async def test_public_request_needs_email_verification(service):
    result = await service.create_public_request("VIEWER@example.com ", client_ip="10.0.0.1")
    request, token = result["deletionRequest"], result["verificationToken"]

    assert request["status"] == "pending_verification"
    assert request["email"] == "viewer@example.com"
    assert token["used"] is False
    with pytest.raises(DeletionAlreadyPendingError):
        await service.create_public_request("viewer@example.com")

    verified = await service.verify_deletion_token(token["token"])
    assert verified["status"] == "pending"
    with pytest.raises(InvalidVerificationTokenError):
        await service.verify_deletion_token(token["token"])


async def test_expired_verification_token_is_rejected(service, users_db):
    result = await service.create_public_request("friend@example.com")
    await users_db["DeletionVerificationTokens"].update_one(
        {"_id": result["verificationToken"]["_id"]}, {"$set": {"expiresAt": utc_now() - timedelta(minutes=1)}}
    )

    with pytest.raises(InvalidVerificationTokenError):
        await service.verify_deletion_token(result["verificationToken"]["token"])
    assert await service.cleanup_expired_tokens() == 1


async def test_public_requests_are_rate_limited_per_ip(service, users_db):
    now = utc_now()
    await users_db["DeletionRequests"].insert_many([
        {"email": f"old{i}@example.com", "status": "cancelled", "requestedAt": now, "metadata": {"clientIp": "10.0.0.9"}}
        for i in range(3)
    ])

    with pytest.raises(DeletionRateLimitError):
        await service.create_public_request("viewer@example.com", client_ip="10.0.0.9")
    assert (await service.create_public_request("viewer@example.com", client_ip="10.0.0.10"))["deletionRequest"]


async def test_execution_removes_user_data(service, users_db, media_db):
    await media_db["PlaybackStatus"].insert_one({"userId": USER_ID, "videosWatched": []})
    await media_db["Watchlist"].insert_many([{"userId": USER_ID, "title": "a"}, {"userId": OTHER_USER_ID, "title": "b"}])
    await media_db["Playlists"].insert_many([
        {"ownerId": USER_ID, "name": "Mine"},
        {"ownerId": OTHER_USER_ID, "name": "Shared", "collaborators": [{"userId": USER_ID, "permission": "view"}]},
    ])
    await media_db["Notifications"].insert_one({"userId": USER_ID, "title": "hi"})
    await users_db["session"].insert_one({"userId": USER_ID, "sessionToken": "tok"})

    request = await service.create_authenticated_request(str(USER_ID))
    outcome = await service.execute_account_deletion(str(request["_id"]), performed_by=str(ADMIN_ID))

    results = outcome["deletionResults"]
    assert results["AuthenticatedUsers"] == 1
    assert results["Watchlist"] == 1
    assert results["Playlists"] == 1
    assert results["session"] == 1
    assert await users_db["AuthenticatedUsers"].find_one({"_id": USER_ID}) is None
    shared = await media_db["Playlists"].find_one({"name": "Shared"})
    assert shared["collaborators"] == []
    assert await media_db["Watchlist"].count_documents({}) == 1

    stored = await users_db["DeletionRequests"].find_one({"_id": request["_id"]})
    assert stored["status"] == "completed"
    with pytest.raises(InvalidDeletionRequestError):
        await service.execute_account_deletion(str(request["_id"]))


async def test_ready_for_deletion_and_admin_listing(service, users_db):
    due = await service.create_authenticated_request(str(USER_ID))
    await service.create_authenticated_request(str(OTHER_USER_ID))
    await users_db["DeletionRequests"].update_one(
        {"_id": due["_id"]}, {"$set": {"scheduledDeletionAt": utc_now() - timedelta(days=1)}}
    )

    ready = await service.get_ready_for_deletion()
    assert [r["_id"] for r in ready] == [due["_id"]]

    listing = await service.get_deletion_requests({"email": "VIEWER"}, page=0, limit=10)
    assert listing["pagination"]["total"] == 1
    assert listing["requests"][0]["user"]["name"] == "Viewer"


async def test_account_routes(client, users, auth_state, users_db):
    auth_state.user = users["viewer"]

    status_before = await client.get("/api/account/delete-request")
    assert status_before.json()["data"] == {"hasActiveRequest": False, "request": None}

    created = await client.post("/api/account/delete-request", json={"reason": "bye"})
    assert created.status_code == 200
    request_id = created.json()["data"]["requestId"]
    assert (await client.post("/api/account/delete-request", json={})).status_code == 409

    current = (await client.get("/api/account/delete-request")).json()["data"]
    assert current["hasActiveRequest"] is True
    assert current["request"]["canCancel"] is True

    cancelled = await client.delete("/api/account/delete-request", params={"requestId": request_id})
    assert cancelled.json()["data"]["status"] == "cancelled"
    missing = await client.delete("/api/account/delete-request", params={"requestId": request_id})
    assert missing.status_code == 404


async def test_public_and_admin_routes(client, users, auth_state, users_db):
    created = await client.post("/api/account/public/delete-request", json={"email": "friend@example.com"})
    assert created.json()["data"]["verificationRequired"] is True
    assert (await client.post("/api/account/public/delete-request", json={"email": "ghost@example.com"})).status_code == 404

    public_status = (await client.get("/api/account/public/delete-request", params={"email": "friend@example.com"})).json()
    assert public_status["data"]["requiresVerification"] is True
    assert public_status["data"]["scheduledDeletionAt"] is None

    token = await users_db["DeletionVerificationTokens"].find_one({"email": "friend@example.com"})
    verified = await client.get("/api/account/public/verify-deletion", params={"token": token["token"]})
    assert verified.json()["data"]["status"] == "pending"
    assert (await client.get("/api/account/public/verify-deletion", params={"token": "bogus"})).status_code == 400

    request_id = created.json()["data"]["requestId"]
    assert (await client.get("/api/account/admin/deletion-requests")).status_code == 401

    auth_state.user = users["admin"]
    listing = (await client.get("/api/account/admin/deletion-requests", params={"status": "pending"})).json()
    assert [r["_id"] for r in listing["requests"]] == [request_id]

    executed = await client.post(f"/api/account/admin/deletion-requests/{request_id}/execute")
    assert executed.json()["success"] is True
    again = await client.post(f"/api/account/admin/deletion-requests/{request_id}/execute")
    assert again.status_code == 400
    assert (await client.post(f"/api/account/admin/deletion-requests/{ObjectId()}/execute")).status_code == 404

    audit = (await client.get(f"/api/account/admin/deletion-requests/{request_id}/audit")).json()
    assert [entry["action"] for entry in audit] == ["public_request_created", "email_verified", "deletion_completed"]


class FakeSMTP:
    """Collects messages instead of talking to a mail server."""

    outbox = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, message):
        FakeSMTP.outbox.append(message)


@pytest.fixture
def outbox(monkeypatch):
    FakeSMTP.outbox = []
    monkeypatch.setattr(settings, "SMTP_HOST", "smtp.example.com")
    monkeypatch.setattr("app.services.deletion_notification_service.smtplib.SMTP", FakeSMTP)
    return FakeSMTP.outbox


async def test_public_request_emails_the_verification_link(service, media_db, outbox):
    result = await service.create_public_request("friend@example.com", client_ip="10.0.0.1")
    token = result["verificationToken"]["token"]

    assert len(outbox) == 1
    message = outbox[0]
    assert message["To"] == "friend@example.com"
    assert message["Subject"] == "Verify Your Account Deletion Request"
    assert f"/api/account/public/verify-deletion?token={token}" in message.get_content()

    admin_notices = await media_db["Notifications"].find({"userId": ADMIN_ID}).to_list(length=None)
    assert [n["type"] for n in admin_notices] == ["admin_deletion_request"]
    assert token not in str(admin_notices[0])


async def test_verification_link_is_logged_without_smtp(service, caplog):
    with caplog.at_level("INFO", logger="app.services.deletion_notification_service"):
        result = await service.create_public_request("friend@example.com")
    assert result["verificationToken"]["token"] in caplog.text


async def test_deletion_steps_notify_user_and_admins(service, media_db, outbox):
    request = await service.create_authenticated_request(str(USER_ID))
    confirmation = await media_db["Notifications"].find_one({"userId": USER_ID})
    assert confirmation["type"] == "account_deletion_request"
    assert confirmation["data"]["deletionRequestId"] == str(request["_id"])

    await service.cancel_deletion_request(str(request["_id"]), performed_by=str(USER_ID))
    assert await media_db["Notifications"].find_one({"userId": USER_ID, "type": "account_deletion_cancelled"})
    assert outbox[-1]["Subject"] == "Account Deletion Request Cancelled"

    second = await service.create_authenticated_request(str(USER_ID))
    await service.execute_account_deletion(str(second["_id"]), performed_by=str(ADMIN_ID))
    assert outbox[-1]["Subject"] == "Account Deletion Completed"
    assert outbox[-1]["To"] == "viewer@example.com"
    admin_types = [n["type"] for n in await media_db["Notifications"].find({"userId": ADMIN_ID}).to_list(length=None)]
    assert admin_types.count("admin_deletion_request") == 2
    assert "deletion_completed" in admin_types


async def test_failed_execution_notifies_admins(service, media_db, monkeypatch):
    request = await service.create_authenticated_request(str(USER_ID))

    async def broken_delete(user_oid):
        raise PyMongoError("primary stepped down")

    monkeypatch.setattr(service, "_delete_user_data", broken_delete)
    with pytest.raises(PyMongoError):
        await service.execute_account_deletion(str(request["_id"]))

    failure = await media_db["Notifications"].find_one({"userId": ADMIN_ID, "type": "deletion_failure"})
    assert "primary stepped down" in failure["message"]


async def test_mail_outage_does_not_fail_the_request(service, monkeypatch):
    async def unreachable(to, subject, body):
        raise ConnectionRefusedError("smtp down")

    monkeypatch.setattr(service.notifier, "send_email", unreachable)
    result = await service.create_public_request("friend@example.com")
    assert result["deletionRequest"]["status"] == "pending_verification"


class FailingTokens:
    async def insert_one(self, document):
        raise PyMongoError("write concern error")


async def test_failed_token_write_leaves_no_request_behind(service, users_db):
    tokens = service.tokens
    service.tokens = FailingTokens()
    with pytest.raises(PyMongoError):
        await service.create_public_request("friend@example.com")
    assert await users_db["DeletionRequests"].count_documents({}) == 0

    service.tokens = tokens
    result = await service.create_public_request("friend@example.com")
    assert result["deletionRequest"]["status"] == "pending_verification"


async def test_reminders_are_sent_once(service, users_db, media_db):
    request = await service.create_authenticated_request(str(USER_ID))
    await users_db["DeletionRequests"].update_one(
        {"_id": request["_id"]}, {"$set": {"scheduledDeletionAt": utc_now() + timedelta(days=3, hours=1)}}
    )

    assert await service.send_deletion_reminders() == 1
    assert await service.send_deletion_reminders() == 0
    reminder = await media_db["Notifications"].find_one({"userId": USER_ID, "type": "account_deletion_reminder"})
    assert reminder["data"]["daysRemaining"] == 4


async def test_public_deletion_routes_are_rate_limited_before_lookup(client, users):
    for _ in range(3):
        missing = await client.post("/api/account/public/delete-request", json={"email": "ghost@example.com"})
        assert missing.status_code == 404

    limited = await client.post("/api/account/public/delete-request", json={"email": "friend@example.com"})
    assert limited.status_code == 429
    body = limited.json()
    assert body["error"] == "Too many deletion requests from this IP address. Please try again later."
    assert body["retryAfter"] > 0
    assert limited.headers["Retry-After"] == str(body["retryAfter"])
    assert limited.headers["X-RateLimit-Remaining"] == "0"

    other_ip = await client.post(
        "/api/account/public/delete-request",
        json={"email": "friend@example.com"},
        headers={"X-Forwarded-For": "203.0.113.7"},
    )
    assert other_ip.status_code == 200
    assert other_ip.headers["X-RateLimit-Remaining"] == "2"
    assert "verificationToken" not in other_ip.json()["data"]


async def test_public_status_checks_are_rate_limited(client, users):
    for _ in range(10):
        checked = await client.get("/api/account/public/delete-request", params={"email": "nobody@example.com"})
        assert checked.status_code == 200

    limited = await client.get("/api/account/public/delete-request", params={"email": "viewer@example.com"})
    assert limited.status_code == 429
    assert "status check" in limited.json()["error"]


async def test_scheduled_processing_route_accepts_webhook(client, users, users_db, service):
    due = await service.create_authenticated_request(str(OTHER_USER_ID))
    await users_db["DeletionRequests"].update_one(
        {"_id": due["_id"]}, {"$set": {"scheduledDeletionAt": utc_now() - timedelta(minutes=5)}}
    )

    assert (await client.post("/api/account/admin/deletion-requests/process")).status_code == 401
    response = await client.post("/api/account/admin/deletion-requests/process", headers={"X-Webhook-ID": "hook-123"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["succeeded"] == [str(due["_id"])]
    assert data["failed"] == []
    stored = await users_db["DeletionRequests"].find_one({"_id": due["_id"]})
    assert stored["status"] == "completed"
