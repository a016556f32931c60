import json
from unittest import mock

import pytest
from fastapi.testclient import TestClient

from civic_identity.core.config import settings
from civic_identity.main import app, check_auth_mode

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 64


def start(client, headers, body=None):
    return client.post("/api/identity/start-verification", json=body or {}, headers=headers)


def submit_step(client, headers, verification_id, step, data=None, files=None):
    return client.post(
        "/api/identity/submit-step",
        data={"verificationId": str(verification_id), "step": step, "data": json.dumps(data or {})},
        files=files,
        headers=headers,
    )


def test_health_check(client):
    assert client.get("/").json() == {"status": True}


def test_start_verification_creates_then_resumes(client, user_headers):
    first = start(client, user_headers)
    second = start(client, user_headers)

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["message"] == "Verification process started"
    assert second.json()["verificationId"] == first.json()["verificationId"]
    assert second.json()["message"] == "Continuing existing verification process"


def test_start_verification_records_request_metadata(client, user_headers, store):
    headers = dict(user_headers, **{"User-Agent": "pytest-agent", "CF-IPCountry": "IE"})
    verification_id = start(client, headers).json()["verificationId"]

    record = store.get(verification_id)
    assert record.user_agent == "pytest-agent"
    assert record.geolocation == "IE"
    assert record.ip_address == "testclient"


def test_start_verification_requires_auth(client):
    response = start(client, {})

    assert response.status_code == 401
    assert response.json()["success"] is False


def test_start_verification_rejects_bad_email(client, user_headers):
    response = start(client, user_headers, {"email": "not-an-email"})

    assert response.status_code == 422
    assert response.json()["success"] is False


def test_demo_mode_authenticates_without_token(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_MODE", "demo")

    response = start(client, {})

    assert response.status_code == 200


def test_demo_mode_refused_in_production(monkeypatch):
    monkeypatch.setattr(settings, "AUTH_MODE", "demo")
    monkeypatch.setattr(settings, "APP_ENV", "production")

    with pytest.raises(RuntimeError):
        check_auth_mode()


def test_start_verification_rate_limited(client, user_headers):
    with mock.patch("civic_identity.routers.identity.RateLimiter") as limiter:
        limiter.check_rate_limit.return_value = (False, 0)
        limiter.get_remaining_time.return_value = 120

        response = start(client, user_headers)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "120"
    assert response.json()["success"] is False


def test_unexpected_error_returns_500(session_factory, user_headers):
    from civic_identity.core.database import get_db

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        client = TestClient(app, raise_server_exceptions=False)
        with mock.patch(
            "civic_identity.services.verification_store.VerificationRecordStore.start_or_resume",
            side_effect=RuntimeError("database exploded"),
        ):
            response = start(client, user_headers)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert response.json()["error_details"] == "database exploded"


def test_submit_captcha_step(client, user_headers, store):
    verification_id = start(client, user_headers).json()["verificationId"]

    response = submit_step(client, user_headers, verification_id, "captcha", {"captchaToken": "token"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Captcha verified"}
    assert store.get(verification_id).progress == "captcha_done"


def test_submit_step_out_of_order(client, user_headers):
    verification_id = start(client, user_headers).json()["verificationId"]

    response = submit_step(client, user_headers, verification_id, "verify-email", {"otpCode": "123456"})

    assert response.status_code == 409
    assert response.json()["success"] is False


def test_submit_step_validation_errors(client, user_headers):
    verification_id = start(client, user_headers).json()["verificationId"]

    bad_json = client.post(
        "/api/identity/submit-step",
        data={"verificationId": str(verification_id), "step": "captcha", "data": "{not json"},
        headers=user_headers,
    )
    missing_id = client.post("/api/identity/submit-step", data={"step": "captcha"}, headers=user_headers)
    bad_step = submit_step(client, user_headers, verification_id, "launch-rocket")

    assert bad_json.status_code == 400
    assert missing_id.status_code == 400
    assert missing_id.json()["message"] == "Verification ID required"
    assert bad_step.status_code == 400
    assert bad_step.json()["message"] == "Invalid verification step"


def test_submit_step_for_another_users_verification(client, user_headers, store):
    record = store.create("user-2", "user2@example.com")

    response = submit_step(client, user_headers, record.id, "captcha", {"captchaToken": "token"})

    assert response.status_code == 404
    assert response.json()["message"] == "Verification not found"


def test_email_otp_flow_over_http(client, user_headers, db, store):
    verification_id = start(client, user_headers).json()["verificationId"]
    submit_step(client, user_headers, verification_id, "captcha", {"captchaToken": "token"})

    sent = submit_step(client, user_headers, verification_id, "email")
    wrong = submit_step(client, user_headers, verification_id, "verify-email", {"otpCode": "abc"})
    right = submit_step(client, user_headers, verification_id, "verify-email", {"otpCode": sent.json()["demoOtp"]})

    assert sent.status_code == 200
    assert wrong.status_code == 400
    assert wrong.json()["message"] == "Invalid or expired OTP code"
    assert right.status_code == 200
    db.expire_all()
    assert store.get(verification_id).email_verified is True


def test_verify_email_lockout_over_http(client, user_headers, fake_redis):
    verification_id = start(client, user_headers).json()["verificationId"]
    submit_step(client, user_headers, verification_id, "captcha", {"captchaToken": "token"})
    otp = submit_step(client, user_headers, verification_id, "email").json()["demoOtp"]

    for _ in range(settings.OTP_MAX_ATTEMPTS):
        wrong = submit_step(client, user_headers, verification_id, "verify-email", {"otpCode": "abc"})
        assert wrong.status_code == 400
    locked = submit_step(client, user_headers, verification_id, "verify-email", {"otpCode": otp})

    assert locked.status_code == 429
    assert locked.headers["Retry-After"] == str(settings.OTP_ATTEMPT_WINDOW_SECONDS)
    assert locked.json()["success"] is False


def test_email_step_unavailable_when_delivery_fails(client, user_headers, monkeypatch):
    verification_id = start(client, user_headers).json()["verificationId"]
    submit_step(client, user_headers, verification_id, "captcha", {"captchaToken": "token"})
    monkeypatch.setattr(settings, "APP_ENV", "production")

    response = submit_step(client, user_headers, verification_id, "email")

    assert response.status_code == 503
    assert response.json()["success"] is False
    assert "demoOtp" not in response.json()


def test_id_upload_with_single_file(client, user_headers, db, store):
    verification_id = start(client, user_headers).json()["verificationId"]
    store.update(verification_id, {"progress": "mfa_set"})

    response = submit_step(
        client, user_headers, verification_id, "id-upload",
        files=[("files", ("front.jpg", JPEG, "image/jpeg"))],
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Both front and back ID images required"
    db.expire_all()
    record = store.get(verification_id)
    assert record.id_front_url is None
    assert record.id_back_url is None


def test_id_upload_with_front_and_back(client, user_headers, db, store):
    verification_id = start(client, user_headers).json()["verificationId"]
    store.update(verification_id, {"progress": "mfa_set"})

    response = submit_step(
        client, user_headers, verification_id, "id-upload",
        files=[
            ("files", ("front.jpg", JPEG, "image/jpeg")),
            ("files", ("back.png", JPEG, "image/png")),
        ],
    )

    assert response.status_code == 200
    assert response.json()["documentsStored"] == 2
    db.expire_all()
    record = store.get(verification_id)
    assert record.progress == "id_uploaded"
    assert record.id_front_url.startswith("/uploads/identity/")
    assert record.id_back_url.endswith(".png")


def test_status_for_unverified_user(client, user_headers):
    response = client.get("/api/identity/status", headers=user_headers)

    assert response.status_code == 200
    assert response.json()["isVerified"] is False
    assert response.json()["verificationLevel"] == "none"
    assert response.json()["permissions"] == {
        "canVote": False,
        "canComment": False,
        "canCreatePetitions": False,
        "canAccessFOI": False,
    }


def test_status_for_verified_user(client, user_headers, store):
    store.upsert_user_status("user-1", {
        "is_verified": True,
        "verification_level": "government",
        "can_vote": True,
        "can_comment": True,
        "can_create_petitions": True,
        "can_access_foi": True,
    })

    body = client.get("/api/identity/status", headers=user_headers).json()

    assert body["isVerified"] is True
    assert body["verificationLevel"] == "government"
    assert all(body["permissions"].values())
