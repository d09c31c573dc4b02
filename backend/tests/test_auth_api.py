"""End-to-end tests for the authentication endpoints."""

import logging
import time
import uuid

import httpx
import pytest
from sqlalchemy.orm import Session

from identity_service.core.security import create_access_token
from identity_service.models.consent import ConsentRecord
from identity_service.models.device import Device
from identity_service.models.session import UserSession
from identity_service.models.user import User
from tests.helpers.apple import AppleSigningKey, apple_claims
from tests.helpers.google import google_tokeninfo

API = "/v1/auth"
CONSENTS = {
    "medical_disclaimers": True,
    "terms_of_service": True,
    "privacy_policy": True,
}


def audit_records(caplog: pytest.LogCaptureFixture, action: str) -> list[dict]:
    return [
        record.audit
        for record in caplog.records
        if getattr(record, "audit", None) and record.audit["action"] == action
    ]


async def google_sign_in(
    client: httpx.AsyncClient, google_tokens: dict, token: str = "google-token", **info
) -> httpx.Response:
    google_tokens[token] = google_tokeninfo(**info)
    return await client.post(
        f"{API}/onboarding", json={"provider": "google", "google_id_token": token}
    )


@pytest.mark.asyncio
async def test_google_onboarding_creates_user(
    async_client: httpx.AsyncClient,
    db: Session,
    google_tokens: dict,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="identity_service.audit")

    response = await google_sign_in(async_client, google_tokens)

    assert response.status_code == 200, response.json()
    data = response.json()
    assert data["access_token"]
    assert data["refresh_token"]
    assert data["expires_in"] == 3600
    user = data["user"]
    assert uuid.UUID(user["user_id"])
    assert user["email"] == "ada@example.com"
    assert user["display_name"] == "Ada Lovelace"
    assert user["profile_picture"].endswith("photo.jpg")
    assert user["timezone"] == "UTC"
    assert user["preferences"] is None
    assert user["auth_provider"] == "google"
    assert user["is_private_email"] is False
    assert user["is_new_user"] is True

    assert db.query(User).count() == 1
    assert db.query(ConsentRecord).count() == 0

    [success] = audit_records(caplog, "authentication_success")
    assert success["is_new_user"] is True
    assert success["user_id"] == user["user_id"]
    assert "email" not in success


@pytest.mark.asyncio
async def test_second_sign_in_is_existing_user(async_client, db, google_tokens) -> None:
    first = await google_sign_in(async_client, google_tokens)
    second = await google_sign_in(async_client, google_tokens, token="another-token")

    assert second.status_code == 200
    assert second.json()["user"]["user_id"] == first.json()["user"]["user_id"]
    assert second.json()["user"]["is_new_user"] is False
    assert db.query(User).count() == 1
    assert db.query(UserSession).count() == 2


@pytest.mark.asyncio
async def test_onboarding_records_consents_and_device(async_client, db, google_tokens) -> None:
    google_tokens["google-token"] = google_tokeninfo()
    response = await async_client.post(
        f"{API}/onboarding",
        json={
            "provider": "google",
            "id_token": "google-token",
            "consent_acknowledgments": {**CONSENTS, "version": "v1.3"},
            "device_info": {
                "platform": "android",
                "app_installation_id": "install-42",
                "app_version": "3.2.1",
            },
        },
    )

    assert response.status_code == 200
    assert {r.consent_version for r in db.query(ConsentRecord).all()} == {"v1.3"}
    device = db.query(Device).one()
    assert device.platform == "android"
    assert db.query(UserSession).one().device_id == device.id


@pytest.mark.asyncio
async def test_missing_consent(async_client, db, google_tokens) -> None:
    google_tokens["google-token"] = google_tokeninfo()
    response = await async_client.post(
        f"{API}/onboarding",
        json={
            "provider": "google",
            "id_token": "google-token",
            "consent_acknowledgments": {"terms_of_service": True},
        },
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error_code"] == "MISSING_CONSENT"
    assert body["details"]["missing_consents"] == ["medical_disclaimers", "privacy_policy"]
    assert db.query(User).count() == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload, error_code",
    [
        ({"id_token": "t"}, "INVALID_PROVIDER"),
        ({"provider": "facebook", "id_token": "t"}, "INVALID_PROVIDER"),
        ({"provider": "google"}, "MISSING_REQUIRED_FIELD"),
        ({"provider": "apple", "google_id_token": "t"}, "MISSING_REQUIRED_FIELD"),
    ],
)
async def test_onboarding_input_errors(async_client, payload: dict, error_code: str) -> None:
    response = await async_client.post(f"{API}/onboarding", json=payload)

    assert response.status_code == 400
    body = response.json()
    assert body["error_code"] == error_code
    assert body["user_message"]
    assert body["request_id"] == response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_malformed_json(async_client) -> None:
    response = await async_client.post(
        f"{API}/onboarding",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_JSON"


@pytest.mark.asyncio
async def test_invalid_google_token(async_client, db) -> None:
    response = await async_client.post(
        f"{API}/onboarding", json={"provider": "google", "id_token": "forged"}
    )

    assert response.status_code == 401
    assert response.json()["error_code"] == "INVALID_GOOGLE_TOKEN"
    assert response.json()["details"] is None


@pytest.mark.asyncio
async def test_apple_onboarding(async_client, apple_key: AppleSigningKey) -> None:
    token = apple_key.sign(apple_claims(name={"firstName": "Grace", "lastName": "Hopper"}))

    response = await async_client.post(
        f"{API}/onboarding",
        json={"provider": "apple", "apple_id_token": token, "apple_authorization_code": "code"},
    )

    assert response.status_code == 200, response.json()
    user = response.json()["user"]
    assert user["auth_provider"] == "apple"
    assert user["display_name"] == "Grace Hopper"
    assert user["is_private_email"] is True


@pytest.mark.asyncio
async def test_apple_expired_token(
    async_client, apple_key: AppleSigningKey, db, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="identity_service.audit")
    token = apple_key.sign(apple_claims(exp=int(time.time()) - 60))

    response = await async_client.post(
        f"{API}/onboarding", json={"provider": "apple", "id_token": token}
    )

    assert response.status_code == 401
    assert response.json()["error_code"] == "APPLE_TOKEN_EXPIRED"
    assert db.query(User).count() == 0

    [failure] = audit_records(caplog, "authentication_failed")
    assert failure["error_code"] == "APPLE_TOKEN_EXPIRED"
    assert failure["verification_error"] == "TOKEN_EXPIRED"
    assert failure["error"]


@pytest.mark.asyncio
async def test_apple_bad_signature(async_client, apple_key: AppleSigningKey) -> None:
    token = AppleSigningKey(kid=apple_key.kid).sign(apple_claims())

    response = await async_client.post(
        f"{API}/onboarding", json={"provider": "apple", "id_token": token}
    )

    assert response.status_code == 401
    assert response.json()["error_code"] == "APPLE_SIGNATURE_INVALID"


@pytest.mark.asyncio
async def test_apple_wrong_audience(async_client, apple_key: AppleSigningKey) -> None:
    token = apple_key.sign(apple_claims(aud="com.other.app"))

    response = await async_client.post(
        f"{API}/onboarding", json={"provider": "apple", "id_token": token}
    )

    assert response.status_code == 401
    assert response.json()["error_code"] == "INVALID_APPLE_TOKEN"


@pytest.mark.asyncio
async def test_apple_keys_unavailable(async_client, apple_key: AppleSigningKey, apple_key_cache) -> None:
    apple_key_cache._transport = httpx.MockTransport(lambda request: httpx.Response(500))

    response = await async_client.post(
        f"{API}/onboarding",
        json={"provider": "apple", "id_token": apple_key.sign(apple_claims())},
    )

    assert response.status_code == 503
    assert response.json()["error_code"] == "APPLE_SERVICE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_cross_provider_collision_and_linking(
    async_client, db, google_tokens, apple_key: AppleSigningKey
) -> None:
    google = await google_sign_in(async_client, google_tokens, email="a@x.com")
    google_user_id = google.json()["user"]["user_id"]
    apple_token = apple_key.sign(apple_claims(email="a@x.com", is_private_email="false"))

    conflict = await async_client.post(
        f"{API}/onboarding", json={"provider": "apple", "id_token": apple_token}
    )

    assert conflict.status_code == 409
    body = conflict.json()
    assert body["error_code"] == "ACCOUNT_LINKING_REQUIRED"
    assert body["expires_in"] == 300
    assert body["linking_token"]
    assert body["details"]["existing_provider"] == "google"
    assert body["details"]["attempted_provider"] == "apple"
    assert body["details"]["linking_available"] is True
    assert db.query(User).count() == 1

    linked = await async_client.post(
        f"{API}/confirm-linking",
        json={"linking_token": body["linking_token"], "confirmation": "confirmed"},
    )

    assert linked.status_code == 200, linked.json()
    data = linked.json()
    assert data["account_linked"] is True
    assert data["user"]["user_id"] == google_user_id
    assert data["user"]["linked_providers"] == ["google", "apple"]
    assert data["access_token"] and data["refresh_token"]

    # Apple now signs into the original account
    again = await async_client.post(
        f"{API}/onboarding", json={"provider": "apple", "id_token": apple_token}
    )
    assert again.status_code == 200
    assert again.json()["user"]["user_id"] == google_user_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload, status_code, error_code",
    [
        ({"confirmation": "confirmed"}, 400, "MISSING_LINKING_TOKEN"),
        ({"linking_token": "t", "confirmation": "maybe"}, 400, "LINKING_NOT_CONFIRMED"),
        ({"linking_token": "t", "confirmation": "confirmed"}, 401, "INVALID_LINKING_TOKEN"),
    ],
)
async def test_confirm_linking_errors(async_client, payload, status_code, error_code) -> None:
    response = await async_client.post(f"{API}/confirm-linking", json=payload)

    assert response.status_code == status_code
    assert response.json()["error_code"] == error_code


@pytest.mark.asyncio
async def test_refresh_rotation(async_client, db, google_tokens) -> None:
    signed_in = (await google_sign_in(async_client, google_tokens)).json()

    refreshed = await async_client.post(
        f"{API}/refresh", json={"refresh_token": signed_in["refresh_token"]}
    )

    assert refreshed.status_code == 200
    data = refreshed.json()
    assert data["refresh_token"] != signed_in["refresh_token"]
    assert data["session"]["session_id"]
    assert data["session"]["expires_at"]

    replay = await async_client.post(
        f"{API}/refresh", json={"refresh_token": signed_in["refresh_token"]}
    )
    assert replay.status_code == 401
    assert replay.json()["error_code"] == "INVALID_REFRESH_TOKEN"


@pytest.mark.asyncio
async def test_refresh_unknown_token(async_client) -> None:
    response = await async_client.post(f"{API}/refresh", json={"refresh_token": "unknown"})

    assert response.status_code == 401
    assert response.json()["error_code"] == "INVALID_REFRESH_TOKEN"


@pytest.mark.asyncio
async def test_refresh_missing_token(async_client) -> None:
    response = await async_client.post(f"{API}/refresh", json={})

    assert response.status_code == 400
    assert response.json()["error_code"] == "MISSING_REQUIRED_FIELD"


@pytest.mark.asyncio
async def test_logout_revokes_session(async_client, google_tokens) -> None:
    signed_in = (await google_sign_in(async_client, google_tokens)).json()

    response = await async_client.post(
        f"{API}/logout", headers={"Authorization": f"Bearer {signed_in['access_token']}"}
    )
    assert response.status_code == 200

    refresh = await async_client.post(
        f"{API}/refresh", json={"refresh_token": signed_in["refresh_token"]}
    )
    assert refresh.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize("header", [None, "Token abc", "Bearer not-a-jwt"])
async def test_logout_requires_valid_access_token(async_client, header) -> None:
    headers = {"Authorization": header} if header else {}
    response = await async_client.post(f"{API}/logout", headers=headers)

    assert response.status_code == 401
    assert response.json()["error_code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_logout_for_unknown_user_keeps_session(async_client, db, google_tokens) -> None:
    signed_in = (await google_sign_in(async_client, google_tokens)).json()
    session = db.query(UserSession).one()
    stranger_token = create_access_token(str(uuid.uuid4()), None, None, session.session_id)

    response = await async_client.post(
        f"{API}/logout", headers={"Authorization": f"Bearer {stranger_token}"}
    )

    assert response.status_code == 401
    assert response.json()["error_code"] == "UNAUTHORIZED"
    refresh = await async_client.post(
        f"{API}/refresh", json={"refresh_token": signed_in["refresh_token"]}
    )
    assert refresh.status_code == 200


@pytest.mark.asyncio
async def test_security_headers(async_client) -> None:
    response = await async_client.get("/health")

    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["X-Request-ID"]
