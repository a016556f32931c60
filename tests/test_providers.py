from unittest import mock

import httpx
import pytest
import redis

from civic_identity.core import captcha, otp
from civic_identity.core.config import settings
from civic_identity.core.face import RekognitionFaceMatcher
from civic_identity.core.redis import Cache, RateLimiter, RedisClient
from civic_identity.core.security import decrypt_secret, encrypt_secret, hash_id_number
from civic_identity.core.storage import S3FileStorage


def test_captcha_skipped_without_secret():
    with mock.patch.object(captcha.httpx, "post") as post:
        assert captcha.verify_captcha("token") is True
    post.assert_not_called()


@pytest.mark.parametrize("status_code,body,expected", [
    (200, {"success": True}, True),
    (200, {"success": False}, False),
    (500, {}, False),
])
def test_captcha_provider_response(monkeypatch, status_code, body, expected):
    monkeypatch.setattr(settings, "CAPTCHA_SECRET", "shh")
    response = mock.Mock(status_code=status_code)
    response.json.return_value = body

    with mock.patch.object(captcha.httpx, "post", return_value=response) as post:
        assert captcha.verify_captcha("token", "198.51.100.7") is expected

    assert post.call_args.kwargs["data"] == {"secret": "shh", "response": "token", "remoteip": "198.51.100.7"}


def test_captcha_network_error(monkeypatch):
    monkeypatch.setattr(settings, "CAPTCHA_SECRET", "shh")

    with mock.patch.object(captcha.httpx, "post", side_effect=httpx.ConnectError("down")):
        assert captcha.verify_captcha("token") is False


def test_otp_hash_matching():
    code = otp.generate_otp()

    assert len(code) == 6 and code.isdigit()
    assert otp.otp_matches(code, otp.hash_otp(code))
    assert not otp.otp_matches("000000" if code != "000000" else "111111", otp.hash_otp(code))


def test_otp_email_not_sent_without_key():
    with mock.patch.object(otp, "SendGridAPIClient") as client:
        assert otp.send_otp_email("user@example.com", "123456") is False
    client.assert_not_called()


def test_otp_email_sent_through_sendgrid(monkeypatch):
    monkeypatch.setattr(settings, "SENDGRID_API_KEY", "SG.key")

    with mock.patch.object(otp, "SendGridAPIClient") as client:
        client.return_value.send.return_value = mock.Mock(status_code=202)
        assert otp.send_otp_email("user@example.com", "123456") is True

    client.assert_called_once_with("SG.key")
    client.return_value.send.assert_called_once()


def test_otp_email_failure_is_reported(monkeypatch):
    monkeypatch.setattr(settings, "SENDGRID_API_KEY", "SG.key")

    with mock.patch.object(otp, "SendGridAPIClient") as client:
        client.return_value.send.side_effect = RuntimeError("401 Unauthorized")
        assert otp.send_otp_email("user@example.com", "123456") is False


def test_secret_encryption_round_trip():
    token = encrypt_secret("JBSWY3DPEHPK3PXP")

    assert token != "JBSWY3DPEHPK3PXP"
    assert decrypt_secret(token) == "JBSWY3DPEHPK3PXP"


def test_id_number_hash_ignores_formatting():
    assert hash_id_number("ab-123 456") == hash_id_number("AB123456")
    assert hash_id_number("AB123456") != hash_id_number("AB123457")


def test_s3_storage_uses_private_encrypted_uploads(monkeypatch):
    monkeypatch.setattr(settings, "AWS_REGION", "eu-west-1")
    client = mock.Mock()
    storage = S3FileStorage(client=client, bucket="civic-docs")

    url = storage.save("identity/1_id_front.jpg", b"bytes", "image/jpeg")
    storage.delete(url)

    assert url == "https://civic-docs.s3.eu-west-1.amazonaws.com/identity/1_id_front.jpg"
    extra = client.upload_fileobj.call_args.kwargs["ExtraArgs"]
    assert extra == {"ContentType": "image/jpeg", "ServerSideEncryption": "AES256"}
    client.delete_object.assert_called_once_with(Bucket="civic-docs", Key="identity/1_id_front.jpg")


def test_rekognition_match_score():
    client = mock.Mock()
    client.compare_faces.return_value = {"FaceMatches": [{"Similarity": 91.6}, {"Similarity": 40.0}]}
    matcher = RekognitionFaceMatcher(client=client, collection_id="civic-faces")

    assert matcher.match_score(b"selfie", b"front") == 92
    assert matcher.match_score(b"selfie", None) == 0


def test_rekognition_duplicate_face_search():
    client = mock.Mock()
    client.search_faces_by_image.return_value = {"FaceMatches": [{"Face": {"FaceId": "f-1"}}]}

    assert RekognitionFaceMatcher(client=client, collection_id="civic-faces").find_duplicate_face(b"selfie")
    assert not RekognitionFaceMatcher(client=client, collection_id="").find_duplicate_face(b"selfie")


@pytest.fixture
def redis_client(monkeypatch):
    client = mock.Mock()
    monkeypatch.setattr(RedisClient, "_client", client)
    monkeypatch.setattr(RedisClient, "_is_available", True)
    return client


def test_rate_limiter_fixed_window(redis_client):
    redis_client.incr.side_effect = [1, 2, 3]
    redis_client.ttl.return_value = 50

    results = [RateLimiter.check_rate_limit("user-1", "start", 2, 60) for _ in range(3)]

    assert results == [(True, 1), (True, 0), (False, 0)]
    redis_client.expire.assert_called_once_with("identity:rate:start:user-1", 60)
    assert RateLimiter.get_remaining_time("user-1", "start") == 50


def test_rate_limiter_fails_open_on_redis_errors(redis_client):
    redis_client.incr.side_effect = redis.ConnectionError("gone")
    redis_client.get.side_effect = redis.ConnectionError("gone")

    assert RateLimiter.check_rate_limit("user-1", "start", 2, 60) == (True, 2)
    assert RateLimiter.peek("user-1", "start") == 0


def test_status_cache_round_trip(redis_client):
    cached = {}
    redis_client.setex.side_effect = lambda key, ttl, value: cached.__setitem__(key, value) or True
    redis_client.get.side_effect = cached.get

    assert Cache.set_user_verification("user-1", {"isVerified": True})
    assert Cache.get_user_verification("user-1") == {"isVerified": True}
