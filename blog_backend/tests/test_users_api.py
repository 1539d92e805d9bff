import io
import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import jwt
from sqlalchemy.exc import OperationalError

from blog_backend.tests.base import ApiTestCase
from blog_backend.extensions import db
from blog_backend.models import User
from blog_backend.services.session_cache import SessionCache, SessionUser


class RegistrationTests(ApiTestCase):
    def test_register_sets_cookies_and_caches_session(self):
        res = self.client.post(
            "/api/v1/users/register",
            json={"name": "Ann Lee", "email": "ann@x.com", "password": "secret1"},
        )
        self.assertEqual(res.status_code, 201)
        body = res.get_json()
        self.assertEqual(body["statusCode"], 201)
        self.assertEqual(body["message"], "User Registered Successfully")
        data = body["data"]
        self.assertEqual(data["user"]["email"], "ann@x.com")
        self.assertEqual(data["user"]["username"], "annlee")
        self.assertEqual(data["user"]["role"], "regular")
        self.assertNotIn("password", data["user"])
        self.assertNotIn("password_hash", data["user"])
        self.assertIsInstance(data["accessToken"], str)
        self.assertIsInstance(data["refreshToken"], str)

        set_cookie = self.set_cookies(res)
        self.assertIn("accessToken=", set_cookie)
        self.assertIn("refreshToken=", set_cookie)
        self.assertIn("HttpOnly", set_cookie)

        key = SessionCache.key(data["user"]["id"])
        self.assertIn(key, self.redis.values)
        self.assertEqual(self.redis.ttls[key], 3600)
        cached = json.loads(self.redis.values[key])
        self.assertNotIn("password_hash", cached)
        self.assertNotIn("refresh_token", cached)

        with self.app.app_context():
            user = User.query.filter_by(email="ann@x.com").one()
            self.assertEqual(user.refresh_token, data["refreshToken"])
            self.assertNotEqual(user.password_hash, "secret1")

    def test_register_synthesizes_placeholder_avatar(self):
        data = self.register()
        self.assertEqual(len(self.s3.uploads), 1)
        upload = self.s3.uploads[0]
        self.assertTrue(upload["key"].startswith("avatars/"))
        self.assertTrue(upload["body"].startswith(b"\x89PNG"))
        self.assertEqual(data["user"]["avatar"]["publicId"], upload["key"])
        self.assertEqual(
            data["user"]["avatar"]["url"], f"https://cdn.example.com/{upload['key']}"
        )

    def test_register_uploads_supplied_avatar(self):
        res = self.client.post(
            "/api/v1/users/register",
            data={
                "name": "Ann Lee",
                "email": "ann@x.com",
                "password": "secret1",
                "avatar": (io.BytesIO(b"jpeg-bytes"), "me.jpg", "image/jpeg"),
            },
            content_type="multipart/form-data",
        )
        self.assertEqual(res.status_code, 201)
        self.assertEqual(self.s3.uploads[0]["body"], b"jpeg-bytes")
        self.assertTrue(self.s3.uploads[0]["key"].endswith(".jpg"))

    def test_register_rejects_non_image_avatar(self):
        res = self.client.post(
            "/api/v1/users/register",
            data={
                "name": "Ann Lee",
                "email": "ann@x.com",
                "password": "secret1",
                "avatar": (io.BytesIO(b"text"), "notes.txt", "text/plain"),
            },
            content_type="multipart/form-data",
        )
        self.assertEqual(res.status_code, 400)
        with self.app.app_context():
            self.assertEqual(User.query.count(), 0)

    def test_duplicate_email_conflicts_without_creating_account(self):
        self.register()
        res = self.client.post(
            "/api/v1/users/register",
            json={"name": "Other Ann", "email": "ANN@x.com", "password": "secret2"},
        )
        self.assertEqual(res.status_code, 409)
        body = res.get_json()
        self.assertEqual(body["statusCode"], 409)
        self.assertNotIn("data", body)
        with self.app.app_context():
            self.assertEqual(User.query.count(), 1)

    def test_same_name_gets_distinct_username(self):
        self.register()
        data = self.register(email="ann2@x.com")
        self.assertEqual(data["user"]["username"], "annlee1")

    def test_register_validation(self):
        res = self.client.post("/api/v1/users/register", json={})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["message"], "Name Is Required")

        res = self.client.post(
            "/api/v1/users/register",
            json={"name": "Ann", "email": "not-an-email", "password": "secret1"},
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["message"], "Invalid Email Format")

        res = self.client.post(
            "/api/v1/users/register",
            json={"name": "Ann", "email": "ann@x.com", "password": "123"},
        )
        self.assertEqual(res.status_code, 400)

    def test_failed_avatar_upload_aborts_registration(self):
        self.s3.fail_uploads = True
        res = self.client.post(
            "/api/v1/users/register",
            json={"name": "Ann Lee", "email": "ann@x.com", "password": "secret1"},
        )
        self.assertEqual(res.status_code, 500)
        with self.app.app_context():
            self.assertEqual(User.query.count(), 0)
        self.assertEqual(self.redis.values, {})

    def test_check_email(self):
        self.register()
        res = self.client.post("/api/v1/users/check-email", json={"email": "Ann@x.com"})
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["data"]["emailExists"])

        res = self.client.post("/api/v1/users/check-email", json={"email": "bob@x.com"})
        self.assertFalse(res.get_json()["data"]["emailExists"])

        res = self.client.post("/api/v1/users/check-email", json={"email": "bob"})
        self.assertEqual(res.status_code, 400)


class LoginAndRefreshTests(ApiTestCase):
    def _login(self, email="ann@x.com", password="secret1"):
        return self.client.post(
            "/api/v1/users/login", json={"email": email, "password": password}
        )

    def test_wrong_password_issues_nothing(self):
        self.register()
        self.redis.values.clear()
        res = self._login(password="wrong-password")
        self.assertEqual(res.status_code, 401)
        body = res.get_json()
        self.assertEqual(body, {"statusCode": 401, "message": "Invalid User Credentials"})
        self.assertEqual(res.headers.getlist("Set-Cookie"), [])
        self.assertEqual(self.redis.values, {})

    def test_unknown_email_is_unauthenticated(self):
        res = self._login(email="nobody@x.com")
        self.assertEqual(res.status_code, 401)

    def test_login_replaces_previous_refresh_token(self):
        first = self.register()["refreshToken"]
        res = self._login(email="ANN@X.COM")
        self.assertEqual(res.status_code, 200)
        data = res.get_json()["data"]
        second = data["refreshToken"]
        self.assertNotEqual(first, second)
        self.assertIn("accessToken=", self.set_cookies(res))

        with self.app.app_context():
            user = User.query.filter_by(email="ann@x.com").one()
            self.assertEqual(user.refresh_token, second)

        res = self.client.post("/api/v1/users/refresh-token", json={"refreshToken": first})
        self.assertEqual(res.status_code, 401)
        res = self.client.post("/api/v1/users/refresh-token", json={"refreshToken": second})
        self.assertEqual(res.status_code, 200)

    def test_previous_access_token_stays_valid_after_new_login(self):
        old_access = self.register()["accessToken"]
        self.assertEqual(self._login().status_code, 200)
        res = self.client.get("/api/v1/users/", headers=self.auth(old_access))
        self.assertEqual(res.status_code, 200)

    def test_refresh_from_cookie_rotates_tokens(self):
        refresh = self.register()["refreshToken"]
        res = self.client.post(
            "/api/v1/users/refresh-token", headers={"Cookie": f"refreshToken={refresh}"}
        )
        self.assertEqual(res.status_code, 200)
        data = res.get_json()["data"]
        self.assertIn("accessToken", data)
        self.assertNotEqual(data["refreshToken"], refresh)
        self.assertIn("refreshToken=", self.set_cookies(res))

        res = self.client.get("/api/v1/users/", headers=self.auth(data["accessToken"]))
        self.assertEqual(res.status_code, 200)

        # The consumed refresh token is no longer accepted.
        res = self.client.post(
            "/api/v1/users/refresh-token", headers={"Cookie": f"refreshToken={refresh}"}
        )
        self.assertEqual(res.status_code, 401)

    def test_refresh_requires_a_valid_token(self):
        res = self.client.post("/api/v1/users/refresh-token", json={})
        self.assertEqual(res.status_code, 401)
        res = self.client.post("/api/v1/users/refresh-token", json={"refreshToken": "junk"})
        self.assertEqual(res.status_code, 401)
        access = self.register()["accessToken"]
        res = self.client.post("/api/v1/users/refresh-token", json={"refreshToken": access})
        self.assertEqual(res.status_code, 401)

    def test_logout_clears_session_state(self):
        data = self.register()
        user_id = data["user"]["id"]
        res = self.client.get("/api/v1/users/logout", headers=self.auth(data["accessToken"]))
        self.assertEqual(res.status_code, 200)
        set_cookie = self.set_cookies(res)
        self.assertIn("accessToken=;", set_cookie)
        self.assertIn("refreshToken=;", set_cookie)
        self.assertNotIn(SessionCache.key(user_id), self.redis.values)
        with self.app.app_context():
            self.assertIsNone(db.session.get(User, user_id).refresh_token)

        res = self.client.post(
            "/api/v1/users/refresh-token", json={"refreshToken": data["refreshToken"]}
        )
        self.assertEqual(res.status_code, 401)

    def test_logout_requires_authentication(self):
        res = self.client.get("/api/v1/users/logout")
        self.assertEqual(res.status_code, 401)


class AuthGateTests(ApiTestCase):
    def _token_for(self, user_id: str, *, expires_in: timedelta) -> str:
        now = datetime.now(timezone.utc)
        return jwt.encode(
            {"sub": user_id, "iat": now - timedelta(hours=1), "exp": now + expires_in},
            self.app.config["ACCESS_TOKEN_SECRET"],
            algorithm="HS256",
        )

    def test_missing_token(self):
        res = self.client.get("/api/v1/blogs/")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(
            res.get_json(),
            {"statusCode": 401, "message": "Unauthorized Request, Signin Again"},
        )

    def test_expired_token(self):
        user_id = self.register()["user"]["id"]
        token = self._token_for(user_id, expires_in=timedelta(seconds=-1))
        res = self.client.get("/api/v1/blogs/", headers=self.auth(token))
        self.assertEqual(res.status_code, 401)

    def test_token_signed_with_other_secret(self):
        user_id = self.register()["user"]["id"]
        token = jwt.encode(
            {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            "some-other-secret",
            algorithm="HS256",
        )
        res = self.client.get("/api/v1/blogs/", headers=self.auth(token))
        self.assertEqual(res.status_code, 401)

    def test_cookie_takes_precedence_over_header(self):
        ann = self.register()
        bob = self.register(name="Bob Ray", email="bob@x.com")
        res = self.client.get(
            "/api/v1/users/",
            headers={
                "Cookie": f"accessToken={ann['accessToken']}",
                "Authorization": f"Bearer {bob['accessToken']}",
            },
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["data"]["user"]["email"], "ann@x.com")

    def test_cached_identity_is_trusted_without_database(self):
        ghost = SessionUser(
            id="00000000-0000-0000-0000-00000000abcd",
            name="Ghost",
            username="ghost",
            email="ghost@x.com",
            role="regular",
            avatar_url=None,
            avatar_public_id=None,
            created_at=None,
            updated_at=None,
        )
        token = self._token_for(ghost.id, expires_in=timedelta(minutes=5))

        res = self.client.get("/api/v1/blogs/", headers=self.auth(token))
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.get_json()["message"], "Invalid Authentication Token")

        with self.app.app_context():
            self.app.extensions["session_cache"].store(ghost)
        res = self.client.get("/api/v1/blogs/", headers=self.auth(token))
        self.assertEqual(res.status_code, 200)

    def test_cache_miss_repopulates_with_ttl(self):
        data = self.register()
        self.redis.values.clear()
        self.redis.ttls.clear()
        res = self.client.get("/api/v1/blogs/", headers=self.auth(data["accessToken"]))
        self.assertEqual(res.status_code, 200)
        key = SessionCache.key(data["user"]["id"])
        self.assertIn(key, self.redis.values)
        self.assertEqual(self.redis.ttls[key], 3600)

    def test_cache_outage_falls_back_to_database(self):
        data = self.register()
        self.redis.broken = True
        try:
            res = self.client.get("/api/v1/users/", headers=self.auth(data["accessToken"]))
        finally:
            self.redis.broken = False
        self.assertEqual(res.status_code, 200)


class ProfileTests(ApiTestCase):
    def test_get_profile(self):
        data = self.register()
        res = self.client.get("/api/v1/users/", headers=self.auth(data["accessToken"]))
        self.assertEqual(res.status_code, 200)
        user = res.get_json()["data"]["user"]
        self.assertEqual(user["id"], data["user"]["id"])
        self.assertNotIn("refresh_token", user)

    def test_update_profile_refreshes_cache(self):
        data = self.register()
        res = self.client.put(
            "/api/v1/users/",
            json={"name": "Ann Marie Lee"},
            headers=self.auth(data["accessToken"]),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["data"]["user"]["name"], "Ann Marie Lee")
        key = SessionCache.key(data["user"]["id"])
        self.assertEqual(json.loads(self.redis.values[key])["name"], "Ann Marie Lee")
        self.assertEqual(self.redis.ttls[key], 3600)

    def test_update_profile_validation(self):
        ann = self.register()
        self.register(name="Bob Ray", email="bob@x.com")
        res = self.client.put("/api/v1/users/", json={}, headers=self.auth(ann["accessToken"]))
        self.assertEqual(res.status_code, 400)
        res = self.client.put(
            "/api/v1/users/", json={"email": "BOB@x.com"}, headers=self.auth(ann["accessToken"])
        )
        self.assertEqual(res.status_code, 409)
        res = self.client.put(
            "/api/v1/users/", json={"email": "ann.lee@x.com"}, headers=self.auth(ann["accessToken"])
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["data"]["user"]["email"], "ann.lee@x.com")

    def test_change_password(self):
        data = self.register()
        headers = self.auth(data["accessToken"])
        res = self.client.put(
            "/api/v1/users/change-password",
            json={"oldPassword": "wrong1", "newPassword": "secret2"},
            headers=headers,
        )
        self.assertEqual(res.status_code, 400)
        res = self.client.put(
            "/api/v1/users/change-password",
            json={"oldPassword": "secret1", "newPassword": "secret2"},
            headers=headers,
        )
        self.assertEqual(res.status_code, 200)

        res = self.client.post(
            "/api/v1/users/login", json={"email": "ann@x.com", "password": "secret1"}
        )
        self.assertEqual(res.status_code, 401)
        res = self.client.post(
            "/api/v1/users/login", json={"email": "ann@x.com", "password": "secret2"}
        )
        self.assertEqual(res.status_code, 200)

    def test_change_avatar_replaces_stored_image(self):
        data = self.register()
        old_public_id = data["user"]["avatar"]["publicId"]
        headers = self.auth(data["accessToken"])

        res = self.client.put("/api/v1/users/change-avatar", data={}, headers=headers)
        self.assertEqual(res.status_code, 400)

        res = self.client.put(
            "/api/v1/users/change-avatar",
            data={"avatar": (io.BytesIO(b"new-avatar"), "new.png", "image/png")},
            content_type="multipart/form-data",
            headers=headers,
        )
        self.assertEqual(res.status_code, 200)
        avatar = res.get_json()["data"]["user"]["avatar"]
        self.assertNotEqual(avatar["publicId"], old_public_id)
        self.assertEqual(self.s3.deletes, [old_public_id])
        cached = json.loads(self.redis.values[SessionCache.key(data["user"]["id"])])
        self.assertEqual(cached["avatar_public_id"], avatar["publicId"])


class SecureCookieTests(ApiTestCase):
    config_overrides = {"SESSION_COOKIE_SECURE": True}

    def test_auth_cookies_are_http_only_and_secure(self):
        res = self.client.post(
            "/api/v1/users/register",
            json={"name": "Ann Lee", "email": "ann@x.com", "password": "secret1"},
        )
        self.assertEqual(res.status_code, 201)
        cookies = res.headers.getlist("Set-Cookie")
        self.assertEqual(len(cookies), 2)
        for cookie in cookies:
            self.assertIn("HttpOnly", cookie)
            self.assertIn("Secure", cookie)


class LongPasswordTests(ApiTestCase):
    def test_register_rejects_password_over_72_bytes(self):
        for password in ("p" * 100, "é" * 40):
            res = self.client.post(
                "/api/v1/users/register",
                json={"name": "Ann Lee", "email": "ann@x.com", "password": password},
            )
            self.assertEqual(res.status_code, 400)
            self.assertEqual(res.get_json()["message"], "Password Must Be At Most 72 Bytes")
        with self.app.app_context():
            self.assertEqual(User.query.count(), 0)
        self.assertEqual(self.s3.uploads, [])

    def test_password_of_exactly_72_bytes_is_accepted(self):
        data = self.register(password="p" * 72)
        self.assertEqual(data["user"]["email"], "ann@x.com")
        res = self.client.post(
            "/api/v1/users/login", json={"email": "ann@x.com", "password": "p" * 72}
        )
        self.assertEqual(res.status_code, 200)

    def test_login_with_overlong_password_is_unauthenticated(self):
        self.register()
        res = self.client.post(
            "/api/v1/users/login", json={"email": "ann@x.com", "password": "p" * 100}
        )
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["message"], "Invalid User Credentials")

    def test_change_password_with_overlong_values(self):
        headers = self.auth(self.register()["accessToken"])
        res = self.client.put(
            "/api/v1/users/change-password",
            json={"oldPassword": "secret1", "newPassword": "p" * 100},
            headers=headers,
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["message"], "Password Must Be At Most 72 Bytes")

        res = self.client.put(
            "/api/v1/users/change-password",
            json={"oldPassword": "p" * 100, "newPassword": "secret2"},
            headers=headers,
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["message"], "Invalid Old Password")


class RegistrationRaceTests(ApiTestCase):
    def test_username_clash_at_insert_retries_with_new_handle(self):
        self.register()
        with mock.patch(
            "blog_backend.routes.users.generate_username", side_effect=["annlee", "annlee7"]
        ):
            data = self.register(email="ann2@x.com")
        self.assertEqual(data["user"]["username"], "annlee7")
        self.assertEqual(self.s3.deletes, [])
        with self.app.app_context():
            self.assertEqual(User.query.count(), 2)

    def test_repeated_username_clash_is_a_conflict_not_duplicate_email(self):
        self.register()
        with mock.patch(
            "blog_backend.routes.users.generate_username", side_effect=["annlee", "annlee"]
        ):
            res = self.client.post(
                "/api/v1/users/register",
                json={"name": "Ann Lee", "email": "ann2@x.com", "password": "secret1"},
            )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["message"], "Username Already Taken, Please Retry")
        self.assertEqual(self.s3.deletes, [self.s3.uploads[-1]["key"]])
        with self.app.app_context():
            self.assertEqual(User.query.count(), 1)


class AvatarCleanupTests(ApiTestCase):
    def test_failed_avatar_save_removes_new_upload(self):
        data = self.register()
        old_public_id = data["user"]["avatar"]["publicId"]
        failure = OperationalError("UPDATE users", {}, Exception("database is locked"))
        with mock.patch("sqlalchemy.orm.Session.commit", side_effect=failure):
            res = self.client.put(
                "/api/v1/users/change-avatar",
                data={"avatar": (io.BytesIO(b"new-avatar"), "new.png", "image/png")},
                content_type="multipart/form-data",
                headers=self.auth(data["accessToken"]),
            )
        self.assertEqual(res.status_code, 500)
        new_public_id = self.s3.uploads[-1]["key"]
        self.assertNotEqual(new_public_id, old_public_id)
        self.assertEqual(self.s3.deletes, [new_public_id])
        with self.app.app_context():
            user = db.session.get(User, data["user"]["id"])
            self.assertEqual(user.avatar_public_id, old_public_id)


if __name__ == "__main__":
    unittest.main()
