import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

from migente_auth import bootstrap
from migente_auth.api.error_handling import register_exception_handlers
from migente_auth.api.schemas import (
    LegacyCredentialUpdate,
    LoginRequest,
    PasswordChangeRequest,
    SignupRequest,
    _normalize_unicode,
)
from migente_auth.config import Settings
from migente_auth.logging import _redact_pii, email_fingerprint
from migente_auth.service.email import EmailService
from migente_auth.service.errors import (
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
)
from migente_auth.service.runtime import _mask_url_password, check_rate_limit, get_runtime
from migente_auth.storage.errors import ConstraintViolation


class TestSchemas:
    def test_email_is_normalized(self):
        request = LoginRequest(email="  Ana@Example.COM ", password="x")
        assert request.email == "ana@example.com"

    def test_zero_width_characters_are_stripped(self):
        assert _normalize_unicode("a\u200bb\u202ec") == "abc"

    def test_signup_enforces_password_length_and_role(self):
        profile = {"first_name": "Ana", "last_name": "Reyes"}
        with pytest.raises(PydanticValidationError):
            SignupRequest(email="a@x.com", password="short", profile=profile)
        with pytest.raises(PydanticValidationError):
            SignupRequest(
                email="a@x.com", password="LongEnough1", profile={**profile, "role": "admin"}
            )
        request = SignupRequest(email="a@x.com", password="LongEnough1", profile=profile)
        assert request.profile.role == "employer"

    def test_password_change_must_differ(self):
        with pytest.raises(PydanticValidationError):
            PasswordChangeRequest(current_password="SamePass123", new_password="SamePass123")

    def test_legacy_update_needs_a_field(self):
        with pytest.raises(PydanticValidationError):
            LegacyCredentialUpdate()
        assert LegacyCredentialUpdate(active=False).active is False


class TestErrorEnvelope:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/token")
        async def token():
            raise InvalidTokenError("invalid refresh token")

        @app.get("/missing")
        async def missing():
            raise NotFoundError("credential not found", detail={"credential_id": 3})

        @app.get("/constraint")
        async def constraint():
            raise ConstraintViolation("email already exists", {"field": "email"})

        @app.get("/limited")
        async def limited():
            raise RateLimitedError("rate limit exceeded", detail={"retry_after": 30})

        @app.get("/boom")
        async def boom():
            raise RuntimeError("secret internals")

        return TestClient(app, raise_server_exceptions=False)

    def test_service_errors_map_to_codes(self, client):
        response = client.get("/token")
        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "invalid refresh token",
            "details": None,
        }
        missing = client.get("/missing").json()
        assert missing["error"]["code"] == "not_found"
        assert missing["error"]["details"] == {"credential_id": 3}

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_rate_limited_is_429(self, client):
        response = client.get("/limited")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.json()["error"]["details"] == {"retry_after": 30}

    def test_uncaught_errors_are_generic(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert "secret internals" not in response.text
        assert response.json()["error"]["code"] == "server_error"


class TestRuntimeHelpers:
    async def test_rate_limit_bucket(self):
        runtime = get_runtime()
        assert await check_rate_limit(runtime, "login:a@x.com", 2, 60)
        assert await check_rate_limit(runtime, "login:a@x.com", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            runtime, "login:a@x.com", 2, 60, return_remaining=True
        )
        assert not allowed
        assert remaining == 0
        assert reset > 0
        assert await check_rate_limit(runtime, "login:b@x.com", 2, 60)

    def test_mask_url_password(self):
        masked = _mask_url_password("postgresql://app:hunter2@db:5432/migente")
        assert masked == "postgresql://app:***@db:5432/migente"
        assert _mask_url_password("postgresql://db/migente") == "postgresql://db/migente"


class TestSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("RESET_TOKEN_TTL_MINUTES", "30")
        monkeypatch.setenv("REVEAL_UNKNOWN_RESET_EMAIL", "true")
        settings = Settings.from_env()
        assert settings.reset_token_ttl_minutes == 30
        assert settings.reveal_unknown_reset_email is True
        assert settings.activation_token_ttl_minutes is None

    def test_rejects_unknown_default_role(self):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="x" * 40, default_user_role="admin")

    def test_generated_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret


class TestEmailService:
    def test_dev_mode_only_logs(self):
        service = EmailService(base_url="https://migente.test/")
        assert not service.is_configured
        assert service.send_activation("a@x.com", "u1", "tok")
        assert service.send_password_reset("a@x.com", "123456", 15)
        assert service.send_password_changed("a@x.com")

    def test_fingerprint_is_stable_and_opaque(self):
        assert email_fingerprint("A@x.com ") == email_fingerprint("a@x.com")
        assert "a@x.com" not in email_fingerprint("a@x.com")

    def test_redaction_skips_only_known_opaque_fields(self):
        event = _redact_pii(
            None,
            "info",
            {
                "password_hash": "$argon2id$v=19$abcdef",
                "email_hash": "0123456789abcdef",
                "reset_token_hash": "deadbeefcafe",
            },
        )
        assert event["password_hash"] == "$a***ef"
        assert event["reset_token_hash"] == "de***fe"
        assert event["email_hash"] == "0123456789abcdef"


class TestBootstrapAdmin:
    def test_password_complexity(self):
        assert bootstrap.validate_password("Admin-Password-1")
        assert not bootstrap.validate_password("short")
        assert not bootstrap.validate_password("alllowercaseletters")

    def test_creates_confirmed_admin_once(self):
        auth = get_runtime().auth
        created = bootstrap.bootstrap_admin(auth, "root@x.com", "Admin-Password-1")
        assert created["status"] == "created"
        user = auth.store.get_user(created["user_id"])
        assert user.role == "admin" and user.confirmed
        assert auth.store.get_legacy_credential_by_user(user.id).active

        again = bootstrap.bootstrap_admin(auth, "root@x.com", "Admin-Password-1")
        assert again["status"] == "already_admin"

    async def test_refuses_existing_non_admin(self):
        auth = get_runtime().auth
        await auth.register("a@x.com", "TestPassword123!", {"role": "employer"})
        with pytest.raises(ConflictError):
            bootstrap.bootstrap_admin(auth, "a@x.com", "Admin-Password-1")

    def test_main_dry_run(self, capsys):
        code = bootstrap.main(
            ["--email", "root@x.com", "--password", "Admin-Password-1", "--dry-run"]
        )
        assert code == 0
        assert "DRY RUN" in capsys.readouterr().out
        assert get_runtime().store.get_user_by_email("root@x.com") is None
