import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tokenfence import app as app_module
from tokenfence.api import schemas


def test_security_headers_and_cors():
    client = TestClient(app_module.app)
    response = client.get("/countries", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["API-Version"] == app_module.__version__
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    # Only credential routes are no-store
    assert "Cache-Control" not in response.headers


def test_allowed_origins_default():
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins
    assert "*" not in origins


def test_register_request_normalizes_email():
    req = schemas.RegisterRequest(
        email=" User@Example.com ", password="Password1", confirmPassword="Password1"
    )
    assert req.email == "user@example.com"


@pytest.mark.parametrize(
    "payload",
    [
        {"email": "invalid", "password": "Password1", "confirmPassword": "Password1"},
        {"email": "a@x.com", "password": "Short1", "confirmPassword": "Short1"},
        {"email": "a@x.com", "password": "Password1", "confirmPassword": "Password2"},
    ],
)
def test_register_request_rejects(payload):
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(**payload)


def test_zero_width_characters_are_stripped_from_email():
    req = schemas.RegisterRequest(
        email="a\u200b@x.com", password="Password1", confirmPassword="Password1"
    )
    assert req.email == "a@x.com"


def test_login_request_does_not_enforce_strength():
    req = schemas.LoginRequest(email="a@x.com", password="secret")
    assert req.password == "secret"


def test_camel_case_aliases_and_snake_case_names():
    by_alias = schemas.MenuCreateRequest(
        name="Home", route="/", parentId="p1", sortOrder=2, isActive=False
    )
    by_name = schemas.MenuCreateRequest(
        name="Home", route="/", parent_id="p1", sort_order=2, is_active=False
    )
    assert by_alias == by_name
    assert by_alias.model_dump()["parent_id"] == "p1"


def test_update_requests_need_a_field():
    with pytest.raises(ValidationError):
        schemas.CountryUpdateRequest()
    with pytest.raises(ValidationError):
        schemas.MenuUpdateRequest()

    update = schemas.CountryUpdateRequest(currencyCode="EUR")
    assert update.model_dump(exclude_unset=True) == {"currency_code": "EUR"}


def test_token_bodies_are_bounded():
    with pytest.raises(ValidationError):
        schemas.RefreshTokenRequest(refreshToken="x" * (schemas.MAX_TOKEN_LENGTH + 1))
    with pytest.raises(ValidationError):
        schemas.VerifyTokenRequest(token="")
