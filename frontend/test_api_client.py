# frontend/test_api_client.py
# Unit tests for frontend config validation and API client helpers

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from frontend import config
from frontend.api_client import error_detail, is_public_endpoint


class TestValidateApiUrl:
    def test_local_allows_http_localhost(self):
        config.validate_api_url("http://127.0.0.1:8000", "local")

    @pytest.mark.parametrize("env", ["staging", "production"])
    def test_deployed_requires_https(self, env):
        with pytest.raises(ValueError, match="HTTPS"):
            config.validate_api_url("http://api.venuin.example", env)

    def test_deployed_rejects_localhost(self):
        with pytest.raises(ValueError, match="localhost"):
            config.validate_api_url("https://localhost:8000", "production")

    def test_empty(self):
        with pytest.raises(ValueError):
            config.validate_api_url("", "local")


class TestGetApiBaseUrl:
    def test_backend_url_wins_and_is_trimmed(self, monkeypatch):
        monkeypatch.setenv("BACKEND_URL", "https://api.venuin.example/")
        monkeypatch.setenv("API_BASE_URL", "https://other.example")
        with patch.object(config, "ENV", "production"):
            assert config.get_api_base_url() == "https://api.venuin.example"

    def test_api_base_url_fallback(self, monkeypatch):
        monkeypatch.delenv("BACKEND_URL", raising=False)
        monkeypatch.setenv("API_BASE_URL", "https://legacy.venuin.example")
        with patch.object(config, "ENV", "staging"):
            assert config.get_api_base_url() == "https://legacy.venuin.example"

    def test_local_default(self, monkeypatch):
        monkeypatch.delenv("BACKEND_URL", raising=False)
        monkeypatch.delenv("API_BASE_URL", raising=False)
        with patch.object(config, "ENV", "local"):
            assert config.get_api_base_url() == "http://127.0.0.1:8000"

    def test_production_without_url(self, monkeypatch):
        monkeypatch.delenv("BACKEND_URL", raising=False)
        monkeypatch.delenv("API_BASE_URL", raising=False)
        with patch.object(config, "ENV", "production"):
            with pytest.raises(RuntimeError):
                config.get_api_base_url()


class TestPublicEndpoints:
    @pytest.mark.parametrize("path", [
        "/auth/login", "/auth/register", "/auth/refresh", "/health",
        "/api/public/proposals/abcdefghijklmnop",
        "/api/public/proposals/abcdefghijklmnop/accept",
    ])
    def test_public(self, path):
        assert is_public_endpoint(path)

    @pytest.mark.parametrize("path", ["/auth/me", "/auth/logout", "/api/bookings", "/api/proposals/1/send"])
    def test_protected(self, path):
        assert not is_public_endpoint(path)


def _response(status_code, body=None, invalid_json=False):
    resp = MagicMock()
    resp.status_code = status_code
    if invalid_json:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


class TestErrorDetail:
    def test_string_detail(self):
        assert error_detail(_response(400, {"detail": "Proposal has expired"})) == "Proposal has expired"

    def test_validation_errors(self):
        body = {"detail": [
            {"loc": ["body", "guest_count"], "msg": "Input should be greater than or equal to 1"},
            {"loc": ["body"], "msg": "Field required"},
        ]}
        assert error_detail(_response(422, body)) == (
            "guest_count: Input should be greater than or equal to 1; Field required"
        )

    def test_non_json_body(self):
        assert error_detail(_response(502, invalid_json=True), "Gateway") == "Gateway (HTTP 502)"

    def test_no_response(self):
        assert error_detail(None, "Offline") == "Offline"
