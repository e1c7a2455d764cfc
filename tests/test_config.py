"""Tests for Settings configuration model."""

from pathlib import Path

from src.config import Settings


class TestDefaults:
    def test_backend_defaults(self):
        s = Settings()
        assert s.api_base_url == "http://localhost:3000"
        assert s.persistence_backend == "http"
        assert s.save_debounce_seconds == 1.0

    def test_database_path_is_a_path(self):
        s = Settings(database_path="tmp/x.db")
        assert s.database_path == Path("tmp/x.db")


class TestGetAuthHeaders:
    def test_bearer_token(self):
        s = Settings(api_token="abc")
        assert s.get_auth_headers() == {"Authorization": "Bearer abc"}

    def test_strips_whitespace(self):
        s = Settings(api_token="  abc \n")
        assert s.get_auth_headers() == {"Authorization": "Bearer abc"}

    def test_empty_token_sends_nothing(self):
        s = Settings(api_token="   ")
        assert s.get_auth_headers() == {}


class TestUrls:
    def test_chat_url(self):
        s = Settings(api_base_url="https://tutor.example.com/")
        assert s.chat_url() == "https://tutor.example.com/api/chat"

    def test_conversations_url(self):
        s = Settings(api_base_url="https://tutor.example.com", conversations_path="/v2/conv")
        assert s.conversations_url() == "https://tutor.example.com/v2/conv"
