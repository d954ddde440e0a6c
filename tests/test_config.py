# Tests for config.py and the CLI entry point.
# Created: 2026-10-15

import pytest

from markgate import __version__
from markgate.__main__ import build_parser, main
from markgate.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("MARKGATE_ISSUER", "MARKGATE_JWT_SIGNING_KEY", "MARKGATE_REDIS_URL"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None)
        assert settings.issuer == "http://localhost:8000"
        assert settings.jwt_signing_key is None
        assert settings.access_token_ttl == 3600
        assert settings.refresh_token_ttl == 30 * 24 * 3600
        assert settings.session_ttl == 14 * 24 * 3600
        assert settings.redis_url is None
        assert settings.cookie_secure is True

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("MARKGATE_ISSUER", "https://auth.example.com/")
        monkeypatch.setenv("MARKGATE_JWT_SIGNING_KEY", "k" * 40)
        settings = Settings(_env_file=None)
        assert settings.issuer == "https://auth.example.com"
        assert settings.jwt_signing_key == "k" * 40

    def test_comma_separated_lists(self, monkeypatch):
        monkeypatch.setenv(
            "MARKGATE_ALLOWED_REDIRECT_URIS",
            "https://a.example.com/done, https://b.example.com/done",
        )
        monkeypatch.setenv("MARKGATE_SCOPES_SUPPORTED", "bookmarks:read")
        settings = Settings(_env_file=None)
        assert settings.allowed_redirect_uris == [
            "https://a.example.com/done",
            "https://b.example.com/done",
        ]
        assert settings.scopes_supported == ["bookmarks:read"]


class TestCLI:
    def test_generate_key(self, capsys):
        assert main(["generate-key"]) == 0
        key = capsys.readouterr().out.strip()
        assert len(key) >= 43

    def test_generate_key_unique(self, capsys):
        main(["generate-key"])
        main(["generate-key"])
        first, second = capsys.readouterr().out.split()
        assert first != second

    def test_version(self, capsys):
        with pytest.raises(SystemExit):
            main(["--version"])
        assert __version__ in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "serve" in capsys.readouterr().out

    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])
        assert args.host == "127.0.0.1"
        assert args.port == 8000
        assert args.dev is False
