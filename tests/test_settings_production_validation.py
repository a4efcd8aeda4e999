from __future__ import annotations

import pytest

from favorites_backend.config import Settings


def test_settings_development_allows_local_defaults():
    # Development stays frictionless: SQLite and wildcard CORS are fine.
    s = Settings.model_validate({"environment": "development"})
    assert s.cors_origins_list() == ["*"]
    assert any("CORS_ALLOW_ORIGINS" in w for w in s.security_warnings())


def test_settings_production_requires_explicit_cors_and_postgres():
    with pytest.raises(Exception) as excinfo:
        Settings.model_validate(
            {
                "environment": "production",
                "database_url": "sqlite:///./prod.db",
                "cors_allow_origins": "*",
            }
        )

    msg = str(excinfo.value)
    assert "CORS_ALLOW_ORIGINS" in msg
    assert "DATABASE_URL" in msg


def test_settings_production_accepts_safe_config():
    s = Settings.model_validate(
        {
            "environment": "production",
            "database_url": "postgresql+psycopg://u:p@localhost:5432/favorites",
            "cors_allow_origins": "https://a.example.com, https://b.example.com",
        }
    )
    assert s.cors_origins_list() == ["https://a.example.com", "https://b.example.com"]
    assert s.security_warnings() == []


def test_cors_origins_alias_is_accepted():
    s = Settings.model_validate({"CORS_ORIGINS": "https://only.example.com"})
    assert s.cors_origins_list() == ["https://only.example.com"]
