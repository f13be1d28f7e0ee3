"""Tests for environment-driven settings."""

import pydantic
import pytest

from dansgaming.shared.config import DEFAULT_JWT_SECRET, Settings


class TestJwtSecret:
    def test_default_secret_refused_in_production(self):
        with pytest.raises(pydantic.ValidationError, match="JWT_SECRET"):
            Settings(_env_file=None, environment="production", jwt_secret=DEFAULT_JWT_SECRET)

    def test_custom_secret_accepted_in_production(self):
        settings = Settings(_env_file=None, environment="production", jwt_secret="s3cret")

        assert settings.is_production

    def test_default_secret_allowed_in_development(self):
        settings = Settings(_env_file=None, environment="development", jwt_secret=DEFAULT_JWT_SECRET)

        assert settings.jwt_secret == DEFAULT_JWT_SECRET


class TestAllowedRoles:
    def test_parses_comma_separated_ids(self):
        settings = Settings(_env_file=None, allowed_roles=" 1, 2 ,,3 ")

        assert settings.allowed_role_ids == ["1", "2", "3"]
