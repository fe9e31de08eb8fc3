"""
Tests for settings validation and line credential lookup.
"""

import pytest
from pydantic import ValidationError

from dialer.config import Environment, LineCredentials, Settings


def make_settings(**overrides):
    overrides.setdefault("cpaas_username", None)
    overrides.setdefault("cpaas_password", None)
    return Settings(_env_file=None, **overrides)


def test_line_credentials_take_priority():
    settings = make_settings(
        cpaas_username="env-user",
        cpaas_password="env-pass",
        line_credentials={"+91": {"username": "line-user", "password": "line-pass"}},
    )

    assert settings.get_line_credentials("+91") == LineCredentials(username="line-user", password="line-pass")
    assert settings.get_line_credentials("+44").username == "env-user"


def test_default_line_used_when_no_line_requested():
    settings = make_settings(
        default_line="+91",
        line_credentials={"+91": {"username": "default-user", "password": "pw"}},
    )

    assert settings.get_line_credentials().username == "default-user"
    assert settings.get_line_credentials("+44") is None


def test_negative_interval_rejected():
    with pytest.raises(ValidationError):
        make_settings(redial_min_interval=-1)


def test_production_requires_https_provider():
    with pytest.raises(ValidationError):
        make_settings(environment=Environment.PRODUCTION, cpaas_base_url="http://provider.test")

    settings = make_settings(environment=Environment.PRODUCTION, cpaas_base_url="https://provider.test/")
    assert settings.cpaas_base_url == "https://provider.test"
