# SPDX-License-Identifier: Apache-2.0
"""Config and settings tests."""
import re

import pytest
from pydantic import ValidationError

from studyhub.config import (
    ALL_ACCESS_PATTERN,
    DATA_VERSION_PATTERN,
    PSEUDONYM_PREFIX_LENGTH,
    Settings,
    settings,
)


def test_settings_exists():
    assert settings is not None
    assert hasattr(settings, "database_url")
    assert hasattr(settings, "log_level")


def test_module_constants_follow_settings():
    assert DATA_VERSION_PATTERN == settings.data_version_pattern
    assert PSEUDONYM_PREFIX_LENGTH == settings.pseudonym_prefix_length
    assert ALL_ACCESS_PATTERN == ".*"


@pytest.mark.parametrize("name,ok", [
    ("1", True),
    ("1.0", True),
    ("10.2.3", True),
    ("1.2.3.4", False),
    ("v1", False),
    ("", False),
])
def test_default_version_pattern(name, ok):
    assert bool(re.match(Settings().data_version_pattern, name)) == ok


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("PSEUDONYM_PREFIX_LENGTH", "4")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    s = Settings()
    assert s.pseudonym_prefix_length == 4
    assert s.log_level == "debug"


def test_pseudonym_prefix_length_bounds(monkeypatch):
    monkeypatch.setenv("PSEUDONYM_PREFIX_LENGTH", "0")
    with pytest.raises(ValidationError):
        Settings()


def test_settings_production_property():
    # Default dev secret key -> production is False
    assert isinstance(settings.production, bool)
    assert Settings(secret_key="a-real-secret-of-some-length").production is True
