from pathlib import Path

import pytest

from edgeci.settings import DEFAULT_CLEANUP_TIMEOUT_MINUTES, DEFAULT_TIMEOUT_MINUTES, load_settings


def test_defaults():
    settings = load_settings({})

    assert settings.home == Path(".edgeci")
    assert settings.timeout_minutes == DEFAULT_TIMEOUT_MINUTES == 60
    assert settings.cleanup_timeout_minutes == DEFAULT_CLEANUP_TIMEOUT_MINUTES == 5
    assert settings.max_workers is None
    assert settings.report_api is None


def test_environment_overrides():
    settings = load_settings({
        "EDGECI_HOME": "/var/lib/edgeci",
        "EDGECI_TIMEOUT_MINUTES": "180",
        "EDGECI_CLEANUP_TIMEOUT_MINUTES": "10",
        "EDGECI_MAX_WORKERS": "0",
        "EDGECI_REPORT_API": "http://audit:8000",
    })

    assert settings.home == Path("/var/lib/edgeci")
    assert settings.timeout_minutes == 180
    assert settings.cleanup_timeout_minutes == 10
    assert settings.max_workers == 1
    assert settings.report_api == "http://audit:8000"


@pytest.mark.parametrize(
    "environ",
    [
        {"EDGECI_TIMEOUT_MINUTES": "soon"},
        {"EDGECI_TIMEOUT_MINUTES": "-5"},
        {"EDGECI_CLEANUP_TIMEOUT_MINUTES": "0"},
        {"EDGECI_MAX_WORKERS": "many"},
    ],
)
def test_bad_values(environ):
    with pytest.raises(ValueError):
        load_settings(environ)
