"""Tests for environment-driven worker settings."""

import os
import sys

import pytest

from mediaworker.core.config import WorkerSettings, load_settings
from support import FAKE_ENGINE


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> dict:
    """Give each test a private copy of the environment without MEDIAWORKER_* variables.

    ``load_dotenv`` writes into ``os.environ``; the copy keeps those writes
    out of other tests.

    :param monkeypatch: Pytest monkeypatch fixture.
    :returns: The environment mapping in effect for the test.
    """
    env = {key: value for key, value in os.environ.items() if not key.startswith("MEDIAWORKER_")}
    monkeypatch.setattr(os, "environ", env)
    return env


def test_defaults(clean_env: dict) -> None:
    """With nothing configured, the documented defaults apply.

    :param clean_env: Isolated environment.
    """
    settings = load_settings()
    assert settings.engine_script is None
    assert settings.python == sys.executable
    assert settings.log_level == "error"
    assert settings.call_timeout == 15.0
    assert settings.shutdown_grace == 2.0


def test_environment_variables(clean_env: dict) -> None:
    """Each MEDIAWORKER_* variable maps onto its settings field.

    :param clean_env: Isolated environment.
    """
    clean_env.update(
        {
            "MEDIAWORKER_PYTHON": "/opt/engine/bin/python",
            "MEDIAWORKER_ENGINE_SCRIPT": FAKE_ENGINE,
            "MEDIAWORKER_LOG_LEVEL": "WARN",
            "MEDIAWORKER_CALL_TIMEOUT": "none",
            "MEDIAWORKER_SHUTDOWN_GRACE": "0.25",
        }
    )
    settings = load_settings()
    assert settings.python == "/opt/engine/bin/python"
    assert settings.engine_script == FAKE_ENGINE
    assert settings.log_level == "warn"
    assert settings.call_timeout is None
    assert settings.shutdown_grace == 0.25


def test_env_file_and_precedence(clean_env: dict, tmp_path) -> None:
    """A .env file fills gaps, the process environment beats it, and overrides beat both.

    :param clean_env: Isolated environment.
    :param tmp_path: Pytest temporary directory.
    """
    env_file = tmp_path / ".env"
    env_file.write_text(
        "MEDIAWORKER_LOG_LEVEL=debug\n"
        "MEDIAWORKER_CALL_TIMEOUT=3\n"
        f"MEDIAWORKER_ENGINE_SCRIPT={FAKE_ENGINE}\n"
    )
    clean_env["MEDIAWORKER_LOG_LEVEL"] = "none"

    settings = load_settings(env_file=str(env_file), shutdown_grace=0.0)
    assert settings.log_level == "none"
    assert settings.call_timeout == 3.0
    assert settings.engine_script == FAKE_ENGINE
    assert settings.shutdown_grace == 0.0


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("MEDIAWORKER_CALL_TIMEOUT", "soon"),
        ("MEDIAWORKER_CALL_TIMEOUT", "0"),
        ("MEDIAWORKER_SHUTDOWN_GRACE", "-1"),
        ("MEDIAWORKER_LOG_LEVEL", "verbose"),
    ],
)
def test_invalid_values_are_rejected(clean_env: dict, name: str, value: str) -> None:
    """Bad numbers and unknown log levels raise ValueError.

    :param clean_env: Isolated environment.
    :param name: Variable to set.
    :param value: Invalid value.
    """
    clean_env[name] = value
    with pytest.raises(ValueError):
        load_settings()


def test_command_and_environment() -> None:
    """The engine runs as ``python <script> --logLevel=<level>`` with unbuffered output."""
    settings = WorkerSettings(
        engine_script=FAKE_ENGINE,
        python="/usr/bin/python3",
        log_level="warn",
        extra_env={"ENGINE_FLAG": "1"},
    )
    assert settings.command() == ["/usr/bin/python3", os.path.abspath(FAKE_ENGINE), "--logLevel=warn"]
    env = settings.environment()
    assert env["PYTHONUNBUFFERED"] == "1"
    assert env["ENGINE_FLAG"] == "1"


def test_engine_script_may_be_a_module_path(monkeypatch: pytest.MonkeyPatch) -> None:
    """A module path is resolved to its source file.

    :param monkeypatch: Pytest monkeypatch fixture.
    """
    monkeypatch.syspath_prepend(os.path.dirname(FAKE_ENGINE))
    settings = WorkerSettings(engine_script="fake_engine")
    assert os.path.samefile(settings.command()[1], FAKE_ENGINE)


def test_missing_engine_script() -> None:
    """Spawning needs an engine script; unknown ones are reported."""
    with pytest.raises(ValueError):
        WorkerSettings().command()
    with pytest.raises(FileNotFoundError):
        WorkerSettings(engine_script="no_such_engine_module_xyz").command()
