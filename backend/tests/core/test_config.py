"""Unit tests for core.config: DatabaseProperties validation and Settings loading."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from dbpools.core.config import DatabaseProperties, load_settings
from dbpools.core.errors import ConfigurationError
from dbpools.models import BackendKindEnum, JournalModeEnum


def test_busy_timeout_parses_iso_duration_and_seconds() -> None:
    assert DatabaseProperties(file="a.db", busy_timeout="PT5S").busy_timeout == timedelta(seconds=5)
    assert DatabaseProperties(file="a.db", busy_timeout=5).busy_timeout == timedelta(seconds=5)


def test_unparsable_busy_timeout_is_configuration_error() -> None:
    """Bad durations abort startup with ConfigurationError."""
    with pytest.raises(ConfigurationError):
        load_settings(_env_file=None, DATABASE={"file": "a.db", "busy_timeout": "five seconds"})


def test_negative_busy_timeout_rejected() -> None:
    with pytest.raises(ValidationError):
        DatabaseProperties(file="a.db", busy_timeout=-1)


def test_pragma_values_are_stringified_and_ordered() -> None:
    props = DatabaseProperties(file="a.db", pragmas={"foo": 1, "bar": "2"})
    assert list(props.pragmas.items()) == [("foo", "1"), ("bar", "2")]


@pytest.mark.parametrize(
    "pragmas",
    [
        {"foo bar": "1"},
        {"foo": "1; DROP TABLE x"},
        {"foo": ""},
        {"1foo": "1"},
    ],
)
def test_invalid_pragmas_are_configuration_errors(pragmas: dict) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(_env_file=None, DATABASE={"file": "a.db", "pragmas": pragmas})


def test_journal_mode_enum() -> None:
    props = DatabaseProperties(file="a.db", journal_mode="WAL")
    assert props.journal_mode == JournalModeEnum.WAL
    with pytest.raises(ValidationError):
        DatabaseProperties(file="a.db", journal_mode="FAST")


def test_pool_sizes_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        DatabaseProperties(file="a.db", pool_size=0)
    with pytest.raises(ValidationError):
        DatabaseProperties(file="a.db", max_pool_size=0)


def test_settings_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Nested DATABASE__* and DATASOURCE_* variables are read once into Settings."""
    monkeypatch.setenv("DATABASE__FILE", "/data/app.db")
    monkeypatch.setenv("DATABASE__MAX_POOL_SIZE", "20")
    monkeypatch.setenv("TASKS_DB", '{"file": "/data/tasks.db", "pragmas": {"foo": "1"}}')
    monkeypatch.setenv("DATASOURCE_URL", "postgresql://db.internal/app")
    monkeypatch.setenv("DATASOURCE_MAXIMUM_POOL_SIZE", "15")
    monkeypatch.setenv("DATABASE_BACKEND", "networked")

    s = load_settings(_env_file=None)

    assert s.DATABASE.file == "/data/app.db"
    assert s.DATABASE.max_pool_size == 20
    assert s.TASKS_DB.pragmas == {"foo": "1"}
    assert s.DATASOURCE_URL == "postgresql://db.internal/app"
    assert s.DATASOURCE_MAXIMUM_POOL_SIZE == 15
    assert s.DATABASE_BACKEND == BackendKindEnum.NETWORKED


def test_invalid_pool_override_is_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATASOURCE_MAXIMUM_POOL_SIZE", "many")
    with pytest.raises(ConfigurationError):
        load_settings(_env_file=None)


def test_blank_datasource_url_means_unset() -> None:
    assert load_settings(_env_file=None, DATASOURCE_URL="   ").DATASOURCE_URL is None


def test_settings_are_frozen() -> None:
    s = load_settings(_env_file=None)
    with pytest.raises(ValidationError):
        s.DATASOURCE_URL = "postgresql://elsewhere/app"


def test_dev_mode_warns_locally() -> None:
    with pytest.warns(UserWarning, match="DEV_MODE"):
        s = load_settings(_env_file=None, ENVIRONMENT="local", DEV_MODE=True)
    assert s.DEV_MODE is True


@pytest.mark.parametrize("environment", ["staging", "production"])
def test_dev_mode_outside_local_is_fatal(environment: str) -> None:
    with pytest.raises(ConfigurationError, match="DEV_MODE"):
        load_settings(_env_file=None, ENVIRONMENT=environment, DEV_MODE=True)
