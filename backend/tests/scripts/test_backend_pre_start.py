from unittest.mock import MagicMock, patch

import pytest

from dbpools.backend_pre_start import init, logger, main
from dbpools.core.errors import ConfigurationError


def test_init_successful_connection() -> None:
    main_pool = MagicMock()
    tasks_pool = MagicMock()

    with (
        patch("dbpools.backend_pre_start.readiness_check", return_value=(True, [])) as mock_ready,
        patch.object(logger, "info"),
    ):
        try:
            init((main_pool, tasks_pool))
            connection_successful = True
        except Exception:
            connection_successful = False

        assert (
            connection_successful
        ), "Ready datasources should not raise an exception."

        mock_ready.assert_called_once_with((main_pool, tasks_pool))
        main_pool.stats.assert_called_once()
        tasks_pool.stats.assert_called_once()


def test_init_fails_fast_when_not_ready() -> None:
    with patch(
        "dbpools.backend_pre_start.readiness_check",
        return_value=(False, ["SqliteTasksPool"]),
    ):
        with pytest.raises(ConfigurationError, match="SqliteTasksPool"):
            init((MagicMock(), MagicMock()))


def test_main_disposes_datasources_on_failure() -> None:
    with (
        patch("dbpools.backend_pre_start.get_datasources", side_effect=ConfigurationError("bad uri")),
        patch("dbpools.backend_pre_start.dispose_datasources") as mock_dispose,
    ):
        with pytest.raises(ConfigurationError):
            main()
        mock_dispose.assert_called_once()
