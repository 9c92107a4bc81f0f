"""Tests for configuration handling and the command line interface."""

import pytest
from sqlalchemy import inspect

from durable_flow.config import AppConfig, LogLevel, get_config, reset_config, set_config, validate_config
from durable_flow.startup import create_argument_parser, load_configuration, main
from durable_flow.storage.database import create_database_engine, get_database_engine, reset_database_engine
from durable_flow.storage.migrations import run_migrations


@pytest.fixture(autouse=True)
def clean_global_config():
    yield
    reset_config()


class TestConfiguration:
    """Configuration presets and validation."""

    def test_grace_period_must_be_shorter_than_lease(self):
        config = AppConfig(lease_seconds=2.0, cancel_grace_period_seconds=5.0, database_url="sqlite:///:memory:")
        with pytest.raises(ValueError) as exc_info:
            validate_config(config)
        assert "Cancel grace period" in str(exc_info.value)

    def test_command_line_overrides(self, tmp_path):
        parser = create_argument_parser()
        args = parser.parse_args([
            "--env", "testing",
            "--port", "9001",
            "--log-level", "ERROR",
            "--max-concurrent-nodes", "7",
            "--database-url", f"sqlite:///{tmp_path / 'cli.db'}",
        ])
        config = load_configuration(args)

        assert config.port == 9001
        assert config.log_level == LogLevel.ERROR
        assert config.max_concurrent_nodes == 7
        assert config.database_url.endswith("cli.db")
        assert get_config() is config


class TestGlobalEngine:
    """Module-level engine built from the installed configuration."""

    def test_migrations_use_configured_database(self, tmp_path):
        database_url = f"sqlite:///{tmp_path / 'global.db'}"
        set_config(AppConfig(database_url=database_url))
        try:
            run_migrations()
            tables = set(inspect(get_database_engine()).get_table_names())
        finally:
            reset_database_engine()
        assert {"executions", "journal_events"} <= tables


class TestCommands:
    """Subcommands run against a temporary database."""

    def test_config_validate(self, capsys):
        main(["--env", "testing", "config", "validate"])
        assert "Configuration validation: PASSED" in capsys.readouterr().out

    def test_config_show(self, capsys):
        main(["--env", "testing", "config", "show"])
        output = capsys.readouterr().out
        assert "Max Concurrent Nodes: 4" in output
        assert "Lease: 3.0s" in output

    def test_db_init_and_purge(self, tmp_path, capsys):
        database_url = f"sqlite:///{tmp_path / 'journal.db'}"
        main(["--env", "testing", "--database-url", database_url, "db", "init"])
        assert "Database initialized" in capsys.readouterr().out

        engine = create_database_engine(database_url)
        try:
            tables = set(inspect(engine).get_table_names())
        finally:
            engine.dispose()
        assert {"executions", "journal_events"} <= tables

        main(["--env", "testing", "--database-url", database_url, "db", "purge", "--days", "1"])
        assert "Purged 0 executions older than 1 days" in capsys.readouterr().out

    def test_missing_db_subcommand_exits(self, tmp_path):
        with pytest.raises(SystemExit):
            main(["--env", "testing", "--database-url", f"sqlite:///{tmp_path / 'x.db'}", "db"])
