"""Tests for logging setup and configuration."""

import logging
import re
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from core.logging.context import clear_log_context, get_log_context
from core.logging.formatters import JSONFormatter
from core.logging.setup import (
    NOISY_LOGGERS,
    ArchivingTimedRotatingFileHandler,
    generate_cycle_id,
    get_log_file_path,
    get_logger,
    log_worker_startup,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    noisy_levels = {name: logging.getLogger(name).level for name in NOISY_LOGGERS}
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, noisy_level in noisy_levels.items():
        logging.getLogger(name).setLevel(noisy_level)
    clear_log_context()


class TestGetLogFilePath:

    def test_builds_path_with_stage_and_instance(self):
        path = get_log_file_path(Path("logs"), stage="indexer", instance_id="3")

        assert path.parent.parent == Path("logs")
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}", path.parent.name)
        assert re.fullmatch(r"indexer_\d{4}_\d{4}_3\.log", path.name)

    def test_defaults_stage_name(self):
        path = get_log_file_path(Path("logs"), instance_id="0")

        assert path.name.startswith("streamindex_")

    @patch("core.logging.setup._get_next_instance_id", return_value="7")
    def test_generates_instance_id_when_not_provided(self, _):
        path = get_log_file_path(Path("logs"), stage="relay")

        assert path.name.endswith("_7.log")


class TestArchivingTimedRotatingFileHandler:

    def test_creates_default_archive_directory(self, tmp_path):
        handler = ArchivingTimedRotatingFileHandler(tmp_path / "app.log")
        try:
            assert (tmp_path / "archive").is_dir()
        finally:
            handler.close()

    def test_moves_rotated_files_to_archive(self, tmp_path):
        archive = tmp_path / "old"
        handler = ArchivingTimedRotatingFileHandler(
            tmp_path / "app.log", when="S", archive_dir=archive
        )
        try:
            handler.emit(logging.makeLogRecord({"msg": "before rollover"}))
            handler.doRollover()
        finally:
            handler.close()

        archived = list(archive.glob("app.log.*"))
        assert len(archived) == 1
        assert not list(tmp_path.glob("app.log.*"))


class TestSetupLogging:

    def test_stdout_mode_has_single_stream_handler(self, tmp_path):
        setup_logging(stage="relay", log_dir=tmp_path, log_to_stdout=True)

        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.StreamHandler)
        assert not list(tmp_path.iterdir())

    def test_file_mode_adds_json_file_handler(self, tmp_path):
        setup_logging(stage="indexer", log_dir=tmp_path, worker_id="w-1")

        file_handlers = [
            h for h in logging.getLogger().handlers
            if isinstance(h, ArchivingTimedRotatingFileHandler)
        ]
        assert len(file_handlers) == 1
        assert isinstance(file_handlers[0].formatter, JSONFormatter)
        assert Path(file_handlers[0].baseFilename).name.startswith("indexer_")

    def test_plain_file_format_when_json_disabled(self, tmp_path):
        setup_logging(stage="indexer", log_dir=tmp_path, json_format=False)

        file_handler = next(
            h for h in logging.getLogger().handlers
            if isinstance(h, ArchivingTimedRotatingFileHandler)
        )
        assert not isinstance(file_handler.formatter, JSONFormatter)

    def test_sets_log_context(self, tmp_path):
        setup_logging(stage="indexer", worker_id="indexer-0", log_to_stdout=True)

        context = get_log_context()
        assert context["stage"] == "indexer"
        assert context["worker_id"] == "indexer-0"

    def test_suppresses_noisy_loggers(self, tmp_path):
        setup_logging(log_dir=tmp_path, log_to_stdout=True)

        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_does_not_suppress_when_disabled(self, tmp_path):
        logging.getLogger("aiokafka").setLevel(logging.NOTSET)
        setup_logging(log_dir=tmp_path, log_to_stdout=True, suppress_noisy=False)

        assert logging.getLogger("aiokafka").level == logging.NOTSET

    def test_clears_existing_handlers(self, tmp_path):
        stale = logging.NullHandler()
        logging.getLogger().addHandler(stale)

        setup_logging(log_dir=tmp_path, log_to_stdout=True)

        assert stale not in logging.getLogger().handlers

    def test_root_level_is_lowest_handler_level(self, tmp_path):
        setup_logging(log_dir=tmp_path, log_to_stdout=True, console_level=logging.WARNING)

        assert logging.getLogger().level == logging.DEBUG

    def test_returns_named_logger(self, tmp_path):
        logger = setup_logging(name="streamindex", log_dir=tmp_path, log_to_stdout=True)

        assert logger.name == "streamindex"


class TestGetLogger:

    def test_returns_logger_with_given_name(self):
        assert get_logger("streamindex.indexer").name == "streamindex.indexer"


class TestLogWorkerStartup:

    def test_logs_all_fields(self):
        logger = MagicMock()
        log_worker_startup(
            logger,
            "batch indexer",
            kafka_bootstrap_servers="localhost:9092",
            input_topic="wikimedia_recentchange",
            consumer_group="consumer-opensearch",
            extra_config={"Index": "wikimedia"},
        )

        lines = [c.args[0] % c.args[1:] if len(c.args) > 1 else c.args[0] for c in logger.info.call_args_list]
        assert "Starting batch indexer" in lines
        assert "Kafka bootstrap servers: localhost:9092" in lines
        assert "Input topic: wikimedia_recentchange" in lines
        assert "Consumer group: consumer-opensearch" in lines
        assert "Index: wikimedia" in lines

    def test_reads_bootstrap_servers_from_env(self, monkeypatch):
        monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "broker:29092")
        logger = MagicMock()
        log_worker_startup(logger, "change feed relay")

        logger.info.assert_any_call("Kafka bootstrap servers: %s", "broker:29092")

    def test_shows_not_set_without_env(self, monkeypatch):
        monkeypatch.delenv("KAFKA_BOOTSTRAP_SERVERS", raising=False)
        logger = MagicMock()
        log_worker_startup(logger, "change feed relay")

        logger.info.assert_any_call("Kafka bootstrap servers: %s", "not set")

    def test_omits_optional_fields(self):
        logger = MagicMock()
        log_worker_startup(logger, "change feed relay", kafka_bootstrap_servers="k:9092")

        formats = [c.args[0] for c in logger.info.call_args_list]
        assert "Input topic: %s" not in formats
        assert "Consumer group: %s" not in formats


class TestGenerateCycleId:

    def test_follows_expected_format(self):
        assert re.fullmatch(r"c-\d{8}-\d{6}-[0-9a-f]{4}", generate_cycle_id())

    def test_generates_unique_ids(self):
        ids = {generate_cycle_id() for _ in range(50)}
        assert len(ids) > 1
