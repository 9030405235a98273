import json
import logging
import sys

from redline.config.schema import ConnectionConfig, LoggingConfig
from redline.core.executor import _redacted
from redline.core.logging import ECSJsonFormatter, configure_logging, get_logger, session_extra


class _Session:
    name = "sess-1"
    config = ConnectionConfig(host="10.0.0.5", port=6380)


def test_ecs_log_output_to_file(tmp_path) -> None:
    log_file = tmp_path / "redline.log"
    config = LoggingConfig(
        level="INFO",
        fmt="ecs_json",
        sink="file",
        file_path=str(log_file),
        service_name="redline-test",
    )
    configure_logging(config, force=True)
    logger = get_logger("redline.test.logging")
    logger.info(
        "connected",
        extra=session_extra(
            _Session(),
            component="session",
            event_action="connect",
            event_outcome="success",
            payload={"database": 2},
        ),
    )

    record = json.loads(log_file.read_text(encoding="utf-8").strip())
    assert record["@timestamp"]
    assert record["service"]["name"] == "redline-test"
    assert record["event"]["action"] == "connect"
    assert record["event"]["outcome"] == "success"
    assert record["session"]["id"] == "sess-1"
    assert record["server"] == {"address": "10.0.0.5", "port": 6380}
    assert record["redline"]["component"] == "session"
    assert record["redline"]["payload"] == {"database": 2}
    assert "client" not in record


def test_formatter_includes_error_details() -> None:
    formatter = ECSJsonFormatter(service_name="redline-test")
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.getLogger("redline.test").makeRecord(
            "redline.test", logging.ERROR, __file__, 1, "failed", None, exc_info=sys.exc_info()
        )
    payload = json.loads(formatter.format(record))
    assert payload["error"] == {"type": "RuntimeError", "message": "boom"}
    assert payload["log"]["level"] == "error"


def test_configure_logging_is_idempotent_without_force(tmp_path) -> None:
    first = LoggingConfig(level="DEBUG", fmt="text", sink="file", file_path=str(tmp_path / "a.log"))
    configure_logging(first, force=True)
    configure_logging(LoggingConfig(level="ERROR"))
    root = logging.getLogger("redline")
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    configure_logging(LoggingConfig(level="ERROR"), force=True)
    assert root.level == logging.ERROR


def test_auth_arguments_are_redacted() -> None:
    assert _redacted("AUTH hunter2") == "AUTH ***"
    assert _redacted("auth user hunter2") == "auth ***"
    assert _redacted("GET key") == "GET key"
