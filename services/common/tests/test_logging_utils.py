import logging

import pytest

from services.common.logging_utils import (
    configure_service_logger,
    log_exceptions,
    log_timing,
    module_logger,
    resolve_level,
    with_log_context,
)


@pytest.mark.parametrize(
    "log_level, debug, expected",
    [
        ("warn", None, logging.WARNING),
        ("ERROR", "1", logging.ERROR),
        ("bogus", None, logging.INFO),
        (None, "yes", logging.DEBUG),
        (None, "0", logging.INFO),
    ],
)
def test_resolve_level(
    monkeypatch: pytest.MonkeyPatch, log_level: str | None, debug: str | None, expected: int
) -> None:
    for name, value in (("LOG_LEVEL", log_level), ("DEBUG", debug)):
        if value is None:
            monkeypatch.delenv(name, raising=False)
        else:
            monkeypatch.setenv(name, value)

    assert resolve_level() == expected


def test_configure_service_logger_sets_named_level(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")

    logger = configure_service_logger("unit-test-service")

    assert logger.name == "unit-test-service"
    assert logger.level == logging.DEBUG
    assert module_logger("unit-test-service", "child").parent is logger


def test_with_log_context_prefixes_messages(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("unit-test.context")
    adapter = with_log_context(logger, track="abc", source=None, attempt=2)

    with caplog.at_level(logging.INFO, logger="unit-test.context"):
        adapter.info("retrying")

    assert caplog.records[-1].getMessage() == "[track=abc attempt=2] retrying"


def test_log_exceptions_logs_and_reraises(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("unit-test.exceptions")

    @log_exceptions(logger, "handler blew up")
    def handler() -> None:
        raise RuntimeError("boom")

    with caplog.at_level(logging.ERROR, logger="unit-test.exceptions"):
        with pytest.raises(RuntimeError):
            handler()

    record = caplog.records[-1]
    assert record.getMessage() == "handler blew up"
    assert record.exc_info is not None


@pytest.mark.asyncio
async def test_log_timing_wraps_coroutines(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("unit-test.timing")

    @log_timing(logger, "lookup")
    async def lookup(value: int) -> int:
        return value * 2

    with caplog.at_level(logging.DEBUG, logger="unit-test.timing"):
        assert await lookup(21) == 42

    assert lookup.__name__ == "lookup"
    assert caplog.records[-1].getMessage().startswith("lookup completed in ")
