import logging

import pytest

from services.common.logging_utils import (
    configure_service_logger,
    log_request,
    log_timing,
    status_log_level,
    with_log_context,
)


def test_log_level_env_wins(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "warning")
    monkeypatch.setenv("DEBUG", "1")
    assert configure_service_logger("np-test-level").level == logging.WARNING


def test_development_env_logs_debug(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("DEBUG", raising=False)
    monkeypatch.setenv("APP_ENV", "development")
    assert configure_service_logger("np-test-dev").level == logging.DEBUG


def test_production_env_defaults_to_info(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("DEBUG", raising=False)
    monkeypatch.setenv("APP_ENV", "production")
    assert configure_service_logger("np-test-prod").level == logging.INFO


def test_custom_app_env_name_is_honoured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("DEBUG", raising=False)
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("NP_TEST_ENV", "development")
    assert configure_service_logger("np-test-custom-env", app_env="NP_TEST_ENV").level == logging.DEBUG


def test_with_log_context_merges_adapter_context() -> None:
    base = with_log_context(logging.getLogger("np-test-ctx"), component="presence")
    narrowed = with_log_context(base, visit_id="v1")

    assert narrowed.extra == {"component": "presence", "visit_id": "v1"}
    assert narrowed.logger is base.logger


@pytest.mark.parametrize(("status_code", "level"), [(200, logging.INFO), (404, logging.WARNING), (502, logging.ERROR)])
def test_status_log_level(status_code: int, level: int) -> None:
    assert status_log_level(status_code) == level


def test_log_request_uses_status_level(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("np-test-access")
    with caplog.at_level(logging.INFO, logger="np-test-access"):
        log_request(logger, method="GET", path="/profile/x", status_code=503, client_ip="127.0.0.1", started_at=0.0)

    record = caplog.records[-1]
    assert record.levelno == logging.ERROR
    assert "GET /profile/x -> 503" in record.getMessage()


async def test_log_timing_reports_async_failures(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("np-test-timing")

    @log_timing(logger, "upstream call")
    async def boom():
        raise RuntimeError("nope")

    with caplog.at_level(logging.DEBUG, logger="np-test-timing"):
        with pytest.raises(RuntimeError):
            await boom()

    assert any("upstream call failed" in r.getMessage() for r in caplog.records)


def test_log_timing_wraps_sync_functions(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("np-test-timing-sync")

    @log_timing(logger, "slugify")
    def work(x):
        return x * 2

    with caplog.at_level(logging.DEBUG, logger="np-test-timing-sync"):
        assert work(21) == 42

    assert any("slugify completed" in r.getMessage() for r in caplog.records)
