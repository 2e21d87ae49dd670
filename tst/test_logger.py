import json

import pytest
import structlog

from logger import configure_logging, get_logger


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_module_logger_created_before_configuration(capsys):
    log = get_logger("services")
    configure_logging("INFO", "json")

    log.info("slot_committed", slot=700)

    line = json.loads(capsys.readouterr().out.strip())
    assert line["event"] == "slot_committed"
    assert line["slot"] == 700
    assert line["logger_name"] == "services"
    assert line["level"] == "info"
    assert "timestamp" in line


def test_level_from_configuration_filters_existing_loggers(capsys):
    log = get_logger("rpc")
    configure_logging("WARNING", "json")

    log.info("rpc_call", method="getSlot")
    log.warning("rpc_call_retry", attempt=1)

    lines = [json.loads(l) for l in capsys.readouterr().out.splitlines()]
    assert [l["event"] for l in lines] == ["rpc_call_retry"]
