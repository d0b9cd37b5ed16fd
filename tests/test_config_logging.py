from __future__ import annotations

import json
import logging

import pytest

from tixr_etl.core.config import ConfigError, Settings
from tixr_etl.core.logging import JsonFormatter


def test_missing_credentials_are_fatal():
    s = Settings(tixr_cpk="", tixr_secret_key="")
    assert s.missing() == ["TIXR_CPK", "TIXR_SECRET_KEY"]
    with pytest.raises(ConfigError, match="TIXR_CPK"):
        s.validate()


def test_complete_settings_validate():
    s = Settings(tixr_cpk="cpk", tixr_secret_key="secret")
    assert s.validate() is s


def test_json_formatter_merges_extra_fields():
    record = logging.LogRecord("tixr_etl.test", logging.INFO, __file__, 1, "page %s", (3,), None)
    record.event_id = 42

    payload = json.loads(JsonFormatter().format(record))

    assert payload["msg"] == "page 3"
    assert payload["level"] == "INFO"
    assert payload["event_id"] == 42
    assert "args" not in payload
