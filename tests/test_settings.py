from __future__ import annotations

import json

from config.settings import Settings, load_settings


def test_defaults_are_valid(tmp_path):
    st = Settings(EXPORT_MAIL_HOME=str(tmp_path))
    assert st.validate() == []
    assert st.config_file() == tmp_path / "config.json"
    assert st.token_cache_path() == tmp_path / "token-cache.bin"
    assert st.authority() == f"https://login.microsoftonline.com/{st.GRAPH_TENANT_ID}"


def test_scopes_are_split_and_trimmed():
    st = Settings(GRAPH_SCOPES=" Mail.Read , ,User.Read")
    assert st.scopes() == ["Mail.Read", "User.Read"]


def test_attachment_workers_capped_by_batch():
    assert Settings(ATTACHMENT_WORKERS=8, BATCH_SIZE=3).attachment_workers() == 3
    assert Settings(ATTACHMENT_WORKERS=0, BATCH_SIZE=3).attachment_workers() == 1


def test_validate_reports_problems():
    problems = Settings(GRAPH_CLIENT_ID="", GRAPH_SCOPES="", BATCH_SIZE=0).validate()
    assert len(problems) == 3


def test_missing_config_keeps_base(tmp_path):
    base = Settings(EXPORT_MAIL_HOME=str(tmp_path))
    assert load_settings(base=base) is base


def test_config_json_overrides(tmp_path):
    (tmp_path / "config.json").write_text(json.dumps({
        "clientId": "mi-app",
        "tenantId": "contoso.onmicrosoft.com",
        "scopes": ["Mail.Read", "User.Read"],
        "batchSize": "25",
        "retryBackoff": 0.5,
        "desconocida": 1,
    }))
    st = load_settings(base=Settings(EXPORT_MAIL_HOME=str(tmp_path)))

    assert st.GRAPH_CLIENT_ID == "mi-app"
    assert st.authority().endswith("/contoso.onmicrosoft.com")
    assert st.scopes() == ["Mail.Read", "User.Read"]
    assert st.BATCH_SIZE == 25
    assert st.RETRY_BACKOFF == 0.5


def test_invalid_value_is_ignored(tmp_path):
    (tmp_path / "config.json").write_text(json.dumps({"batchSize": "muchos", "clientId": "x"}))
    st = load_settings(base=Settings(EXPORT_MAIL_HOME=str(tmp_path), BATCH_SIZE=50))
    assert st.BATCH_SIZE == 50
    assert st.GRAPH_CLIENT_ID == "x"


def test_unreadable_config_falls_back(tmp_path, caplog):
    path = tmp_path / "otro.json"
    path.write_text("{ roto")
    base = Settings(EXPORT_MAIL_HOME=str(tmp_path))

    assert load_settings(path, base=base) is base
    assert "otro.json" in caplog.text
