from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from caddy_manager.config import load_config
from caddy_manager.runtime import RuntimeSettings

ENV_KEYS = (
    "CADDY_MANAGER_CONFIG",
    "LOG_LEVEL",
    "ENABLE_ALERTS",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "DINGTALK_WEBHOOK",
    "SLACK_WEBHOOK",
    "WEIXIN_WEBHOOK",
    "ALERT_WEBHOOK_URL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg.paths.caddyfile == "/etc/caddy/Caddyfile"
    assert cfg.alerting.enabled is False
    assert cfg.alerting.channels == []
    assert cfg.backups.keep_count == 5
    # Without an explicit window, duplicates are only suppressed inside one cycle.
    assert cfg.suppression_window() == 0.0


def test_yaml_values_and_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        """
log_level: DEBUG
paths:
  caddyfile: /srv/Caddyfile
monitoring:
  interval_seconds: 60
alerting:
  enabled: false
  suppression_window_seconds: 900
  channels:
    - name: ops-slack
      kind: slack
      url: https://hooks.slack.test/abc
""",
        encoding="utf-8",
    )
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("ENABLE_ALERTS", "true")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
    monkeypatch.setenv("SLACK_WEBHOOK", "https://hooks.slack.test/from-env")

    cfg = load_config(str(path))

    assert cfg.log_level == "WARNING"
    assert cfg.paths.caddyfile == "/srv/Caddyfile"
    assert cfg.alerting.enabled is True
    assert cfg.suppression_window() == 900.0
    kinds = {c.kind: c for c in cfg.alerting.channels}
    assert kinds["telegram"].token == "123:abc" and kinds["telegram"].chat_id == "42"
    # A channel configured in the file wins over the environment.
    assert kinds["slack"].url == "https://hooks.slack.test/abc"
    assert len(cfg.alerting.channels) == 2


def test_config_path_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "other.yaml"
    path.write_text("backups:\n  keep_count: 9\n", encoding="utf-8")
    monkeypatch.setenv("CADDY_MANAGER_CONFIG", str(path))
    assert load_config().backups.keep_count == 9


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))


def test_runtime_settings_skip_disabled_channels(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        """
alerting:
  enabled: true
  channels:
    - {name: a, kind: webhook, url: "http://127.0.0.1:9/a"}
    - {name: b, kind: webhook, url: "http://127.0.0.1:9/b", enabled: false}
  rules:
    - {metric: cpu_pct, comparator: ">", limit: 50, severity: error}
""",
        encoding="utf-8",
    )
    snap = RuntimeSettings.from_config(load_config(str(path))).snapshot()
    assert snap.alerts_enabled is True
    assert [c.name for c in snap.channels] == ["a"]
    assert [(r.metric, r.limit, r.severity) for r in snap.rules] == [("cpu_pct", 50.0, "error")]


@pytest.mark.parametrize(
    "snippet",
    [
        "backups:\n  retention_days: 0\n",
        "alerting:\n  rules:\n    - {metric: cpu_pct, limit: 1, severity: critical}\n",
        "alerting:\n  rules:\n    - {metric: cpu_pct, limit: 1, comparator: '=>'}\n",
        "alerting:\n  channels:\n    - {name: p, kind: pager, url: 'http://127.0.0.1:9/p'}\n",
        "alerting:\n  channels:\n    - {name: h, kind: webhook, url: 'http://127.0.0.1:9/h', format: html}\n",
    ],
)
def test_out_of_range_values_are_rejected_at_load(tmp_path: Path, snippet: str) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(snippet, encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(str(path))
