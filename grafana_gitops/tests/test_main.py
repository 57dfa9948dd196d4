import json
import logging
import types
from pathlib import Path


def write_config(tmp_path: Path, body: str) -> Path:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(body, encoding="utf-8")
    return config_path


def test_invalid_configuration_exits_with_status_2(tmp_path: Path, main_module, capsys) -> None:
    config_path = write_config(tmp_path, "grafana: {}\nsimple_sync:\n  sync_path: /srv\n")

    assert main_module.main(["--config", str(config_path), "pull"]) == 2
    assert "grafana.base_url is required" in capsys.readouterr().err


def test_pull_command_runs_one_reconciliation(tmp_path: Path, main_module, bridge, grafana, monkeypatch) -> None:
    sync_path = tmp_path / "files"
    config_path = write_config(
        tmp_path,
        "grafana:\n  base_url: http://grafana.test\nsimple_sync:\n" f"  sync_path: {sync_path}\n",
    )
    grafana.add_dashboard("d1", "Latency", version=2)

    def from_options(options):
        return bridge.context.SyncContext(options=options, client=grafana)

    monkeypatch.setattr(main_module, "SyncContext", types.SimpleNamespace(from_options=from_options))

    assert main_module.main(["--config", str(config_path), "pull"]) == 0
    defs = json.loads((sync_path / "versions-metadata.json").read_text(encoding="utf-8"))
    assert defs["dashboardVersionByUID"] == {"d1": 2}


def test_grafana_failure_exits_with_status_1(tmp_path: Path, main_module, bridge, grafana, monkeypatch, caplog) -> None:
    config_path = write_config(
        tmp_path,
        "grafana:\n  base_url: http://grafana.test\nsimple_sync:\n" f"  sync_path: {tmp_path / 'files'}\n",
    )
    grafana.fail_search = True
    monkeypatch.setattr(
        main_module,
        "SyncContext",
        types.SimpleNamespace(from_options=lambda options: bridge.context.SyncContext(options=options, client=grafana)),
    )

    with caplog.at_level(logging.ERROR):
        assert main_module.main(["--config", str(config_path), "pull"]) == 1
    assert "unavailable" in caplog.text


def test_serve_without_pusher_section_does_nothing(tmp_path: Path, main_module, bridge, grafana, monkeypatch) -> None:
    config_path = write_config(
        tmp_path,
        "grafana:\n  base_url: http://grafana.test\nsimple_sync:\n" f"  sync_path: {tmp_path / 'files'}\n",
    )
    monkeypatch.setattr(
        main_module,
        "SyncContext",
        types.SimpleNamespace(from_options=lambda options: bridge.context.SyncContext(options=options, client=grafana)),
    )

    assert main_module.main(["--config", str(config_path), "serve"]) == 0
    assert grafana.calls == []
