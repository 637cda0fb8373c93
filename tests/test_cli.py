import json

import pytest

from rebalancer import cli


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for key in ("REBALANCER_CONFIG", "REBALANCER_STATE_DIR", "REBALANCER_DRY_RUN", "REBALANCER_DEBUG"):
        monkeypatch.delenv(key, raising=False)


def _write_config(tmp_path, **extra):
    path = tmp_path / "rebalancer.json"
    payload = {"allocation": {"total_capital_usd": 300}, "state_dir": "state"}
    payload.update(extra)
    path.write_text(json.dumps(payload))
    return path


def test_preview_prints_decision(tmp_path, capsys):
    path = _write_config(tmp_path)

    assert cli.main(["--config", str(path), "--debug", "0", "preview"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["best"]["protocol_id"] == "morpho"
    assert payload["executed"] is False
    assert not (tmp_path / "state" / "system_state.json").exists()


def test_tick_persists_state(tmp_path, capsys):
    path = _write_config(tmp_path)

    assert cli.main(["--config", str(path), "--debug", "0", "tick"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["transition"]["status"] == "success"
    state = json.loads((tmp_path / "state" / "system_state.json").read_text())
    assert state["current_protocol_id"] == "morpho"


def test_forced_tick_into_named_protocol(tmp_path, capsys):
    path = _write_config(tmp_path)
    cli.main(["--config", str(path), "--debug", "0", "tick"])
    capsys.readouterr()

    assert cli.main(["--config", str(path), "--debug", "0", "tick", "--force", "aave-v3"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["forced"] is True
    assert payload["transition"]["to_protocol_id"] == "aave-v3"


def test_unknown_forced_protocol_exits_with_error(tmp_path):
    path = _write_config(tmp_path)
    assert cli.main(["--config", str(path), "--debug", "0", "tick", "--force", "euler"]) == 2


def test_dry_run_tick_leaves_no_state(tmp_path, capsys):
    path = _write_config(tmp_path)

    assert cli.main(["--config", str(path), "--debug", "0", "tick", "--dry-run"]) == 0

    assert json.loads(capsys.readouterr().out)["dry_run"] is True
    assert not (tmp_path / "state" / "system_state.json").exists()
