from pathlib import Path

import pytest

from motor_thermal import cli
from motor_thermal.app import Role


def test_show_config_masks_password(tmp_path: Path, capsys, monkeypatch):
    config_path = tmp_path / "motor-thermal.cfg"
    config_path.write_text("[broker]\nusername = plant\npassword = hunter2\n")
    monkeypatch.delenv("MQTT_URL", raising=False)
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.setenv("MQTT_TOPIC_PREFIX", "lab/motor")

    assert cli.main(["--config", str(config_path), "show-config"]) == 0

    output = capsys.readouterr().out
    assert f"Configuration loaded from {config_path}" in output
    assert "Environment overrides: MQTT_TOPIC_PREFIX" in output
    assert "prefix = lab/motor" in output
    assert "password = ********" in output
    assert "hunter2" not in output


@pytest.mark.parametrize(
    "command, role",
    [("simulate", Role.SIMULATOR), ("relay", Role.RELAY), ("run", Role.ALL)],
)
def test_role_commands_start_app(tmp_path: Path, monkeypatch, command, role):
    started = {}

    def fake_start(config, *, role):
        started["role"] = role
        started["config"] = config

    monkeypatch.setattr(cli.MotorThermalApp, "start", fake_start)
    for name in ("MQTT_URL", "MQTT_TOPIC_PREFIX", "PORT"):
        monkeypatch.delenv(name, raising=False)

    assert cli.main(["-c", str(tmp_path / "none.cfg"), command]) == 0

    assert started["role"] is role
    assert started["config"].relay.port == 3001


def test_missing_command_exits(capsys):
    with pytest.raises(SystemExit):
        cli.main([])
