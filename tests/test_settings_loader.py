import pytest

from vbus2homie.core.settings_loader import BridgeConfig, load_config, load_settings


def test_missing_file_yields_empty_settings(tmp_path):
    assert load_settings(tmp_path / "absent.toml") == {}


def test_toml_file_is_parsed(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[homie]\ndevice_id = "solar"\nrequired_nodes = ["kollektor"]\n')

    config = load_config(load_settings(path), environ={})

    assert config.device_id == "solar"
    assert config.required_nodes == ("kollektor",)
    assert config.stats_interval == 120


def test_defaults_without_any_source():
    assert load_config({}, environ={}) == BridgeConfig()


def test_environment_overrides_toml():
    settings = {
        "mqtt": {"broker_url": "mqtt://toml:1883"},
        "vbus": {"serial_path": "/dev/ttyUSB0", "throttle_window": 5},
        "logging": {"level": "info"},
    }
    environ = {
        "MQTT_BROKER_URL": "mqtts://env:8883",
        "MQTT_USERNAME": "solar",
        "VBUS_SERIAL_PATH": "/dev/ttyACM0",
        "VBUS2HOMIE_LOG_LEVEL": "debug",
    }

    config = load_config(settings, environ=environ)

    assert config.broker_url == "mqtts://env:8883"
    assert config.username == "solar"
    assert config.password is None
    assert config.serial_path == "/dev/ttyACM0"
    assert config.throttle_window == 5.0
    assert config.log_level == "DEBUG"


def test_empty_environment_value_does_not_override():
    config = load_config({"homie": {"base_topic": "devices"}}, environ={"HOMIE_BASE_TOPIC": ""})

    assert config.homie_base_topic == "devices"


def test_invalid_number_is_reported():
    with pytest.raises(ValueError, match="homie.stats_interval"):
        load_config({"homie": {"stats_interval": "often"}}, environ={})


def test_settings_are_found_below_working_directory(tmp_path, monkeypatch):
    (tmp_path / "settings").mkdir()
    (tmp_path / "settings" / "config.toml").write_text('[vbus]\nserial_path = "/dev/ttyUSB1"\n')
    monkeypatch.chdir(tmp_path)

    assert load_config(environ={}).serial_path == "/dev/ttyUSB1"
