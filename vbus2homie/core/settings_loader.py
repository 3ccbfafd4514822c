import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "settings" / "config.toml"


def find_config_path() -> Path:
    """``settings/config.toml`` below the working directory, else the one of a source checkout."""
    local = Path.cwd() / "settings" / "config.toml"
    return local if local.is_file() else DEFAULT_CONFIG_PATH


def load_settings(path: Path | str | None = None) -> dict:
    """Load service configuration from TOML file."""
    if path is None:
        path = find_config_path()
    try:
        with open(path, "rb") as fh:
            return tomllib.load(fh)
    except FileNotFoundError:
        return {}


@dataclass(frozen=True)
class BridgeConfig:
    """Static process configuration, built once at startup and passed down."""

    broker_url: str = "mqtt://localhost:1883"
    username: str | None = None
    password: str | None = None
    homie_base_topic: str = "homie"
    device_id: str = "vbus"
    device_name: str = "Solar-Info"
    required_nodes: tuple[str, ...] = field(default_factory=tuple)
    stats_interval: int = 120
    serial_path: str = "/dev/virtualcom0"
    serial_baudrate: int = 9600
    decoder: str | None = None
    throttle_window: float = 10.0
    log_level: str = "INFO"
    paho_debug: bool = False


def _number(value, key: str, kind):
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for '{key}': {value!r}") from None


def load_config(
    settings: Mapping | None = None,
    environ: Mapping[str, str] | None = None,
) -> BridgeConfig:
    """Merge TOML *settings* with environment overrides into a :class:`BridgeConfig`.

    Environment variables win over the TOML file. When *environ* is not given the
    process environment is used, after loading ``.env``.
    """
    if settings is None:
        settings = load_settings()
    if environ is None:
        load_dotenv(".env", override=False)
        environ = os.environ

    mqtt_cfg = settings.get("mqtt", {})
    homie_cfg = settings.get("homie", {})
    vbus_cfg = settings.get("vbus", {})
    log_cfg = settings.get("logging", {})
    defaults = BridgeConfig()

    def pick(env_key: str, section: Mapping, key: str, default):
        if environ.get(env_key):
            return environ[env_key]
        return section.get(key, default)

    return BridgeConfig(
        broker_url=pick("MQTT_BROKER_URL", mqtt_cfg, "broker_url", defaults.broker_url),
        username=pick("MQTT_USERNAME", mqtt_cfg, "username", None) or None,
        password=pick("MQTT_PASSWORD", mqtt_cfg, "password", None) or None,
        homie_base_topic=pick("HOMIE_BASE_TOPIC", homie_cfg, "base_topic", defaults.homie_base_topic),
        device_id=homie_cfg.get("device_id", defaults.device_id),
        device_name=homie_cfg.get("device_name", defaults.device_name),
        required_nodes=tuple(homie_cfg.get("required_nodes", ())),
        stats_interval=_number(
            homie_cfg.get("stats_interval", defaults.stats_interval), "homie.stats_interval", int
        ),
        serial_path=pick("VBUS_SERIAL_PATH", vbus_cfg, "serial_path", defaults.serial_path),
        serial_baudrate=_number(
            vbus_cfg.get("baudrate", defaults.serial_baudrate), "vbus.baudrate", int
        ),
        decoder=pick("VBUS_DECODER", vbus_cfg, "decoder", None),
        throttle_window=_number(
            vbus_cfg.get("throttle_window", defaults.throttle_window), "vbus.throttle_window", float
        ),
        log_level=str(pick("VBUS2HOMIE_LOG_LEVEL", log_cfg, "level", defaults.log_level)).upper(),
        paho_debug=bool(log_cfg.get("paho_debug", False)),
    )
