import sys

from vbus2homie.core.logger_setup import configure_logger
from vbus2homie.core.settings_loader import load_config
from vbus2homie.core.signal_manager import SignalManager
from vbus2homie.vbus.bus_transport import SerialBusConnection, load_specification
from vbus2homie.vbus.vbus_reader import VbusReader


def main() -> int:
    config = load_config()
    logger = configure_logger(level=config.log_level)

    if not config.decoder:
        logger.error("No VBus decoder configured (vbus.decoder / VBUS_DECODER)")
        return 1
    try:
        specification = load_specification(config.decoder)
    except (ImportError, AttributeError, TypeError, ValueError) as exc:
        logger.error(f"Could not load decoder {config.decoder}: {exc}")
        return 1

    connection = SerialBusConnection(config.serial_path, config.serial_baudrate, logger=logger)
    reader = VbusReader(connection, specification, config, logger=logger)

    signals = SignalManager(reader.stop, logger)
    signals.install()

    logger.info(f"vbus2homie started: port={config.serial_path} broker={config.broker_url}")
    reader.start()
    try:
        signals.wait()
    except KeyboardInterrupt:
        logger.info("Ctrl+C received")
        reader.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
