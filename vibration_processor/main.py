"""
Vibration Processor Main Entry Point
"""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .consumer.kafka_consumer import InMemoryBroker
from .exceptions import ConfigurationError
from .pipeline import StreamProcessor
from .utils.config_loader import DEFAULT_CONFIG_PATH, ConfigLoader, topic_names


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Setup logging configuration"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def load_input_file(broker: InMemoryBroker, topic: str, path: str) -> int:
    """Feed JSON lines into the mock broker's input topic"""
    count = 0
    with open(path, "rb") as f:
        for line in f:
            line = line.strip()
            if line:
                broker.append(topic, None, line)
                count += 1
    return count


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Real-time vibration telemetry preprocessing"
    )

    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use mock components (no Kafka/Redis)",
    )

    parser.add_argument(
        "--input-file",
        type=str,
        default=None,
        help="JSON lines replayed through the mock broker (implies --mock)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write logs to this file",
    )

    args = parser.parse_args()
    mock_mode = args.mock or args.input_file is not None

    # Setup logging
    setup_logging(args.log_level, args.log_file)

    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info("Vibration Processor Starting")
    logger.info("=" * 60)
    logger.info(f"Config file: {args.config}")
    logger.info(f"Mock mode: {mock_mode}")
    logger.info(f"Log level: {args.log_level}")
    logger.info("=" * 60)

    # Check config file exists
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {args.config}")
        sys.exit(1)

    try:
        config = ConfigLoader(str(config_path.parent)).load_yaml(str(config_path))

        broker = None
        if mock_mode:
            broker = InMemoryBroker(
                partitions=int(config.get("kafka", {}).get("mock_partitions", 1))
            )
            if args.input_file:
                count = load_input_file(
                    broker, topic_names(config)["input"], args.input_file
                )
                logger.info(f"Loaded {count} messages from {args.input_file}")

        # Initialize processor
        processor = StreamProcessor(config, mock_mode=mock_mode, broker=broker)

        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down gracefully...")
            processor.stop()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        # Start processing; a replayed file ends the run once drained
        processor.start(stop_when_idle=args.input_file is not None)

    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
