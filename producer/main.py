#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import signal
import sys

from app_config.config_loader import Config, ConfigurationError, resolve_config_path
from common.log_sink import configure_logging
from producer.producer import RequestProducer


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Subscription request producer")
    p.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to an optional config.ini (defaults to CONFIG_PATH / CFG / ./config.ini)",
    )
    p.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Overrides LOG_LEVEL",
    )
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        cfg = Config("producer", ini_path=args.config or resolve_config_path())
    except ConfigurationError as e:
        print(f"[producer] invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    configure_logging(cfg.logging.file, args.log_level or cfg.logging.level)
    log = logging.getLogger("producer-main")
    log.info(
        "Broker nodes: %s", ", ".join(str(node) for node in cfg.broker.nodes)
    )

    signal.signal(signal.SIGINT, lambda *_: sys.exit(0))
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    RequestProducer(cfg).run()


if __name__ == "__main__":
    main()
