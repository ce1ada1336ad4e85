#!/usr/bin/env python3
"""
Run the consumer — long-poll the broker, process questions serially and
post answers back.

Usage:
    python scripts/run_consumer.py                                  # settings.yaml
    python scripts/run_consumer.py --broker-url http://127.0.0.1:7080
    python scripts/run_consumer.py --config /etc/longpoll.yaml --token abc123
"""
import argparse
import asyncio
import os
import signal
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run(args: argparse.Namespace):
    import structlog
    from config.settings import load_settings
    from consumer.pipeline import ConsumerPipeline

    logger = structlog.get_logger()

    settings = load_settings(args.config)
    if args.broker_url:
        settings.consumer.broker_url = args.broker_url
    if args.token:
        settings.consumer.auth_token = args.token
    if args.processor:
        settings.consumer.processor = args.processor

    pipeline = ConsumerPipeline.from_settings(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    await pipeline.start()
    try:
        await stop.wait()
    finally:
        logger.info("consumer_shutdown_requested")
        await pipeline.stop()


def main():
    parser = argparse.ArgumentParser(description="Long-poll question consumer")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    parser.add_argument("--broker-url", default="", help="Override consumer.broker_url")
    parser.add_argument("--token", default="", help="Bearer token passed to the broker")
    parser.add_argument("--processor", default="", help="Processor name (default from settings)")
    args = parser.parse_args()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
