from __future__ import annotations

import argparse
import json
import logging
import signal
import threading

from dotenv import load_dotenv

from .config import load_config
from .dispatcher import ChannelResult
from .service import ReminderService

STATE_PATH_DEFAULT = "/var/lib/calremind/state.json"
CONFIG_PATH_DEFAULT = "/etc/calremind/config.yaml"

logger = logging.getLogger("calremind")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def run_forever(service: ReminderService) -> None:
    stop = threading.Event()

    def handle_stop(signum, frame):
        logger.info(f"Received signal {signum}")
        stop.set()

    def handle_reload(signum, frame):
        logger.info("Reloading email gateway credentials")
        service.reinitialize()

    signal.signal(signal.SIGINT, handle_stop)
    signal.signal(signal.SIGTERM, handle_stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, handle_reload)

    service.start()
    try:
        stop.wait()
    finally:
        service.stop()


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Calendar reminder scheduler and notification dispatcher")
    ap.add_argument("--config", default=CONFIG_PATH_DEFAULT)
    ap.add_argument("--state", default=STATE_PATH_DEFAULT)
    ap.add_argument("--verbose", action="store_true")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="poll for due reminders until interrupted")
    sub.add_parser("tick", help="run a single poll cycle")
    sub.add_parser("status")

    key = sub.add_parser("set-api-key", help="store the email gateway API key")
    key.add_argument("api_key")

    test_email = sub.add_parser("test-email", help="send a test message through the dispatcher")
    test_email.add_argument("--to")

    sub.add_parser("test-notification", help="show a test desktop notification")

    args = ap.parse_args(argv)

    load_dotenv()
    _setup_logging(args.verbose)
    cfg = load_config(args.config)
    service = ReminderService(cfg, args.state)

    if args.command == "run":
        run_forever(service)
        return

    if args.command == "tick":
        report = service.run_once()
        print(json.dumps({"now": report.now.isoformat(), "events": report.events, "results": report.counts}, indent=2))
        return

    if args.command == "status":
        print(json.dumps(service.status(), indent=2))
        return

    if args.command == "set-api-key":
        service.set_api_key(args.api_key)
        print(json.dumps({"ok": True, "email_configured": service.dispatcher.email.configured}, indent=2))
        return

    if args.command == "test-email":
        outcome = service.send_test_email(args.to)
        print(
            json.dumps(
                {
                    "delivered": outcome.delivered,
                    "channel": outcome.channel,
                    "attempts": [[name, result.value] for name, result in outcome.attempts],
                },
                indent=2,
            )
        )
        return

    if args.command == "test-notification":
        result = service.send_test_notification()
        if result is ChannelResult.UNAVAILABLE:
            print("Please enable notifications first!")
        print(json.dumps({"result": result.value}, indent=2))
        return


if __name__ == "__main__":
    main()
