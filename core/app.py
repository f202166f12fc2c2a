import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from core.config import ConfigManager
from core.runtime import LiveAlertsRuntime
from shared.logging.logger import get_logger, set_debug_mode

log = get_logger("core.app")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="livealerts",
        description="Live-stream alerts, chat routing and viewer counts",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the JSON config (default: $LIVEALERTS_CONFIG or shared/config/livealerts.json)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose console logging",
    )
    return parser.parse_args(argv)


async def main(stop_event: asyncio.Event, args: argparse.Namespace):
    # --------------------------------------------------
    # ENV
    # --------------------------------------------------
    load_dotenv()
    log.info("Environment variables loaded")

    # --------------------------------------------------
    # CONFIG
    # --------------------------------------------------
    config = ConfigManager.load(args.config)
    set_debug_mode(args.debug or config.is_debug_enabled())
    log.info("LiveAlerts booting")

    # --------------------------------------------------
    # RUNTIME
    # --------------------------------------------------
    runtime = LiveAlertsRuntime(config)

    try:
        await runtime.start()
    except Exception as e:
        log.error(f"Runtime failed to start: {e}")
        stop_event.set()

    # --------------------------------------------------
    # BLOCK UNTIL SHUTDOWN SIGNAL
    # --------------------------------------------------
    await stop_event.wait()

    # --------------------------------------------------
    # ORDERLY SHUTDOWN
    # --------------------------------------------------
    try:
        await runtime.shutdown()
    except Exception as e:
        log.warning(f"Runtime shutdown error ignored: {e}")

    log.info("LiveAlerts stopped")


# ----------------------------------------------------------------------
# SIGNAL HANDLING (WINDOWS-SAFE)
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    """
    Uses signal.signal + asyncio.Event to unwind cleanly; works on
    Windows where loop.add_signal_handler is unavailable.
    """

    def _handler(signum, frame):
        log.info(f"Signal {signum} received; shutdown initiated")
        loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except (ValueError, OSError) as e:
            log.debug(f"Signal handler for {sig} not installed: {e}")


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run(argv: Optional[List[str]] = None):
    args = parse_args(argv)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    stop_event = asyncio.Event()

    _install_signal_handlers(loop, stop_event)

    try:
        loop.run_until_complete(main(stop_event, args))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutdown initiated")

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS (CLEANLY)
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(
                asyncio.gather(*pending, return_exceptions=True)
            )

        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()


if __name__ == "__main__":
    run()
    sys.exit(0)
