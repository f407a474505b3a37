"""
Standalone Reaper worker

    python -m chunked_upload.worker            # loop forever
    python -m chunked_upload.worker --once     # single sweep (cron)

Runs independently of the API processes; several can run at once since
every transition it makes is a conditional update.
"""
import argparse
import logging
import signal
import threading

from .core import engine, init_db, settings
from .services import Reaper, SessionStore, create_chunk_store

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Expire and purge chunked upload sessions")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.REAPER_INTERVAL_SECONDS,
        help="Seconds between sweeps"
    )
    args = parser.parse_args(argv)
    
    init_db(engine)
    chunk_store = create_chunk_store(settings.CHUNK_STORE_BACKEND)
    chunk_store.ensure_ready()
    reaper = Reaper(SessionStore(), chunk_store)
    
    if args.once:
        report = reaper.sweep()
        logger.info(f"Sweep done: {report}")
        return
    
    stop_event = threading.Event()
    
    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, stopping reaper")
        stop_event.set()
    
    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    
    reaper.run_forever(args.interval, stop_event)


if __name__ == "__main__":
    main()
