#!/usr/bin/env python3
"""
Prepare storage for the chunked upload service.

Creates the session tables and the chunk store (directory or MinIO bucket).
Run once per deployment before starting API servers and reaper workers;
safe to re-run.

    python init_db.py [--retries N]
"""
import argparse
import sys
import time

from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError

from chunked_upload.core import engine, init_db, settings
from chunked_upload.core.exceptions import StorageError
from chunked_upload.services import create_chunk_store


def wait_for_database(retries: int) -> bool:
    """Poll until the database accepts connections (containers start out of order)."""
    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except OperationalError as e:
            delay = 2 * attempt
            print(f"⏳ Database not reachable ({attempt}/{retries}): {e.__class__.__name__}; retrying in {delay}s")
            if attempt < retries:
                time.sleep(delay)
    return False


def prepare(retries: int) -> bool:
    print(f"🔌 Session store: {engine.url.render_as_string(hide_password=True)}")
    if not wait_for_database(retries):
        print("❌ Session store unreachable, giving up")
        return False

    init_db(engine)
    tables = sorted(inspect(engine).get_table_names())
    print(f"✅ Session tables ready: {', '.join(tables)}")

    try:
        create_chunk_store(settings.CHUNK_STORE_BACKEND).ensure_ready()
    except (StorageError, OSError) as e:
        print(f"❌ Chunk store ({settings.CHUNK_STORE_BACKEND}) not ready: {e}")
        return False
    print(f"✅ Chunk store ready ({settings.CHUNK_STORE_BACKEND})")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create chunked upload tables and chunk storage")
    parser.add_argument("--retries", type=int, default=5, help="Connection attempts before giving up")
    args = parser.parse_args()

    sys.exit(0 if prepare(args.retries) else 1)
