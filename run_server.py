"""Uvicorn entry point for the Dirtree API.

Usage:
    python run_server.py --port 8000 --db /var/lib/dirtree/dirtree.sqlite3
"""

import argparse
import os


def main() -> None:
    parser = argparse.ArgumentParser(description="Dirtree API server")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--db", type=str, default=None, help="SQLite file (default: in-memory store)")
    parser.add_argument("--log-level", type=str, default="info")
    args = parser.parse_args()

    if args.db:
        os.environ["DIRTREE_DB_PATH"] = args.db

    import uvicorn
    from app.main import app

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
