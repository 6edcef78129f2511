"""
Quiz Bank Service: Main Entry Point
===================================
Starts the Flask quiz bank API.

Usage:
    python main.py                    # Default: 0.0.0.0:5000
    python main.py --port 8000        # Custom port
    python main.py --debug            # Debug mode
"""

import argparse
import logging

from quizbank.config import ServiceConfig, setup_logging
from quizbank.server import create_app

logger = logging.getLogger("quizbank.main")


def main():
    parser = argparse.ArgumentParser(description="Quiz Bank Service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    args = parser.parse_args()

    config = ServiceConfig.from_env()
    setup_logging(config.log_level, config.log_file)

    # create_app() connects MongoDB, ensures indexes, starts the worker
    logger.info("Creating Flask app (connects database + asset store)...")
    app = create_app(config)

    logger.info(f"Database: {config.mongodb_db} @ {config.mongodb_uri.split('@')[-1]}")
    logger.info(f"Starting server on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
