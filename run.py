#!/usr/bin/env python3
"""
Shield Agent Startup Script

Starts the Shield Agent FastAPI service: periodic budgeted scan cycles,
the risk-event endpoint and status/history endpoints.

Usage:
    python run.py [--port PORT] [--host HOST] [--env ENV] [--config PATH]

Environment Variables:
    SERVICE_PORT: Port to run the service on (default: 8002)
    DEPLOYMENT_CONFIG_PATH: Deployment JSON file (default: config.json)
    WRITER_RELAY_URL: Signing relay for writes; unset runs in dry-run mode
    LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
"""

import argparse
import os
import sys
from pathlib import Path

import structlog
import uvicorn

from shield_agent.config import settings

logger = structlog.get_logger()

def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Shield Agent - DeFi risk assessment and automated defense"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.SERVICE_PORT,
        help=f"Port to run the service on (default: {settings.SERVICE_PORT})"
    )

    parser.add_argument(
        "--host", "-H",
        type=str,
        default="0.0.0.0",
        help="Host to bind the service to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--env", "-e",
        type=str,
        choices=["development", "production"],
        default=settings.ENV if settings.ENV in ("development", "production") else "development",
        help=f"Environment mode (default: {settings.ENV})"
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=settings.DEPLOYMENT_CONFIG_PATH,
        help=f"Deployment configuration file (default: {settings.DEPLOYMENT_CONFIG_PATH})"
    )

    parser.add_argument(
        "--reload", "-r",
        action="store_true",
        help="Enable auto-reload for development"
    )

    parser.add_argument(
        "--log-level", "-l",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL,
        help=f"Log level (default: {settings.LOG_LEVEL})"
    )

    return parser.parse_args()

def validate_environment(config_path: str) -> bool:
    """Validate environment setup"""
    errors = []

    if not Path(config_path).is_file():
        errors.append(f"Deployment configuration not found: {config_path}")

    mongo_uri = os.getenv("MONGODB_URI")
    if mongo_uri and not mongo_uri.startswith("mongodb"):
        errors.append("Invalid MONGODB_URI format")

    if errors:
        print("Environment validation failed:")
        for error in errors:
            print(f"   - {error}")
        print("\nCopy config.example.json to config.json or pass --config.")
        return False

    if not settings.WRITER_RELAY_URL:
        print("WRITER_RELAY_URL is not set - on-chain writes will be logged only (dry run)")

    return True

def main():
    """Main entry point"""
    args = parse_arguments()

    if not validate_environment(args.config):
        sys.exit(1)

    # Settings are read from the environment by the server process
    os.environ["DEPLOYMENT_CONFIG_PATH"] = args.config
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["ENV"] = args.env

    logger.info("Starting Shield Agent",
               host=args.host,
               port=args.port,
               env=args.env,
               config=args.config)

    try:
        uvicorn.run(
            "shield_agent.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            access_log=True,
            reload=args.reload or args.env == "development"
        )
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")

if __name__ == "__main__":
    main()
