#!/usr/bin/env python3
"""Run the certificate authority HTTP server."""

import argparse
import sys
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from mr_cert.api.server import create_app
from mr_cert.lib.bootstrap import build_authority, build_storages
from mr_cert.lib.config import ServerConfig
from mr_cert.lib.errors import ExitCode, StartupError
from mr_cert.lib.logging_config import LOGGER, configure_log_level


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Certificate authority server")
    parser.add_argument(
        "--storage-dir",
        type=Path,
        required=True,
        help="Directory holding the root, intermediate, server and client certificates",
    )
    parser.add_argument(
        "--scratch-dir",
        type=Path,
        required=True,
        help="Directory for temporary files while certificates are made",
    )
    parser.add_argument("--port", type=int, required=True, help="Port to listen on")
    parser.add_argument(
        "--host", default="127.0.0.1", help="Address to listen on (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--openssl", default="openssl", help="openssl executable (default: openssl)"
    )
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    parser.add_argument(
        "--keep-scratch",
        action="store_true",
        help="Keep scratch directories after each operation, for debugging",
    )
    parser.add_argument(
        "--tool-timeout",
        type=float,
        default=None,
        help="Seconds before an openssl process is killed (default: no limit)",
    )
    return parser.parse_args(argv)


def build_application(config: ServerConfig) -> FastAPI:
    """Prepare directories and wire storages, openssl and the API together.

    Raises:
        StartupError: If a directory cannot be prepared
    """
    return create_app(build_storages(config), build_authority(config))


def main(argv: list[str] | None = None) -> int:
    """Start the server.

    Returns:
        Exit code (0 for success, the StartupError's code when a directory
        cannot be prepared, 1 for any other failure)
    """
    args = parse_args(argv)
    config = ServerConfig(
        storage_dir=args.storage_dir,
        scratch_dir=args.scratch_dir,
        port=args.port,
        host=args.host,
        openssl_path=args.openssl,
        log_level=args.log_level,
        keep_scratch=args.keep_scratch,
        tool_timeout=args.tool_timeout,
    )

    try:
        configure_log_level(config.log_level)
        app = build_application(config)

        LOGGER.info("Serving on %s:%d", config.host, config.port)
        uvicorn.run(app, host=config.host, port=config.port, log_config=None)
        return ExitCode.NO_ERROR

    except StartupError as e:
        LOGGER.error("Startup failed: %s", e)
        return e.exit_code

    except Exception as e:
        LOGGER.error("Server failed: %s", e)
        return ExitCode.UNCAUGHT_EXCEPTION


if __name__ == "__main__":
    sys.exit(main())
