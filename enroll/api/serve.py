"""
Command-line runner for the enrollment server.

    munki-enroll-server --port 8080 --manifests-path /srv/munki/manifests
"""

import argparse
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import uvicorn

from ..core.config import EnrollConfig, validate_config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Munki enrollment server")
    parser.add_argument(
        "--host",
        metavar="HOST",
        type=str,
        default="127.0.0.1",
        help="Interface to bind",
    )
    parser.add_argument(
        "--port",
        metavar="PORT",
        type=int,
        default=8000,
        help="Port to run the server on",
    )
    parser.add_argument(
        "--manifests-path",
        metavar="DIR",
        type=str,
        default=None,
        help="Directory holding client manifests (overrides MANIFESTS_PATH)",
    )
    parser.add_argument(
        "--audit-log",
        metavar="FILE",
        type=str,
        default=None,
        help="Audit log file (overrides AUDIT_LOG_PATH)",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate configuration and exit",
    )
    return parser


def build_config(args: argparse.Namespace) -> EnrollConfig:
    """Read the environment, then apply command-line overrides."""
    config = EnrollConfig.from_env()
    if args.manifests_path:
        config = replace(config, manifests_path=Path(args.manifests_path))
    if args.audit_log:
        config = replace(config, audit_log_path=Path(args.audit_log))
    return config


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = build_config(args)
    issues = validate_config(config)
    if args.check_config:
        for issue in issues:
            print(f"❌ {issue}")
        if not issues:
            print("✅ Configuration OK")
        return 1 if issues else 0

    from .main import create_app

    uvicorn.run(create_app(config), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
