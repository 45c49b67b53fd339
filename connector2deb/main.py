#!/usr/bin/env python3
"""Entry point for connector2deb."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from .builder import (
    DEFAULT_ENCRYPTED_KEY_PATH,
    DEFAULT_GPG_KEY_ID,
    ConnectorPackageBuilder,
    InstallerOptions,
)
from .utils import Connector2DebError, setup_logging


def _env(environ: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = environ.get(name)
    return value if value else default


def build_parser(environ: Optional[Mapping[str, str]] = None) -> argparse.ArgumentParser:
    """Build command-line parser; every option falls back to an environment variable."""
    environ = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(
        prog="connector2deb",
        description="Package a prebuilt Meshblu connector into a (signed) Debian package.",
    )
    parser.add_argument(
        "--connector-path",
        metavar="PATH",
        default=_env(environ, "MESHBLU_CONNECTOR_PATH", "."),
        help="Path to connector package.json and assets (env: MESHBLU_CONNECTOR_PATH)",
    )
    parser.add_argument(
        "--destination-path",
        metavar="PATH",
        default=_env(environ, "MESHBLU_DESTINATION_PATH"),
        help="Path for bin files to be placed in installer (env: MESHBLU_DESTINATION_PATH)",
    )
    parser.add_argument(
        "--encrypted-gpg-key-path",
        metavar="PATH",
        default=_env(environ, "MESHBLU_CONNECTOR_ENCRYPTED_GPG_KEY_PATH", str(DEFAULT_ENCRYPTED_KEY_PATH)),
        help="Path to encrypted gpg key (env: MESHBLU_CONNECTOR_ENCRYPTED_GPG_KEY_PATH)",
    )
    parser.add_argument(
        "--gpg-key-id",
        metavar="KEYID",
        default=_env(environ, "MESHBLU_CONNECTOR_GPG_KEY_ID", DEFAULT_GPG_KEY_ID),
        help="GPG key id or name (env: MESHBLU_CONNECTOR_GPG_KEY_ID)",
    )
    parser.add_argument(
        "--cert-password",
        metavar="PASSWORD",
        default=_env(environ, "MESHBLU_CONNECTOR_CERT_PASSWORD"),
        help="Passphrase unlocking the signing key (env: MESHBLU_CONNECTOR_CERT_PASSWORD)",
    )
    parser.add_argument(
        "--encryption-password",
        metavar="PASSWORD",
        default=_env(environ, "MESHBLU_CONNECTOR_ENCRYPTION_PASSWORD"),
        help="Password to decrypt GPG key (env: MESHBLU_CONNECTOR_ENCRYPTION_PASSWORD)",
    )
    parser.add_argument(
        "--timeout",
        metavar="SECONDS",
        type=float,
        default=_env(environ, "MESHBLU_CONNECTOR_COMMAND_TIMEOUT"),
        help="Kill any external tool running longer than this (env: MESHBLU_CONNECTOR_COMMAND_TIMEOUT)",
    )
    parser.add_argument("--workers", type=int, default=4, help="Parallel template renders (default: 4)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log external commands")
    return parser


def options_from_args(args: argparse.Namespace) -> InstallerOptions:
    """Turn parsed arguments into resolved installer options."""
    return InstallerOptions(
        connector_path=Path(args.connector_path).expanduser().resolve(),
        destination_path=args.destination_path,
        encrypted_gpg_key_path=Path(args.encrypted_gpg_key_path).expanduser(),
        gpg_key_id=args.gpg_key_id,
        cert_password=args.cert_password,
        encryption_password=args.encryption_password,
        command_timeout=float(args.timeout) if args.timeout else None,
        render_workers=max(1, args.workers),
    )


def run_cli(options: InstallerOptions, verbose: bool = False) -> int:
    """Build the package in terminal mode and report the outcome."""
    logger = setup_logging("connector2deb.cli", logging.DEBUG if verbose else logging.INFO)
    builder = ConnectorPackageBuilder(logger)

    try:
        result = builder.build(options, log_callback=lambda line: print(line))
    except Connector2DebError as exc:
        logger.error("Build failed: %s", exc)
        print(f"Error: {exc}")
        return 1

    print(f"Generated package: {result.package_path}")
    if result.signing is not None:
        print(f"Signing: {result.signing.state.value}")
    print("Ship it!")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Program entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)
    return run_cli(options_from_args(args), verbose=args.verbose)


if __name__ == "__main__":
    raise SystemExit(main())
