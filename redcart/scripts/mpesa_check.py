"""
M-Pesa configuration check.

Verifies that STK push is enabled, that every required Daraja setting is
present, and that an OAuth token can be fetched.

Usage:
    redcart-mpesa-check [--env-file PATH]
"""
import argparse
import asyncio
import sys
from typing import Optional, Sequence

import structlog

from redcart.config import Settings
from redcart.core.errors import AppError
from redcart.integrations.mpesa_client import MpesaClient

logger = structlog.get_logger(__name__)

REQUIRED_KEYS = (
    "mpesa_consumer_key",
    "mpesa_consumer_secret",
    "mpesa_shortcode",
    "mpesa_passkey",
    "mpesa_callback_base_url",
)


def missing_keys(settings: Settings) -> list[str]:
    """Environment variable names of required settings that are blank."""
    return [
        key.upper()
        for key in REQUIRED_KEYS
        if not (getattr(settings, key) or "").strip()
    ]


async def run_check(settings: Settings, client: Optional[MpesaClient] = None) -> int:
    """
    Run the check and print a short report.

    Returns:
        int: Process exit code (0 when ready)
    """
    print("[RedCart] M-Pesa configuration check")

    if not settings.mpesa_enabled:
        print("MPESA_ENABLED is false. Set MPESA_ENABLED=true to enable real STK push.", file=sys.stderr)
        return 1

    missing = missing_keys(settings)
    if missing:
        print(f"Missing required keys: {', '.join(missing)}", file=sys.stderr)
        return 1

    client = client or MpesaClient(settings)
    try:
        result = await client.verify_connection()
    except AppError as e:
        logger.error("mpesa_check_failed", error=e.message)
        print(f"M-Pesa connectivity check failed: {e.message}", file=sys.stderr)
        return 1

    print(f"Mode: {result['mode']}")
    print(f"Base URL: {result['base_url']}")
    print("OAuth access token: OK")
    print("M-Pesa setup is ready for STK push tests.")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Verify M-Pesa Daraja configuration")
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Environment file to load settings from (default: .env)",
    )
    args = parser.parse_args(argv)

    settings = Settings(_env_file=args.env_file)
    sys.exit(asyncio.run(run_check(settings)))


if __name__ == "__main__":
    main()
