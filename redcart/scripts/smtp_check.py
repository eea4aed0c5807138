"""
SMTP configuration check.

Verifies that email is enabled, that the server settings are present and
that the server accepts a session. With ``--send-test`` it also sends a
test message.

Usage:
    redcart-smtp-check [--env-file PATH] [--send-test] [--to ADDRESS]
"""
import argparse
import asyncio
import smtplib
import sys
from typing import Optional, Sequence

import structlog

from redcart.config import Settings
from redcart.integrations.email_notifier import EmailNotifier

logger = structlog.get_logger(__name__)

REQUIRED_KEYS = ("smtp_host", "smtp_port", "smtp_from")


def missing_keys(settings: Settings) -> list[str]:
    """Environment variable names of required SMTP settings that are blank."""
    return [key.upper() for key in REQUIRED_KEYS if not str(getattr(settings, key) or "").strip()]


async def run_check(
    settings: Settings,
    notifier: Optional[EmailNotifier] = None,
    send_test: bool = False,
    to: Optional[str] = None,
) -> int:
    """
    Run the check and print a short report.

    Returns:
        int: Process exit code (0 when ready)
    """
    print("[RedCart] SMTP configuration check")

    if not settings.smtp_enabled:
        print("SMTP_ENABLED is false. Set SMTP_ENABLED=true to enable email delivery.", file=sys.stderr)
        return 1

    missing = missing_keys(settings)
    if missing:
        print(f"Missing SMTP config: {', '.join(missing)}", file=sys.stderr)
        return 1

    if not (settings.smtp_user and settings.smtp_pass):
        print("SMTP auth is not configured (SMTP_USER/SMTP_PASS). Continuing without auth.")

    notifier = notifier or EmailNotifier(settings)
    try:
        await notifier.verify_connection()
    except (smtplib.SMTPException, OSError) as e:
        logger.error("smtp_check_failed", error=str(e))
        print(f"SMTP verification failed: {e}", file=sys.stderr)
        return 1
    print("SMTP verification: OK")

    if not send_test:
        return 0

    recipient = (to or settings.smtp_user or "").strip()
    if not recipient:
        print("No test recipient available. Provide --to or set SMTP_USER.", file=sys.stderr)
        return 1

    result = await notifier.send_email(
        kind="smtp_check",
        to=recipient,
        subject="RedCart SMTP Test",
        text="This is a test email from RedCart SMTP check.",
        html="<p>This is a test email from <strong>RedCart SMTP check</strong>.</p>",
    )
    if result.status != "sent":
        print(f"Test email failed: {result.reason}", file=sys.stderr)
        return 1

    print(f"Test email sent to {recipient}. messageId={result.message_id}")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Verify SMTP configuration")
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Environment file to load settings from (default: .env)",
    )
    parser.add_argument("--send-test", action="store_true", help="Also send a test email")
    parser.add_argument("--to", help="Test email recipient (default: SMTP_USER)")
    args = parser.parse_args(argv)

    settings = Settings(_env_file=args.env_file)
    sys.exit(asyncio.run(run_check(settings, send_test=args.send_test, to=args.to)))


if __name__ == "__main__":
    main()
