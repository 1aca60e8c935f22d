"""
Issue an administrator bearer token for the admin API.

Marks the account as admin (creating it if needed), registers a
session and prints a signed access token. Use --generate-secret to
bootstrap JWT_SECRET_KEY first.
"""

import argparse
import sys
from datetime import timedelta
from pathlib import Path

from loguru import logger

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.account_guard.models.database import Account, create_tables, get_session  # noqa: E402
from src.account_guard.services.session_service import session_service  # noqa: E402
from src.account_guard.utils.jwt_utils import create_access_token, generate_secret_key  # noqa: E402


def issue_token(subject: str, email: str | None, minutes: int) -> str:
    create_tables()
    with get_session() as session:
        account = session.query(Account).filter(Account.subject == subject).first()
        if account is None:
            account = Account(subject=subject, email=email.lower() if email else None, is_admin=True)
            session.add(account)
            logger.warning(f"Created admin account '{subject}'")
        elif not account.is_admin:
            account.is_admin = True
            logger.warning(f"Granted admin to existing account '{subject}'")
        if account.locked:
            logger.warning(f"Account '{subject}' is locked; the token will be refused until it is unlocked")

        token = create_access_token(subject, expires_delta=timedelta(minutes=minutes))
        session_service.create_session(session, subject, token, user_agent="issue_admin_token")

    return token


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Issue an admin access token")
    parser.add_argument("subject", nargs="?", help="Admin account subject")
    parser.add_argument("--email", help="Email for a newly created admin account")
    parser.add_argument("--minutes", type=int, default=60, help="Token lifetime (default: 60)")
    parser.add_argument(
        "--generate-secret",
        action="store_true",
        help="Print a new JWT_SECRET_KEY value and exit",
    )
    args = parser.parse_args()

    if args.generate_secret:
        print(generate_secret_key())
        sys.exit(0)

    if not args.subject:
        parser.error("subject is required unless --generate-secret is given")

    print(issue_token(args.subject, args.email, args.minutes))
