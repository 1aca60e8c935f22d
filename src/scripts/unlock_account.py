import argparse
import os
import sys

# Add project root to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from loguru import logger  # noqa: E402

from src.account_guard.errors import ResolutionError  # noqa: E402
from src.account_guard.models.database import get_session  # noqa: E402
from src.api.dependencies import close_identity_provider, get_lock_manager  # noqa: E402


def unlock_account(subject: str, actor: str) -> bool:
    logger.info(f"Unlocking '{subject}' as '{actor}'...")
    with get_session() as session:
        changed = get_lock_manager().admin_unlock(session, subject, actor=actor)
    logger.info("Account unlocked." if changed else "Account was not locked.")
    return changed


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Unlock an account locally and at the identity provider")
    parser.add_argument("subject", help="Account subject")
    parser.add_argument("--actor", default="cli", help="Recorded as the unlocking administrator")
    args = parser.parse_args()

    try:
        unlock_account(args.subject, args.actor)
    except ResolutionError as exc:
        logger.error(str(exc))
        sys.exit(1)
    finally:
        close_identity_provider()
