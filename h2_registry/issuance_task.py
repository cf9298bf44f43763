#!/usr/bin/env python
"""
Credit Issuance Task that issues credits for every approved production claim.

Usage:
  python -m h2_registry.issuance_task [--caller 0x...] [--dry_run]

Arguments:
  --caller   Optional issuing account. Defaults to the first issuer, or the
             first administrator if no issuers are configured.
  --dry_run  List the claims that would be issued without issuing them.
"""

import argparse
import sys

from h2_registry.core.authorization import AccessPolicy
from h2_registry.core.database import db, events
from h2_registry.core.errors import InvalidInput
from h2_registry.core.services import normalise_address
from h2_registry.credit import services as credit_services
from h2_registry.logging_config import logger
from h2_registry.settings import settings
from h2_registry.verification import services as verification_services


def default_caller() -> str:
    accounts = sorted(settings.issuer_addresses) or sorted(settings.admin_addresses)
    if not accounts:
        print("Error: no ISSUER_ADDRESSES or ADMIN_ADDRESSES configured")
        sys.exit(1)
    return accounts[0]


def run_issuance(caller: str, dry_run: bool = False) -> int:
    """Issue credits for all approved claims on the ledger's current gate.

    Returns:
        int: The number of claims that could not be issued
    """
    policy = AccessPolicy.from_settings()
    policy.require_issuer(caller)
    esdb_client = events.get_esdb_client()

    with db.get_session("db_write") as write_session, db.get_session(
        "db_read"
    ) as read_session:
        if dry_run:
            state = credit_services.get_ledger_state(read_session)
            claims = verification_services.get_consumable_claims(
                state.verification_gate_id, read_session
            )
            for claim in claims:
                print(f"{claim.claim_id} {claim.producer_address} {claim.amount}")
            logger.info(f"Dry run: {len(claims)} claims ready for issuance")
            return 0

        result = credit_services.issue_credits_for_approved_claims(
            caller, write_session, read_session, esdb_client, policy
        )

    for claim_id, kind in result.failed_claims.items():
        print(f"Not issued: {claim_id} ({kind})")

    return len(result.failed_claims)


def main():
    parser = argparse.ArgumentParser(description="Credit Issuance Task")
    parser.add_argument(
        "--caller",
        help="Issuing account address. Defaults to the first configured issuer.",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="List approved claims without issuing credits.",
    )

    args = parser.parse_args()

    try:
        caller = normalise_address(args.caller) if args.caller else default_caller()
    except InvalidInput as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    failures = run_issuance(caller, dry_run=args.dry_run)
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
