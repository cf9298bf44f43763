from functools import lru_cache

from fastapi import Header, HTTPException, status
from sqlmodel import Session, select

from h2_registry.core.errors import InvalidInput, NotAuthorized
from h2_registry.core.services import normalise_address
from h2_registry.logging_config import logger
from h2_registry.settings import settings
from h2_registry.verification.models import Verifier


class AccessPolicy:
    """Role checks applied at every ledger entry point.

    The policy is injected into the services rather than inherited, so each
    operation states which role it requires at its call site:

    - admins: registry operators (producer admission, KYC, verifiers, pause)
    - issuers: automated callers allowed to issue credits from approved claims
    - the credit ledger: the only caller allowed to consume a claim
    - the marketplace: the spender that settles purchases on a seller's behalf
    - verifiers: looked up on the allowlist of the claim's verification gate
    """

    def __init__(
        self,
        admin_addresses: set[str],
        credit_ledger_address: str,
        marketplace_address: str,
        issuer_addresses: set[str] | None = None,
    ):
        self.admin_addresses = {normalise_address(a) for a in admin_addresses}
        self.issuer_addresses = {normalise_address(a) for a in issuer_addresses or set()}
        self.credit_ledger_address = normalise_address(credit_ledger_address)
        self.marketplace_address = normalise_address(marketplace_address)

    @classmethod
    def from_settings(cls) -> "AccessPolicy":
        return cls(
            admin_addresses=settings.admin_addresses,
            issuer_addresses=settings.issuer_addresses,
            credit_ledger_address=settings.CREDIT_LEDGER_ADDRESS,
            marketplace_address=settings.MARKETPLACE_ADDRESS,
        )

    def is_admin(self, caller: str) -> bool:
        return caller.lower() in self.admin_addresses

    def require_admin(self, caller: str, action: str) -> None:
        if not self.is_admin(caller):
            err_msg = f"Caller {caller} is not an administrator and cannot {action}"
            logger.error(err_msg)
            raise NotAuthorized(err_msg, caller=caller, action=action)

    def require_issuer(self, caller: str) -> None:
        if not (self.is_admin(caller) or caller.lower() in self.issuer_addresses):
            err_msg = f"Caller {caller} is not allowed to issue credits"
            logger.error(err_msg)
            raise NotAuthorized(err_msg, caller=caller, action="issue credits")

    def require_credit_ledger(self, caller: str) -> None:
        if caller.lower() != self.credit_ledger_address:
            err_msg = f"Only the credit ledger can consume claims, not {caller}"
            logger.error(err_msg)
            raise NotAuthorized(err_msg, caller=caller, action="consume claim")

    def require_account_holder(self, caller: str, account: str, action: str) -> None:
        """The caller must be the account itself, or an administrator acting
        on its behalf."""
        if caller.lower() != account.lower() and not self.is_admin(caller):
            err_msg = f"Caller {caller} cannot {action} for account {account}"
            logger.error(err_msg)
            raise NotAuthorized(err_msg, caller=caller, action=action)

    def require_verifier(self, caller: str, gate_id: int, session: Session) -> Verifier:
        verifier = session.exec(
            select(Verifier).where(
                Verifier.gate_id == gate_id,
                Verifier.address == caller.lower(),
                Verifier.is_active == True,  # noqa: E712
            )
        ).first()
        if verifier is None:
            err_msg = f"Caller {caller} is not an active verifier on gate {gate_id}"
            logger.error(err_msg)
            raise NotAuthorized(err_msg, caller=caller, action="verify claims")
        return verifier


@lru_cache(maxsize=1)
def get_access_policy() -> AccessPolicy:
    """FastAPI dependency returning the policy configured from settings."""
    return AccessPolicy.from_settings()


def get_caller_address(x_account_address: str = Header(...)) -> str:
    """FastAPI dependency resolving the calling account.

    The address is asserted by the upstream gateway that authenticated the
    request; this service only checks that it is well formed.
    """
    try:
        return normalise_address(x_account_address, field="X-Account-Address")
    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)
