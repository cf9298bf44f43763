from esdbclient import EventStoreDBClient
from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlmodel import Session

from h2_registry.core.authorization import (
    AccessPolicy,
    get_access_policy,
    get_caller_address,
)
from h2_registry.core.database import db, events
from h2_registry.credit.models import (
    CreditBatchRead,
    CreditRetirementRead,
    LedgerState,
)
from h2_registry.credit.schemas import (
    CreditAllowanceSummary,
    CreditApprove,
    CreditBalanceSummary,
    CreditRetire,
    CreditTransfer,
    CreditTransferFrom,
    CreditTransferReceipt,
    IssuanceRunResult,
    LedgerStats,
    VerificationGateUpdate,
)

from . import services

# Router initialisation
router = APIRouter(tags=["Credits"])


@router.post("/issue/{claim_id}", status_code=201, response_model=CreditBatchRead)
def issue_credits_from_claim(
    claim_id: str,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.issue_credits_from_claim(
        caller, claim_id, write_session, read_session, esdb_client, policy
    )


@router.post("/issue_approved", response_model=IssuanceRunResult)
def issue_credits_for_approved_claims(
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.issue_credits_for_approved_claims(
        caller, write_session, read_session, esdb_client, policy
    )


@router.post("/approve", response_model=CreditAllowanceSummary)
def approve(
    credit_approve: CreditApprove,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
):
    allowance = services.approve(
        caller,
        credit_approve.spender,
        credit_approve.amount,
        write_session,
        read_session,
        esdb_client,
    )
    return CreditAllowanceSummary(
        owner=allowance.owner_address,
        spender=allowance.spender_address,
        amount=allowance.amount,
    )


@router.post("/transfer", response_model=CreditTransferReceipt)
def transfer(
    credit_transfer: CreditTransfer,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
):
    return services.transfer(
        caller,
        credit_transfer.to,
        credit_transfer.amount,
        write_session,
        read_session,
        esdb_client,
    )


@router.post("/transfer_from", response_model=CreditTransferReceipt)
def transfer_from(
    credit_transfer_from: CreditTransferFrom,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
):
    return services.transfer_from(
        caller,
        credit_transfer_from.owner,
        credit_transfer_from.to,
        credit_transfer_from.amount,
        write_session,
        read_session,
        esdb_client,
    )


@router.post("/retire", status_code=201, response_model=CreditRetirementRead)
def retire(
    credit_retire: CreditRetire,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
):
    return services.retire(
        caller,
        credit_retire.amount,
        credit_retire.reason,
        write_session,
        read_session,
        esdb_client,
        batch_ids=credit_retire.batch_ids,
    )


@router.post("/pause", response_model=LedgerState)
def pause(
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.pause(caller, write_session, read_session, esdb_client, policy)


@router.post("/unpause", response_model=LedgerState)
def unpause(
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.unpause(caller, write_session, read_session, esdb_client, policy)


@router.patch("/verification_gate", response_model=LedgerState)
def update_verification_gate(
    gate_update: VerificationGateUpdate,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.update_verification_gate(
        caller, gate_update.gate_id, write_session, read_session, esdb_client, policy
    )


@router.get("/balance/{address}", response_model=CreditBalanceSummary)
def read_balance(address: str, read_session: Session = Depends(db.get_read_session)):
    return services.balance_of(address, read_session)


@router.get("/allowance/{owner}/{spender}", response_model=CreditAllowanceSummary)
def read_allowance(
    owner: str, spender: str, read_session: Session = Depends(db.get_read_session)
):
    return services.allowance(owner, spender, read_session)


@router.get("/stats", response_model=LedgerStats)
def read_contract_stats(read_session: Session = Depends(db.get_read_session)):
    return services.get_contract_stats(read_session)


@router.get("/batches/export")
def export_credit_batches(
    producer_address: str | None = None,
    read_session: Session = Depends(db.get_read_session),
):
    """Download credit batches as CSV."""
    csv_content = services.export_credit_batches_csv(read_session, producer_address)
    return Response(
        content=csv_content,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=credit_batches.csv"},
    )


@router.get("/batches/producer/{address}", response_model=list[CreditBatchRead])
def read_producer_batches(
    address: str, read_session: Session = Depends(db.get_read_session)
):
    return services.get_producer_batches(address, read_session)


@router.get("/batches/{batch_id}", response_model=CreditBatchRead)
def read_credit_batch(batch_id: int, read_session: Session = Depends(db.get_read_session)):
    return services.get_credit_batch(batch_id, read_session)


@router.get("/retirements/{address}", response_model=list[CreditRetirementRead])
def read_retirements(address: str, read_session: Session = Depends(db.get_read_session)):
    return services.get_retirements(address, read_session)
