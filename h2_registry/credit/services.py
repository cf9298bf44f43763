import datetime

import pandas as pd
from esdbclient import EventStoreDBClient
from sqlmodel import Session, col, select

from h2_registry.core.authorization import AccessPolicy
from h2_registry.core.database.cqrs import ChangeSet, commit_changes
from h2_registry.core.errors import (
    AlreadyInState,
    EmptyReason,
    InsufficientAllowance,
    InsufficientBalance,
    InvalidAmount,
    InvalidInput,
    LedgerError,
    Paused,
    ProducerInactive,
    ProducerNotVerified,
    UnknownClaim,
    UnknownEntity,
)
from h2_registry.core.models.base import utc_datetime_now
from h2_registry.core.services import normalise_address
from h2_registry.credit.models import (
    LEDGER_STATE_ID,
    CreditAllowance,
    CreditBalance,
    CreditBatch,
    CreditRetirement,
    LedgerState,
)
from h2_registry.credit.schemas import (
    CreditAllowanceSummary,
    CreditBalanceSummary,
    CreditTransferReceipt,
    IssuanceRunResult,
    LedgerStats,
)
from h2_registry.logging_config import logger
from h2_registry.producer import services as producer_services
from h2_registry.settings import settings
from h2_registry.verification import services as verification_services
from h2_registry.verification.models import ProductionClaim

TOKEN_NAME = "Green Hydrogen Credit"
TOKEN_SYMBOL = "GHC"
ZERO_ADDRESS = "0x" + "0" * 40
MAX_RETIREMENT_REASON_LENGTH = 500


class BalanceBook:
    """The balances touched by a single ledger operation.

    Rows are read with a lock the first time an address is touched, and every
    adjustment is recorded on the operation's ChangeSet as the new absolute
    value, so several adjustments to one account (e.g. a self transfer)
    collapse into a single update.
    """

    def __init__(self, db_session: Session, change_set: ChangeSet):
        self._session = db_session
        self._change_set = change_set
        self._rows: dict[str, CreditBalance | None] = {}
        self._pending: dict[str, tuple[int, int]] = {}
        self._new: set[str] = set()

    def _row(self, address: str) -> CreditBalance | None:
        if address not in self._rows:
            self._rows[address] = CreditBalance.by_address(
                address, self._session, for_update=True
            )
        return self._rows[address]

    def _current(self, address: str) -> tuple[int, int]:
        if address in self._pending:
            return self._pending[address]
        row = self._row(address)
        if row is None:
            return 0, 0
        return row.balance, row.retired_total

    def balance_of(self, address: str) -> int:
        return self._current(address)[0]

    def adjust(self, address: str, balance_delta: int = 0, retired_delta: int = 0) -> None:
        balance, retired_total = self._current(address)
        new_balance = balance + balance_delta
        new_retired_total = retired_total + retired_delta

        if new_balance < 0:
            err_msg = f"Insufficient balance for {address}: {balance} < {-balance_delta}"
            logger.error(err_msg)
            raise InsufficientBalance(
                err_msg, address=address, balance=balance, required=-balance_delta
            )

        self._pending[address] = (new_balance, new_retired_total)

        row = self._row(address)
        if row is None:
            row = CreditBalance(
                address=address, balance=new_balance, retired_total=new_retired_total
            )
            self._change_set.create(row)
            self._rows[address] = row
            self._new.add(address)
        elif address in self._new:
            row.balance = new_balance
            row.retired_total = new_retired_total
        else:
            self._change_set.update(
                row, {"balance": new_balance, "retired_total": new_retired_total}
            )


def initialise_ledger(
    verification_gate_id: int | None,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
) -> LedgerState:
    """Create the ledger state row if it does not yet exist."""
    state = write_session.get(LedgerState, LEDGER_STATE_ID)
    if state is not None:
        return state

    change_set = ChangeSet()
    change_set.create(
        LedgerState(id=LEDGER_STATE_ID, verification_gate_id=verification_gate_id)
    )
    logger.info(f"Initialised credit ledger on verification gate {verification_gate_id}")

    return commit_changes(change_set, write_session, read_session, esdb_client)[0]  # type: ignore


def get_ledger_state(db_session: Session, for_update: bool = False) -> LedgerState:
    try:
        return LedgerState.by_id(LEDGER_STATE_ID, db_session, for_update)
    except UnknownEntity:
        raise UnknownEntity("The credit ledger has not been initialised")


def _require_not_paused(state: LedgerState, action: str) -> None:
    if state.is_paused:
        err_msg = f"Cannot {action}: the credit ledger is paused"
        logger.error(err_msg)
        raise Paused(err_msg, action=action)


def _require_positive_amount(amount: int) -> None:
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}", field="amount")


def _normalise_recipient(to: str) -> str:
    """The zero address marks mints and burns in Transfer events and cannot
    receive credits."""
    recipient = normalise_address(to, field="to")
    if recipient == ZERO_ADDRESS:
        err_msg = "Cannot transfer credits to the zero address"
        logger.error(err_msg)
        raise InvalidInput(err_msg, field="to")
    return recipient


def issue_credits_from_claim(
    caller: str,
    claim_id: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
    now: datetime.datetime | None = None,
) -> CreditBatch:
    """Mint credits to a producer against an approved production claim.

    The claim must be approved and unconsumed on the ledger's current
    verification gate, and its producer must be active, verified and within
    its monthly production limit. All of these are checked before anything is
    written. The claim is then consumed, a credit batch recorded, the credits
    minted and the producer's counters updated in a single commit, so a claim
    can fund at most one batch.

    Args:
        caller (str): An administrator or an authorised issuer
        claim_id (str): The approved production claim
        write_session (Session): The database write session
        read_session (Session): The database read session
        esdb_client (EventStoreDBClient): The EventStoreDB client
        policy (AccessPolicy): The access policy
        now (datetime.datetime | None): The issuance time, defaults to now

    Raises:
        UnknownClaim: If the claim is not recorded on the current gate.
        NotConsumable: If the claim is not approved or was already consumed.
        ProducerInactive: If the producer has been deactivated.
        ProducerNotVerified: If the producer has not passed KYC.
        MonthlyLimitExceeded: If the issuance would exceed the monthly limit.
        Paused: If the ledger is paused.

    Returns:
        CreditBatch: The batch recording the issuance
    """
    policy.require_issuer(caller)
    now = now or utc_datetime_now()

    state = get_ledger_state(write_session, for_update=True)
    _require_not_paused(state, "issue credits")

    claim = ProductionClaim.by_claim_id(claim_id, write_session, for_update=True)
    if claim is None or claim.gate_id != state.verification_gate_id:
        err_msg = f"Claim {claim_id} is not recorded on the current verification gate"
        logger.error(err_msg)
        raise UnknownClaim(err_msg, claim_id=claim_id)

    # Only the ledger itself consumes claims
    claim_update = verification_services.prepare_consumption(
        policy.credit_ledger_address, claim, policy, now
    )

    producer = producer_services.get_producer(
        claim.producer_address, write_session, for_update=True
    )
    if not producer.is_active:
        err_msg = f"Producer {producer.address} is not active"
        logger.error(err_msg)
        raise ProducerInactive(err_msg, address=producer.address)
    if not producer.is_verified:
        err_msg = f"Producer {producer.address} has not been verified"
        logger.error(err_msg)
        raise ProducerNotVerified(err_msg, address=producer.address)

    producer_update = producer_services.check_and_reset_monthly_cap(
        producer, claim.amount, now
    )

    change_set = ChangeSet()
    change_set.update(claim, claim_update)

    batch = CreditBatch(
        producer_address=producer.address,
        amount=claim.amount,
        claim_id=claim.claim_id,
        plant_id=claim.plant_id,
        renewable_source=producer.renewable_source,
        production_timestamp=claim.production_timestamp,
        evidence_ref=claim.evidence_ref,
        issued_at=now,
    )
    change_set.create(batch)

    BalanceBook(write_session, change_set).adjust(producer.address, claim.amount)
    change_set.update(producer, producer_update)
    change_set.update(
        state,
        {
            "total_supply": state.total_supply + claim.amount,
            "total_minted": state.total_minted + claim.amount,
            "total_batches": state.total_batches + 1,
        },
    )

    change_set.emit(
        "Transfer", {"from": ZERO_ADDRESS, "to": producer.address, "amount": claim.amount}
    )
    change_set.emit(
        "CreditIssued",
        lambda: {
            "batch_id": batch.id,
            "producer": producer.address,
            "amount": batch.amount,
            "plant_id": batch.plant_id,
            "timestamp": now,
            "source": batch.renewable_source.value,
            "claim_id": batch.claim_id,
        },
    )

    db_batch = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(
        f"Issued {claim.amount} credits to {producer.address} from claim {claim.claim_id}"
    )

    return db_batch  # type: ignore


def issue_credits_for_approved_claims(
    caller: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
    now: datetime.datetime | None = None,
) -> IssuanceRunResult:
    """Issue credits for every approved, unconsumed claim on the current gate.

    Each claim is issued in its own commit. A claim that cannot be issued, for
    example because its producer has reached its monthly limit, is reported
    in the result and left approved for a later run.

    Raises:
        NotAuthorized: If the caller is neither an issuer nor an administrator.
    """
    policy.require_issuer(caller)

    state = get_ledger_state(write_session)
    claims = verification_services.get_consumable_claims(
        state.verification_gate_id, write_session
    )
    claim_ids = [claim.claim_id for claim in claims]

    issued_claim_ids: list[str] = []
    failed_claims: dict[str, str] = {}

    for claim_id in claim_ids:
        try:
            issue_credits_from_claim(
                caller, claim_id, write_session, read_session, esdb_client, policy, now
            )
            issued_claim_ids.append(claim_id)
        except LedgerError as e:
            logger.warning(f"Could not issue credits for claim {claim_id}: {e.kind}: {e.message}")
            write_session.rollback()
            failed_claims[claim_id] = e.kind

    logger.info(
        f"Issuance run complete: {len(issued_claim_ids)} issued, {len(failed_claims)} failed"
    )

    return IssuanceRunResult(issued_claim_ids=issued_claim_ids, failed_claims=failed_claims)


def approve(
    caller: str,
    spender: str,
    amount: int,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
) -> CreditAllowance:
    """Set the amount `spender` may move out of the caller's balance."""
    owner = normalise_address(caller, field="owner")
    spender = normalise_address(spender, field="spender")
    if amount < 0:
        raise InvalidAmount(f"Allowance cannot be negative, got {amount}", field="amount")

    allowance = CreditAllowance.by_pair(owner, spender, write_session, for_update=True)

    change_set = ChangeSet()
    if allowance is None:
        change_set.create(
            CreditAllowance(owner_address=owner, spender_address=spender, amount=amount)
        )
    else:
        change_set.update(allowance, {"amount": amount})
    change_set.emit("Approval", {"owner": owner, "spender": spender, "amount": amount})

    db_allowance = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"{owner} approved {spender} for {amount} credits")

    return db_allowance  # type: ignore


def _build_balance_transfer(
    book: BalanceBook,
    change_set: ChangeSet,
    sender: str,
    recipient: str,
    amount: int,
    now: datetime.datetime,
) -> CreditTransferReceipt:
    balance = book.balance_of(sender)
    if balance < amount:
        err_msg = f"Insufficient balance for {sender}: {balance} < {amount}"
        logger.error(err_msg)
        raise InsufficientBalance(err_msg, address=sender, balance=balance, required=amount)

    book.adjust(sender, -amount)
    book.adjust(recipient, amount)

    change_set.emit("Transfer", {"from": sender, "to": recipient, "amount": amount})
    change_set.emit(
        "CreditTransferred",
        {"from": sender, "to": recipient, "amount": amount, "timestamp": now},
    )

    return CreditTransferReceipt(
        sender=sender, recipient=recipient, amount=amount, timestamp=now
    )


def transfer(
    caller: str,
    to: str,
    amount: int,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    now: datetime.datetime | None = None,
) -> CreditTransferReceipt:
    sender = normalise_address(caller, field="from")
    recipient = _normalise_recipient(to)
    _require_positive_amount(amount)

    state = get_ledger_state(write_session, for_update=True)
    _require_not_paused(state, "transfer credits")

    change_set = ChangeSet()
    receipt = _build_balance_transfer(
        BalanceBook(write_session, change_set),
        change_set,
        sender,
        recipient,
        amount,
        now or utc_datetime_now(),
    )

    commit_changes(change_set, write_session, read_session, esdb_client)
    logger.info(f"Transferred {amount} credits from {sender} to {recipient}")

    return receipt


def build_transfer_from(
    spender: str,
    owner: str,
    to: str,
    amount: int,
    write_session: Session,
    change_set: ChangeSet,
    now: datetime.datetime,
) -> CreditTransferReceipt:
    """Add a delegated transfer to `change_set` without committing it.

    The spender's allowance is checked before the owner's balance, and is
    reduced by the amount moved.

    Raises:
        Paused: If the ledger is paused.
        InsufficientAllowance: If the spender's allowance is below `amount`.
        InsufficientBalance: If the owner's balance is below `amount`.
    """
    spender = normalise_address(spender, field="spender")
    owner = normalise_address(owner, field="from")
    recipient = _normalise_recipient(to)
    _require_positive_amount(amount)

    state = get_ledger_state(write_session, for_update=True)
    _require_not_paused(state, "transfer credits")

    allowance = CreditAllowance.by_pair(owner, spender, write_session, for_update=True)
    allowed = allowance.amount if allowance is not None else 0
    if allowance is None or allowed < amount:
        err_msg = f"Insufficient allowance for {spender} on {owner}: {allowed} < {amount}"
        logger.error(err_msg)
        raise InsufficientAllowance(
            err_msg, owner=owner, spender=spender, allowance=allowed, required=amount
        )

    receipt = _build_balance_transfer(
        BalanceBook(write_session, change_set), change_set, owner, recipient, amount, now
    )
    change_set.update(allowance, {"amount": allowed - amount})

    return receipt


def transfer_from(
    caller: str,
    owner: str,
    to: str,
    amount: int,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    now: datetime.datetime | None = None,
) -> CreditTransferReceipt:
    change_set = ChangeSet()
    receipt = build_transfer_from(
        caller, owner, to, amount, write_session, change_set, now or utc_datetime_now()
    )

    commit_changes(change_set, write_session, read_session, esdb_client)
    logger.info(f"{receipt.amount} credits moved from {receipt.sender} to {receipt.recipient} by {caller}")

    return receipt


def retire(
    caller: str,
    amount: int,
    reason: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    batch_ids: list[int] | None = None,
    now: datetime.datetime | None = None,
) -> CreditRetirement:
    """Permanently burn credits from the caller's balance.

    Retirement is a compliance action and must carry a reason. The burned
    amount is added to the holder's and the ledger's retired totals. Batches
    named in `batch_ids` are flagged as retired for provenance reporting;
    the flag does not affect balances, and the named batches together may
    not exceed the amount retired.

    Raises:
        EmptyReason: If no reason is given.
        InvalidInput: If the named batches total more than `amount`.
        AlreadyInState: If a named batch is already retired.
        InsufficientBalance: If the holder's balance is below `amount`.
        Paused: If the ledger is paused.
    """
    holder = normalise_address(caller, field="holder")
    reason = (reason or "").strip()
    if not reason:
        err_msg = f"Retirement by {holder} requires a reason"
        logger.error(err_msg)
        raise EmptyReason(err_msg, field="reason")
    if len(reason) > MAX_RETIREMENT_REASON_LENGTH:
        raise InvalidInput(
            f"Retirement reason cannot exceed {MAX_RETIREMENT_REASON_LENGTH} characters",
            field="reason",
        )
    _require_positive_amount(amount)

    now = now or utc_datetime_now()
    state = get_ledger_state(write_session, for_update=True)
    _require_not_paused(state, "retire credits")

    batch_ids = list(dict.fromkeys(batch_ids or []))
    batches = [
        CreditBatch.by_id(batch_id, write_session, for_update=True)
        for batch_id in batch_ids
    ]
    for batch in batches:
        if batch.is_retired:
            err_msg = f"Credit batch {batch.id} is already retired"
            logger.error(err_msg)
            raise AlreadyInState(err_msg, batch_id=batch.id)

    # A batch can only be closed out by a retirement at least as large as it
    named_total = sum(batch.amount for batch in batches)
    if named_total > amount:
        err_msg = (
            f"Retiring {amount} credits cannot close out batches {batch_ids} "
            f"totalling {named_total}"
        )
        logger.error(err_msg)
        raise InvalidInput(
            err_msg, field="batch_ids", batch_total=named_total, amount=amount
        )

    change_set = ChangeSet()
    retirement = CreditRetirement(
        holder_address=holder,
        amount=amount,
        reason=reason,
        retired_at=now,
        batch_ids=batch_ids,
    )
    change_set.create(retirement)

    book = BalanceBook(write_session, change_set)
    balance = book.balance_of(holder)
    if balance < amount:
        err_msg = f"Insufficient balance for {holder} to retire {amount}: {balance}"
        logger.error(err_msg)
        raise InsufficientBalance(err_msg, address=holder, balance=balance, required=amount)

    book.adjust(holder, balance_delta=-amount, retired_delta=amount)
    for batch in batches:
        change_set.update(batch, {"is_retired": True})
    change_set.update(
        state,
        {
            "total_supply": state.total_supply - amount,
            "total_retired": state.total_retired + amount,
        },
    )

    change_set.emit("Transfer", {"from": holder, "to": ZERO_ADDRESS, "amount": amount})
    change_set.emit(
        "CreditRetired",
        {
            "holder": holder,
            "amount": amount,
            "reason": reason,
            "batch_ids": batch_ids,
            "timestamp": now,
        },
    )

    db_retirement = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"{holder} retired {amount} credits: {reason}")

    return db_retirement  # type: ignore


def _set_paused(
    caller: str,
    paused: bool,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> LedgerState:
    policy.require_admin(caller, "pause the ledger" if paused else "unpause the ledger")

    state = get_ledger_state(write_session, for_update=True)
    if state.is_paused == paused:
        err_msg = f"The credit ledger is already {'paused' if paused else 'unpaused'}"
        logger.error(err_msg)
        raise AlreadyInState(err_msg)

    change_set = ChangeSet()
    change_set.update(state, {"is_paused": paused})
    change_set.emit("LedgerPaused" if paused else "LedgerUnpaused", {"account": caller})

    db_state = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.warning(f"Credit ledger {'paused' if paused else 'unpaused'} by {caller}")

    return db_state  # type: ignore


def pause(
    caller: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> LedgerState:
    """Stop all issuance, transfers and retirements until unpaused."""
    return _set_paused(caller, True, write_session, read_session, esdb_client, policy)


def unpause(
    caller: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> LedgerState:
    return _set_paused(caller, False, write_session, read_session, esdb_client, policy)


def update_verification_gate(
    caller: str,
    gate_id: int,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> LedgerState:
    """Point the ledger at a different verification gate. Claims consumed on
    the previous gate stay consumed; approved claims left on it can no longer
    be issued."""
    policy.require_admin(caller, "update the verification gate")

    verification_services.get_gate(gate_id, write_session)
    state = get_ledger_state(write_session, for_update=True)

    change_set = ChangeSet()
    change_set.update(state, {"verification_gate_id": gate_id})
    change_set.emit(
        "VerificationGateUpdated",
        {"old_gate_id": state.verification_gate_id, "new_gate_id": gate_id},
    )

    db_state = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Credit ledger now uses verification gate {gate_id}")

    return db_state  # type: ignore


def balance_of(address: str, read_session: Session) -> CreditBalanceSummary:
    address = normalise_address(address)
    row = CreditBalance.by_address(address, read_session)
    return CreditBalanceSummary(
        address=address,
        balance=row.balance if row else 0,
        retired_total=row.retired_total if row else 0,
    )


def allowance(owner: str, spender: str, read_session: Session) -> CreditAllowanceSummary:
    owner = normalise_address(owner, field="owner")
    spender = normalise_address(spender, field="spender")
    row = CreditAllowance.by_pair(owner, spender, read_session)
    return CreditAllowanceSummary(
        owner=owner, spender=spender, amount=row.amount if row else 0
    )


def get_credit_batch(batch_id: int, read_session: Session) -> CreditBatch:
    return CreditBatch.by_id(batch_id, read_session)


def get_producer_batches(address: str, read_session: Session) -> list[CreditBatch]:
    return list(
        read_session.exec(
            select(CreditBatch)
            .where(CreditBatch.producer_address == normalise_address(address))
            .order_by(col(CreditBatch.id))
        ).all()
    )


def get_retirements(address: str, read_session: Session) -> list[CreditRetirement]:
    return list(
        read_session.exec(
            select(CreditRetirement)
            .where(CreditRetirement.holder_address == normalise_address(address))
            .order_by(col(CreditRetirement.id))
        ).all()
    )


def get_contract_stats(read_session: Session) -> LedgerStats:
    state = get_ledger_state(read_session)
    return LedgerStats(
        name=TOKEN_NAME,
        symbol=TOKEN_SYMBOL,
        decimals=settings.CREDIT_DECIMALS,
        total_supply=state.total_supply,
        total_minted=state.total_minted,
        total_retired=state.total_retired,
        total_batches=state.total_batches,
        producer_count=producer_services.get_registered_producers_count(read_session),
        verified_producer_count=producer_services.get_verified_producers_count(
            read_session
        ),
        verification_gate_id=state.verification_gate_id,
        is_paused=state.is_paused,
    )


def export_credit_batches_csv(
    read_session: Session, producer_address: str | None = None
) -> str:
    """Render credit batches as CSV for compliance reporting, optionally
    restricted to a single producer."""
    if producer_address is not None:
        batches = get_producer_batches(producer_address, read_session)
    else:
        batches = list(
            read_session.exec(select(CreditBatch).order_by(col(CreditBatch.id))).all()
        )

    columns = [
        "batch_id",
        "producer_address",
        "amount",
        "claim_id",
        "plant_id",
        "renewable_source",
        "production_timestamp",
        "evidence_ref",
        "is_retired",
        "issued_at",
    ]
    batches_df = pd.DataFrame(
        [
            {
                "batch_id": batch.id,
                "producer_address": batch.producer_address,
                "amount": batch.amount,
                "claim_id": batch.claim_id,
                "plant_id": batch.plant_id,
                "renewable_source": batch.renewable_source.value,
                "production_timestamp": batch.production_timestamp,
                "evidence_ref": batch.evidence_ref,
                "is_retired": batch.is_retired,
                "issued_at": batch.issued_at,
            }
            for batch in batches
        ],
        columns=columns,
    )

    return batches_df.to_csv(index=False)
