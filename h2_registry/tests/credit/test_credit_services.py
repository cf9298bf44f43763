import datetime
import io

import pandas as pd
import pytest
from sqlmodel import Session, select

from h2_registry.core.authorization import AccessPolicy
from h2_registry.core.errors import (
    AlreadyInState,
    EmptyReason,
    InsufficientAllowance,
    InsufficientBalance,
    InvalidAmount,
    InvalidInput,
    MonthlyLimitExceeded,
    NotAuthorized,
    NotConsumable,
    Paused,
    ProducerInactive,
    ProducerNotVerified,
    UnknownClaim,
)
from h2_registry.core.models.base import ClaimStatus, RenewableSource
from h2_registry.credit import services
from h2_registry.credit.models import CreditBalance, CreditBatch, LedgerState
from h2_registry.producer import services as producer_services
from h2_registry.producer.models import Producer
from h2_registry.tests.conftest import (
    ADMIN_ADDRESS,
    BUYER_ADDRESS,
    ISSUER_ADDRESS,
    OUTSIDER_ADDRESS,
    PRODUCER_ADDRESS,
    InMemoryEventStore,
)
from h2_registry.verification import services as verification_services
from h2_registry.verification.schemas import VerificationGateCreate


def _balance(address: str, session: Session) -> int:
    return services.balance_of(address, session).balance


class TestCreditIssuance:
    def test_issue_credits_from_claim(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        now: datetime.datetime,
        fake_db_ledger: LedgerState,
        fake_db_producer: Producer,
        claim_factory,
    ):
        claim = claim_factory(fake_db_producer, 600)

        batch = services.issue_credits_from_claim(
            ISSUER_ADDRESS,
            claim.claim_id,
            write_session,
            read_session,
            esdb_client,  # type: ignore
            policy,
            now=now,
        )

        assert batch.id is not None
        assert batch.producer_address == PRODUCER_ADDRESS
        assert batch.amount == 600
        assert batch.claim_id == claim.claim_id
        assert batch.plant_id == "SOLAR-PLANT-001"
        assert batch.renewable_source == RenewableSource.SOLAR
        assert batch.evidence_ref == "ipfs://evidence"
        assert batch.is_retired is False

        assert _balance(PRODUCER_ADDRESS, read_session) == 600

        producer = producer_services.get_producer(PRODUCER_ADDRESS, read_session)
        assert producer.total_produced == 600
        assert producer.current_month_production == 600
        assert producer.last_production_month == 202610

        claim = verification_services.get_claim(claim.claim_id, read_session)
        assert claim.status == ClaimStatus.CONSUMED

        stats = services.get_contract_stats(read_session)
        assert stats.total_supply == 600
        assert stats.total_minted == 600
        assert stats.total_batches == 1
        assert stats.symbol == "GHC"

        issued = esdb_client.event_data("CreditIssued")
        assert issued[0]["payload"]["batch_id"] == batch.id
        assert issued[0]["payload"]["producer"] == PRODUCER_ADDRESS
        assert issued[0]["payload"]["amount"] == 600
        assert issued[0]["payload"]["source"] == "Solar"

        transfers = esdb_client.event_data("Transfer")
        assert transfers[0]["payload"] == {
            "from": services.ZERO_ADDRESS,
            "to": PRODUCER_ADDRESS,
            "amount": 600,
        }

    def test_monthly_limit_exceeded_leaves_state_unchanged(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        now: datetime.datetime,
        fake_db_producer: Producer,
        claim_factory,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 600)
        claim = claim_factory(fake_db_producer, 500)

        with pytest.raises(MonthlyLimitExceeded):
            services.issue_credits_from_claim(
                ADMIN_ADDRESS,
                claim.claim_id,
                write_session,
                read_session,
                esdb_client,  # type: ignore
                policy,
                now=now,
            )

        assert _balance(PRODUCER_ADDRESS, read_session) == 600
        producer = producer_services.get_producer(PRODUCER_ADDRESS, read_session)
        assert producer.current_month_production == 600
        assert producer.total_produced == 600
        assert verification_services.get_claim(claim.claim_id, read_session).status == (
            ClaimStatus.APPROVED
        )
        assert services.get_contract_stats(read_session).total_batches == 1
        assert len(esdb_client.event_data("CreditIssued")) == 1

    def test_monthly_limit_resets_next_month(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        now: datetime.datetime,
        fake_db_producer: Producer,
        claim_factory,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 1000)
        claim = claim_factory(fake_db_producer, 500)

        next_month = datetime.datetime(2026, 11, 2, tzinfo=datetime.timezone.utc)
        services.issue_credits_from_claim(
            ADMIN_ADDRESS,
            claim.claim_id,
            write_session,
            read_session,
            esdb_client,  # type: ignore
            policy,
            now=next_month,
        )

        producer = producer_services.get_producer(PRODUCER_ADDRESS, read_session)
        assert producer.current_month_production == 500
        assert producer.last_production_month == 202611
        assert producer.total_produced == 1500
        assert _balance(PRODUCER_ADDRESS, read_session) == 1500

    @pytest.mark.parametrize(
        "status", [ClaimStatus.REJECTED, ClaimStatus.SUBMITTED, ClaimStatus.CONSUMED]
    )
    def test_only_approved_claims_are_issuable(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        fake_db_ledger: LedgerState,
        fake_db_producer: Producer,
        claim_factory,
        status: ClaimStatus,
    ):
        claim = claim_factory(fake_db_producer, 600, status=status)

        with pytest.raises(NotConsumable):
            services.issue_credits_from_claim(
                ADMIN_ADDRESS,
                claim.claim_id,
                write_session,
                read_session,
                esdb_client,  # type: ignore
                policy,
            )

        assert _balance(PRODUCER_ADDRESS, read_session) == 0
        assert read_session.exec(select(CreditBatch)).all() == []

    def test_claim_funds_one_batch(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        now: datetime.datetime,
        fake_db_ledger: LedgerState,
        fake_db_producer: Producer,
        claim_factory,
    ):
        claim = claim_factory(fake_db_producer, 300)
        args = (write_session, read_session, esdb_client, policy)

        services.issue_credits_from_claim(ADMIN_ADDRESS, claim.claim_id, *args, now=now)
        with pytest.raises(NotConsumable):
            services.issue_credits_from_claim(ADMIN_ADDRESS, claim.claim_id, *args, now=now)

        assert _balance(PRODUCER_ADDRESS, read_session) == 300
        assert len(read_session.exec(select(CreditBatch)).all()) == 1

    def test_unknown_claim(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        fake_db_ledger: LedgerState,
    ):
        with pytest.raises(UnknownClaim):
            services.issue_credits_from_claim(
                ADMIN_ADDRESS,
                "0x" + "0" * 64,
                write_session,
                read_session,
                esdb_client,  # type: ignore
                policy,
            )

    def test_issue_requires_issuer(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        fake_db_ledger: LedgerState,
        fake_db_producer: Producer,
        claim_factory,
    ):
        claim = claim_factory(fake_db_producer, 600)

        for caller in (OUTSIDER_ADDRESS, PRODUCER_ADDRESS):
            with pytest.raises(NotAuthorized):
                services.issue_credits_from_claim(
                    caller,
                    claim.claim_id,
                    write_session,
                    read_session,
                    esdb_client,  # type: ignore
                    policy,
                )

        assert verification_services.is_consumable(claim.claim_id, read_session)

    def test_producer_must_be_active_and_verified(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        fake_db_ledger: LedgerState,
        producer_factory,
        claim_factory,
    ):
        inactive = producer_factory(is_active=False)
        unverified = producer_factory(
            address=OUTSIDER_ADDRESS, plant_id="WIND-PLANT-002", is_verified=False
        )
        args = (write_session, read_session, esdb_client, policy)

        claim = claim_factory(inactive, 100)
        with pytest.raises(ProducerInactive):
            services.issue_credits_from_claim(ADMIN_ADDRESS, claim.claim_id, *args)
        assert verification_services.is_consumable(claim.claim_id, read_session)

        claim = claim_factory(unverified, 100)
        with pytest.raises(ProducerNotVerified):
            services.issue_credits_from_claim(ADMIN_ADDRESS, claim.claim_id, *args)
        assert verification_services.is_consumable(claim.claim_id, read_session)

        assert services.get_contract_stats(read_session).total_supply == 0

    def test_claims_on_previous_gate_are_not_issuable(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        now: datetime.datetime,
        fake_db_gate,
        fake_db_ledger: LedgerState,
        fake_db_producer: Producer,
        claim_factory,
    ):
        args = (write_session, read_session, esdb_client, policy)
        consumed = claim_factory(fake_db_producer, 100)
        services.issue_credits_from_claim(ADMIN_ADDRESS, consumed.claim_id, *args, now=now)
        left_behind = claim_factory(fake_db_producer, 100)

        new_gate = verification_services.create_verification_gate(
            ADMIN_ADDRESS,
            VerificationGateCreate(name="Replacement Oracle", submission_fee=0),
            *args,
        )
        with pytest.raises(NotAuthorized):
            services.update_verification_gate(OUTSIDER_ADDRESS, new_gate.id, *args)  # type: ignore
        state = services.update_verification_gate(ADMIN_ADDRESS, new_gate.id, *args)  # type: ignore
        assert state.verification_gate_id == new_gate.id

        with pytest.raises(UnknownClaim):
            services.issue_credits_from_claim(ADMIN_ADDRESS, left_behind.claim_id, *args, now=now)

        assert verification_services.get_claim(consumed.claim_id, read_session).status == (
            ClaimStatus.CONSUMED
        )

        on_new_gate = claim_factory(fake_db_producer, 100, gate_id=new_gate.id)
        services.issue_credits_from_claim(ADMIN_ADDRESS, on_new_gate.claim_id, *args, now=now)
        assert _balance(PRODUCER_ADDRESS, read_session) == 200

        updated = esdb_client.event_data("VerificationGateUpdated")[0]["payload"]
        assert updated == {"old_gate_id": fake_db_gate.id, "new_gate_id": new_gate.id}

    def test_issue_credits_for_approved_claims(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        now: datetime.datetime,
        fake_db_ledger: LedgerState,
        fake_db_producer: Producer,
        claim_factory,
    ):
        first = claim_factory(fake_db_producer, 600)
        second = claim_factory(fake_db_producer, 300)
        over_limit = claim_factory(fake_db_producer, 500)
        claim_factory(fake_db_producer, 50, status=ClaimStatus.REJECTED)

        result = services.issue_credits_for_approved_claims(
            ISSUER_ADDRESS,
            write_session,
            read_session,
            esdb_client,  # type: ignore
            policy,
            now=now,
        )

        assert result.issued_claim_ids == [first.claim_id, second.claim_id]
        assert result.failed_claims == {over_limit.claim_id: "MonthlyLimitExceeded"}
        assert _balance(PRODUCER_ADDRESS, read_session) == 900
        assert verification_services.is_consumable(over_limit.claim_id, read_session)

    def test_issue_credits_for_approved_claims_requires_issuer(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        now: datetime.datetime,
        fake_db_ledger: LedgerState,
        fake_db_producer: Producer,
        claim_factory,
    ):
        claim = claim_factory(fake_db_producer, 600)

        with pytest.raises(NotAuthorized):
            services.issue_credits_for_approved_claims(
                OUTSIDER_ADDRESS,
                write_session,
                read_session,
                esdb_client,  # type: ignore
                policy,
                now=now,
            )

        assert verification_services.is_consumable(claim.claim_id, read_session)
        assert _balance(PRODUCER_ADDRESS, read_session) == 0
        assert esdb_client.event_data("CreditIssued") == []


class TestCreditTransfers:
    def test_transfer(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        now: datetime.datetime,
        fake_db_producer: Producer,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 500)

        receipt = services.transfer(
            PRODUCER_ADDRESS,
            BUYER_ADDRESS,
            200,
            write_session,
            read_session,
            esdb_client,  # type: ignore
            now=now,
        )

        assert receipt.sender == PRODUCER_ADDRESS
        assert receipt.recipient == BUYER_ADDRESS
        assert receipt.amount == 200
        assert receipt.timestamp == now

        assert _balance(PRODUCER_ADDRESS, read_session) == 300
        assert _balance(BUYER_ADDRESS, read_session) == 200

        transferred = esdb_client.event_data("CreditTransferred")
        assert transferred[0]["payload"]["from"] == PRODUCER_ADDRESS
        assert transferred[0]["payload"]["to"] == BUYER_ADDRESS
        assert transferred[0]["payload"]["amount"] == 200

    def test_transfer_rejects_overdraft_and_bad_input(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        fake_db_producer: Producer,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 100)
        args = (write_session, read_session, esdb_client)

        with pytest.raises(InsufficientBalance):
            services.transfer(PRODUCER_ADDRESS, BUYER_ADDRESS, 101, *args)
        with pytest.raises(InvalidAmount):
            services.transfer(PRODUCER_ADDRESS, BUYER_ADDRESS, 0, *args)
        with pytest.raises(InvalidInput):
            services.transfer(PRODUCER_ADDRESS, "0x1234", 10, *args)

        assert _balance(PRODUCER_ADDRESS, read_session) == 100
        assert CreditBalance.by_address(BUYER_ADDRESS, read_session) is None

    def test_transfer_to_zero_address_is_rejected(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        fake_db_producer: Producer,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 100)
        args = (write_session, read_session, esdb_client)

        with pytest.raises(InvalidInput) as exc_info:
            services.transfer(PRODUCER_ADDRESS, services.ZERO_ADDRESS, 10, *args)
        assert exc_info.value.details["field"] == "to"

        services.approve(PRODUCER_ADDRESS, BUYER_ADDRESS, 50, *args)
        with pytest.raises(InvalidInput):
            services.transfer_from(
                BUYER_ADDRESS, PRODUCER_ADDRESS, services.ZERO_ADDRESS, 10, *args
            )

        assert _balance(PRODUCER_ADDRESS, read_session) == 100
        assert CreditBalance.by_address(services.ZERO_ADDRESS, read_session) is None
        assert services.allowance(PRODUCER_ADDRESS, BUYER_ADDRESS, read_session).amount == 50
        assert esdb_client.event_data("CreditTransferred") == []

    def test_self_transfer_keeps_balance(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        fake_db_producer: Producer,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 100)

        services.transfer(
            PRODUCER_ADDRESS,
            PRODUCER_ADDRESS,
            60,
            write_session,
            read_session,
            esdb_client,  # type: ignore
        )

        assert _balance(PRODUCER_ADDRESS, read_session) == 100
        assert len(esdb_client.event_data("CreditTransferred")) == 1

    def test_approve_and_transfer_from(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        fake_db_producer: Producer,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 500)
        args = (write_session, read_session, esdb_client)

        with pytest.raises(InsufficientAllowance):
            services.transfer_from(BUYER_ADDRESS, PRODUCER_ADDRESS, BUYER_ADDRESS, 10, *args)

        services.approve(PRODUCER_ADDRESS, BUYER_ADDRESS, 150, *args)
        assert services.allowance(PRODUCER_ADDRESS, BUYER_ADDRESS, read_session).amount == 150
        assert esdb_client.event_data("Approval")[0]["payload"] == {
            "owner": PRODUCER_ADDRESS,
            "spender": BUYER_ADDRESS,
            "amount": 150,
        }

        receipt = services.transfer_from(
            BUYER_ADDRESS, PRODUCER_ADDRESS, OUTSIDER_ADDRESS, 100, *args
        )
        assert receipt.sender == PRODUCER_ADDRESS
        assert receipt.recipient == OUTSIDER_ADDRESS

        assert services.allowance(PRODUCER_ADDRESS, BUYER_ADDRESS, read_session).amount == 50
        assert _balance(PRODUCER_ADDRESS, read_session) == 400
        assert _balance(OUTSIDER_ADDRESS, read_session) == 100

        with pytest.raises(InsufficientAllowance):
            services.transfer_from(BUYER_ADDRESS, PRODUCER_ADDRESS, BUYER_ADDRESS, 51, *args)

        # Re-approving replaces the allowance
        services.approve(PRODUCER_ADDRESS, BUYER_ADDRESS, 1000, *args)
        with pytest.raises(InsufficientBalance):
            services.transfer_from(BUYER_ADDRESS, PRODUCER_ADDRESS, BUYER_ADDRESS, 401, *args)
        assert services.allowance(PRODUCER_ADDRESS, BUYER_ADDRESS, read_session).amount == 1000

        with pytest.raises(InvalidAmount):
            services.approve(PRODUCER_ADDRESS, BUYER_ADDRESS, -1, *args)


class TestCreditRetirement:
    def test_retire_requires_reason(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        now: datetime.datetime,
        fake_db_producer: Producer,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 100)
        args = (write_session, read_session, esdb_client)

        for reason in ("", "   "):
            with pytest.raises(EmptyReason):
                services.retire(PRODUCER_ADDRESS, 50, reason, *args)
        assert _balance(PRODUCER_ADDRESS, read_session) == 100

        retirement = services.retire(
            PRODUCER_ADDRESS, 50, "Scope 2 offset 2024", *args, now=now
        )

        assert retirement.amount == 50
        assert retirement.reason == "Scope 2 offset 2024"
        assert retirement.holder_address == PRODUCER_ADDRESS

        summary = services.balance_of(PRODUCER_ADDRESS, read_session)
        assert summary.balance == 50
        assert summary.retired_total == 50

        stats = services.get_contract_stats(read_session)
        assert stats.total_supply == 50
        assert stats.total_retired == 50

        retired = esdb_client.event_data("CreditRetired")[0]["payload"]
        assert retired["holder"] == PRODUCER_ADDRESS
        assert retired["amount"] == 50
        assert retired["reason"] == "Scope 2 offset 2024"
        assert esdb_client.event_data("Transfer")[-1]["payload"]["to"] == services.ZERO_ADDRESS

        assert [r.amount for r in services.get_retirements(PRODUCER_ADDRESS, read_session)] == [50]

    def test_retire_rejects_overdraft_and_long_reason(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        fake_db_producer: Producer,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 100)
        args = (write_session, read_session, esdb_client)

        with pytest.raises(InsufficientBalance):
            services.retire(PRODUCER_ADDRESS, 101, "Annual report", *args)
        with pytest.raises(InvalidInput):
            services.retire(PRODUCER_ADDRESS, 10, "x" * 501, *args)
        with pytest.raises(InsufficientBalance):
            services.retire(BUYER_ADDRESS, 1, "Nothing to retire", *args)

        assert services.get_retirements(PRODUCER_ADDRESS, read_session) == []
        assert services.get_contract_stats(read_session).total_retired == 0

    def test_retire_flags_batches(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        fake_db_producer: Producer,
        mint_credits,
    ):
        first = mint_credits(fake_db_producer, 60)
        second = mint_credits(fake_db_producer, 40)
        args = (write_session, read_session, esdb_client)

        retirement = services.retire(
            PRODUCER_ADDRESS, 60, "Offset", *args, batch_ids=[first.id, first.id]
        )
        assert retirement.batch_ids == [first.id]
        assert services.get_credit_batch(first.id, read_session).is_retired is True
        assert services.get_credit_batch(second.id, read_session).is_retired is False
        assert esdb_client.event_data("CreditRetired")[0]["payload"]["batch_ids"] == [first.id]

        with pytest.raises(AlreadyInState):
            services.retire(PRODUCER_ADDRESS, 10, "Offset", *args, batch_ids=[first.id])
        assert _balance(PRODUCER_ADDRESS, read_session) == 40

    def test_retire_cannot_close_out_larger_batches(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        fake_db_producer: Producer,
        mint_credits,
    ):
        first = mint_credits(fake_db_producer, 600)
        second = mint_credits(fake_db_producer, 400)
        args = (write_session, read_session, esdb_client)
        services.transfer(PRODUCER_ADDRESS, BUYER_ADDRESS, 1, *args)

        # One credit held elsewhere cannot close out the producer's batch
        with pytest.raises(InvalidInput) as exc_info:
            services.retire(BUYER_ADDRESS, 1, "Offset", *args, batch_ids=[first.id])
        assert exc_info.value.details["field"] == "batch_ids"
        assert exc_info.value.details["batch_total"] == 600

        # Together the named batches exceed the amount retired
        with pytest.raises(InvalidInput):
            services.retire(
                PRODUCER_ADDRESS, 900, "Offset", *args, batch_ids=[first.id, second.id]
            )

        assert services.get_credit_batch(first.id, read_session).is_retired is False
        assert services.get_credit_batch(second.id, read_session).is_retired is False
        assert _balance(BUYER_ADDRESS, read_session) == 1
        assert _balance(PRODUCER_ADDRESS, read_session) == 999
        assert services.get_retirements(BUYER_ADDRESS, read_session) == []
        assert services.get_contract_stats(read_session).total_retired == 0

        services.retire(
            PRODUCER_ADDRESS, 999, "Offset", *args, batch_ids=[first.id]
        )
        assert services.get_credit_batch(first.id, read_session).is_retired is True


class TestLedgerAdministration:
    def test_pause_blocks_balance_changes(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        policy: AccessPolicy,
        now: datetime.datetime,
        fake_db_producer: Producer,
        claim_factory,
        mint_credits,
    ):
        mint_credits(fake_db_producer, 100)
        claim = claim_factory(fake_db_producer, 100)
        args = (write_session, read_session, esdb_client)

        with pytest.raises(NotAuthorized):
            services.pause(OUTSIDER_ADDRESS, *args, policy)

        state = services.pause(ADMIN_ADDRESS, *args, policy)
        assert state.is_paused is True
        with pytest.raises(AlreadyInState):
            services.pause(ADMIN_ADDRESS, *args, policy)

        with pytest.raises(Paused):
            services.issue_credits_from_claim(ADMIN_ADDRESS, claim.claim_id, *args, policy, now=now)
        with pytest.raises(Paused):
            services.transfer(PRODUCER_ADDRESS, BUYER_ADDRESS, 10, *args)
        with pytest.raises(Paused):
            services.retire(PRODUCER_ADDRESS, 10, "Offset", *args)

        services.approve(PRODUCER_ADDRESS, BUYER_ADDRESS, 10, *args)
        with pytest.raises(Paused):
            services.transfer_from(BUYER_ADDRESS, PRODUCER_ADDRESS, BUYER_ADDRESS, 10, *args)

        services.unpause(ADMIN_ADDRESS, *args, policy)
        services.transfer(PRODUCER_ADDRESS, BUYER_ADDRESS, 10, *args)
        assert _balance(BUYER_ADDRESS, read_session) == 10

        assert esdb_client.event_types().count("LedgerPaused") == 1
        assert esdb_client.event_types().count("LedgerUnpaused") == 1

    def test_supply_is_conserved(
        self,
        write_session: Session,
        read_session: Session,
        esdb_client: InMemoryEventStore,
        producer_factory,
        mint_credits,
    ):
        solar = producer_factory()
        wind = producer_factory(
            address=OUTSIDER_ADDRESS,
            plant_id="WIND-PLANT-002",
            renewable_source=RenewableSource.WIND,
        )
        args = (write_session, read_session, esdb_client)

        mint_credits(solar, 700)
        mint_credits(wind, 400)
        services.transfer(PRODUCER_ADDRESS, BUYER_ADDRESS, 250, *args)
        services.approve(OUTSIDER_ADDRESS, BUYER_ADDRESS, 100, *args)
        services.transfer_from(BUYER_ADDRESS, OUTSIDER_ADDRESS, BUYER_ADDRESS, 100, *args)
        services.retire(BUYER_ADDRESS, 120, "Offset", *args)
        services.retire(PRODUCER_ADDRESS, 50, "Offset", *args)

        balances = read_session.exec(select(CreditBalance)).all()
        stats = services.get_contract_stats(read_session)

        assert stats.total_minted == 1100
        assert stats.total_retired == 170
        assert stats.total_supply == stats.total_minted - stats.total_retired
        assert sum(b.balance for b in balances) == stats.total_supply
        assert sum(b.retired_total for b in balances) == stats.total_retired
        assert stats.producer_count == 2
        assert stats.verified_producer_count == 2

    def test_export_credit_batches_csv(
        self,
        read_session: Session,
        producer_factory,
        mint_credits,
    ):
        solar = producer_factory()
        wind = producer_factory(
            address=OUTSIDER_ADDRESS,
            plant_id="WIND-PLANT-002",
            renewable_source=RenewableSource.WIND,
        )
        mint_credits(solar, 300)
        mint_credits(wind, 200)

        batches_df = pd.read_csv(io.StringIO(services.export_credit_batches_csv(read_session)))

        assert list(batches_df.columns) == [
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
        assert batches_df["amount"].tolist() == [300, 200]
        assert batches_df["renewable_source"].tolist() == ["Solar", "Wind"]

        solar_df = pd.read_csv(
            io.StringIO(services.export_credit_batches_csv(read_session, PRODUCER_ADDRESS))
        )
        assert solar_df["plant_id"].tolist() == ["SOLAR-PLANT-001"]
        assert [b.amount for b in services.get_producer_batches(OUTSIDER_ADDRESS, read_session)] == [200]
