import datetime
import json
import re
from hashlib import sha256

import pytz

from h2_registry.core.errors import InvalidInput

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-f]{40}$")


def normalise_address(address: str | None, field: str = "address") -> str:
    """Return the lower-case form of a 0x-prefixed 20 byte hex account address.

    Raises:
        InvalidInput: If the value is not a well formed address.
    """
    if not address or not isinstance(address, str):
        raise InvalidInput(f"{field} is required", field=field)

    normalised = address.strip().lower()
    if not ADDRESS_PATTERN.match(normalised):
        raise InvalidInput(f"{field} is not a valid account address: {address}", field=field)

    return normalised


def ensure_utc(moment: datetime.datetime, field: str = "timestamp") -> datetime.datetime:
    """Convert a timezone aware datetime to UTC, rejecting naive values."""
    if moment.tzinfo is None or moment.tzinfo.utcoffset(moment) is None:
        raise InvalidInput(f"{field} must be timezone aware", field=field)
    return moment.astimezone(pytz.UTC)


def month_bucket(moment: datetime.datetime) -> int:
    """Calendar month of a UTC moment encoded as YYYYMM, e.g. 202610."""
    moment = ensure_utc(moment)
    return moment.year * 100 + moment.month


def create_claim_hash(
    producer_address: str,
    plant_id: str,
    amount: int,
    production_timestamp: datetime.datetime,
    evidence_ref: str,
    nonce: int,
) -> str:
    """
    Given the identifying attributes of a production claim and the submission
    nonce of the gate it is submitted to, return the claim ID.

    The attributes are serialised as sorted-key JSON so the same claim always
    hashes to the same value; the nonce is appended so that two otherwise
    identical submissions still receive distinct IDs.

    Args:
        producer_address (str): The producer the claim is made for
        plant_id (str): The plant that produced the hydrogen
        amount (int): Claimed production, in credit base units
        production_timestamp (datetime.datetime): When the production took place
        evidence_ref (str): Pointer to the supporting evidence, e.g. an IPFS CID
        nonce (int): The gate's submission counter at the time of submission

    Returns:
        str: 0x-prefixed sha256 hex digest
    """
    claim_dict = json.dumps(
        {
            "producer": producer_address,
            "plant_id": plant_id,
            "amount": amount,
            "production_timestamp": int(ensure_utc(production_timestamp).timestamp()),
            "evidence_ref": evidence_ref,
        },
        sort_keys=True,
    )
    return "0x" + sha256(f"{claim_dict}{nonce}".encode()).hexdigest()
