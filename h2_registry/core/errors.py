from fastapi import status

# Every failure in the ledger core is raised as one of the errors below and
# aborts the whole operation. Routes do not catch them; the exception handler
# in core.error_handling renders them with their status code and kind.


class LedgerError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidInput(LedgerError):
    pass


class InvalidAmount(InvalidInput):
    pass


class InvalidPrice(InvalidInput):
    pass


class EmptyReason(InvalidInput):
    pass


class FutureTimestamp(InvalidInput):
    pass


class StaleProduction(InvalidInput):
    pass


class PlantMismatch(InvalidInput):
    pass


class NotAuthorized(LedgerError):
    status_code = status.HTTP_401_UNAUTHORIZED


class NotSeller(NotAuthorized):
    pass


class AlreadyRegistered(LedgerError):
    status_code = status.HTTP_409_CONFLICT


class AlreadyDecided(LedgerError):
    status_code = status.HTTP_409_CONFLICT


class AlreadyInState(LedgerError):
    status_code = status.HTTP_409_CONFLICT


class NotConsumable(LedgerError):
    status_code = status.HTTP_409_CONFLICT


class InsufficientBalance(LedgerError):
    pass


class InsufficientAllowance(LedgerError):
    pass


class InsufficientPayment(LedgerError):
    pass


class InsufficientFee(LedgerError):
    pass


class AmountExceedsListing(LedgerError):
    pass


class TransferFailed(LedgerError):
    pass


class MonthlyLimitExceeded(LedgerError):
    pass


class ProducerInactive(LedgerError):
    status_code = status.HTTP_409_CONFLICT


class ProducerNotVerified(LedgerError):
    status_code = status.HTTP_403_FORBIDDEN


class InactiveListing(LedgerError):
    status_code = status.HTTP_409_CONFLICT


class Paused(LedgerError):
    status_code = status.HTTP_423_LOCKED


class UnknownEntity(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND


class UnknownClaim(UnknownEntity):
    pass


class UnknownListing(UnknownEntity):
    pass


class NotRegistered(UnknownEntity):
    pass
