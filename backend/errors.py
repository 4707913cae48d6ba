# errors.py
"""Exception taxonomy for the reward daemon.

Resolution errors are logged and the action skipped. Payment protocol
errors are remembered in the ledger and retried by the retry worker.
"""


class RewardError(Exception):
    """Base class for every error raised by the daemon's own code."""


class DuplicateCode(RewardError):
    pass


class LedgerCorrupt(RewardError):
    pass


class ConfigurationInvalid(RewardError):
    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class EventNotFound(RewardError):
    pass


class RelayError(RewardError):
    pass


# ---------------------------
# Reward-address resolution
# ---------------------------
class ResolutionError(RewardError):
    pass


class NoPaymentAddress(ResolutionError):
    pass


class UnsupportedAddressFormat(ResolutionError):
    pass


class ReceiptsUnsupported(ResolutionError):
    pass


class InvoiceRequestFailed(ResolutionError):
    pass


# ---------------------------
# Wallet payment protocol
# ---------------------------
class PaymentProtocolError(RewardError):
    pass


class WalletUnreachable(PaymentProtocolError):
    pass


class TransportRejected(PaymentProtocolError):
    pass


class PaymentError(PaymentProtocolError):
    def __init__(self, message: str, code: str = ""):
        self.code = code
        super().__init__(message)


class PaymentTimeout(PaymentProtocolError):
    pass
