class BootstrapError(Exception):
    """
    Base class for errors that abort a bootstrap run.
    """


class ConfigurationError(BootstrapError):
    def __init__(self, name: str, message: str = "is not set"):
        super().__init__(f"{name} {message}")
        self.name = name


class SubmissionError(BootstrapError):
    """
    The network rejected a call before it was included in a block.
    """

    def __init__(self, description: str, reason: str):
        super().__init__(f"Failed to submit {description}: {reason}")
        self.description = description


class ReceiptTimeoutError(BootstrapError):
    """
    A submitted transaction was not mined within the allowed window. The transaction may still be
    mined later, so it must be investigated by hash rather than resubmitted.
    """

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"No receipt for transaction {tx_hash} after {timeout} seconds")
        self.tx_hash = tx_hash
        self.timeout = timeout


class TransactionFailedError(BootstrapError):
    def __init__(self, tx_hash: str):
        super().__init__(f"Transaction {tx_hash} was mined but reverted")
        self.tx_hash = tx_hash
