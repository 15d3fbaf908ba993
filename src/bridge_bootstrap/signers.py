from abc import ABC, abstractmethod

from eth_account import Account
from hexbytes import HexBytes

LEDGER_SECRET = "ledger"


def ledger_derivation_path(index: int) -> str:
    return f"m/44'/60'/{index}'/0/0"


def bip32_path(derivation_path: str) -> str:
    if derivation_path.startswith("m/"):
        return derivation_path[len("m/") :]
    return derivation_path


class Signer(ABC):
    """
    A transaction signing identity. The bootstrap scripts never touch the underlying key material
    directly, they only ask for an address and for signed raw transactions.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @abstractmethod
    def sign_transaction(self, tx: dict) -> HexBytes:
        """
        Signs a fully built transaction (nonce, gas and fee fields included) and returns the raw
        transaction bytes, ready for eth_sendRawTransaction.
        """


class PrivateKeySigner(Signer):
    def __init__(self, private_key: str):
        self.account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self.account.address

    def sign_transaction(self, tx: dict) -> HexBytes:
        return HexBytes(self.account.sign_transaction(tx).raw_transaction)


class LedgerSigner(Signer):
    """
    Signs with a Ledger device over USB. Every signature has to be approved on the device, so
    sign_transaction blocks until the operator does so.
    """

    def __init__(self, derivation_path: str):
        # Imported here so that the USB stack is only required when a ledger is actually used.
        from ledgereth.accounts import get_account_by_path

        self.derivation_path = derivation_path
        # ledgereth parses every path component as a number, so the "m/" root is dropped.
        self.bip32_path = bip32_path(derivation_path)
        self._address = get_account_by_path(self.bip32_path).address

    @property
    def address(self) -> str:
        return self._address

    def sign_transaction(self, tx: dict) -> HexBytes:
        from ledgereth.transactions import create_transaction

        signed = create_transaction(
            # Contract creation has no destination.
            destination=tx.get("to") or b"",
            amount=tx.get("value", 0),
            gas=tx["gas"],
            nonce=tx["nonce"],
            data=HexBytes(tx.get("data", b"")),
            max_priority_fee_per_gas=tx.get("maxPriorityFeePerGas", 0),
            max_fee_per_gas=tx.get("maxFeePerGas", 0),
            gas_price=tx.get("gasPrice", 0),
            chain_id=tx["chainId"],
            sender_path=self.bip32_path,
        )
        return HexBytes(signed.raw_transaction())

