import asyncio
from dataclasses import dataclass
from typing import Any, Callable

from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, Web3Exception

from bridge_bootstrap.errors import ReceiptTimeoutError, SubmissionError, TransactionFailedError
from bridge_bootstrap.signers import Signer

DEFAULT_RECEIPT_TIMEOUT = 120  # Seconds.
DEFAULT_POLL_LATENCY = 1  # Seconds.
DEFAULT_CONFIRMATIONS = 1

CONFIRMATION_PROMPT = "Press Enter to continue, or Ctrl+C to abort..."


@dataclass(frozen=True)
class TransactionIntent:
    """
    A state changing call that has not been submitted yet. function is a bound contract function
    or constructor, i.e. anything with an awaitable build_transaction.
    """

    description: str
    function: Any


@dataclass(frozen=True)
class SubmittedTransaction:
    intent: TransactionIntent
    tx_hash: str


class TransactionWorkflow:
    """
    Submits signed transactions and turns their hashes into receipts.
    Nothing here is ever retried: resubmitting a transaction whose outcome is unknown risks
    executing it twice.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        signer: Signer,
        chain_id: int,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        poll_latency: float = DEFAULT_POLL_LATENCY,
        confirmations: int = DEFAULT_CONFIRMATIONS,
    ):
        assert confirmations >= 1, f"confirmations {confirmations} too low"
        self.w3 = w3
        self.signer = signer
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.poll_latency = poll_latency
        self.confirmations = confirmations

    async def submit(self, intent: TransactionIntent) -> SubmittedTransaction:
        try:
            nonce = await self.w3.eth.get_transaction_count(self.signer.address, "pending")
            tx = await intent.function.build_transaction(
                {"from": self.signer.address, "nonce": nonce, "chainId": self.chain_id}
            )
            raw_tx = self.signer.sign_transaction(tx)
            tx_hash = Web3.to_hex(await self.w3.eth.send_raw_transaction(raw_tx))
        except (Web3Exception, ValueError) as err:
            raise SubmissionError(intent.description, str(err)) from err
        print(f"{intent.description} tx submitted:", tx_hash)
        return SubmittedTransaction(intent=intent, tx_hash=tx_hash)

    async def await_receipt(self, submitted: SubmittedTransaction) -> dict:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout
        print(f"Waiting for {submitted.intent.description} tx to be mined...", submitted.tx_hash)
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                submitted.tx_hash,
                timeout=self.receipt_timeout,
                poll_latency=self.poll_latency,
            )
        except TimeExhausted as err:
            raise ReceiptTimeoutError(submitted.tx_hash, self.receipt_timeout) from err

        if receipt["status"] != 1:
            raise TransactionFailedError(submitted.tx_hash)

        if self.confirmations > 1:
            # The receipt's own block counts as the first confirmation.
            last_required_block = receipt["blockNumber"] + self.confirmations - 1
            while await self.w3.eth.block_number < last_required_block:
                if loop.time() >= deadline:
                    raise ReceiptTimeoutError(submitted.tx_hash, self.receipt_timeout)
                await asyncio.sleep(self.poll_latency)
        return receipt

    async def execute(self, intent: TransactionIntent) -> dict:
        return await self.await_receipt(await self.submit(intent))

    async def call(self, function) -> Any:
        """
        Performs a read only call. Nothing is signed or submitted.
        """
        return await function.call()


class ConfirmationGate:
    """
    A manual safety checkpoint before the first state changing call of a run. It has no timeout,
    and once satisfied it stays satisfied for the rest of the run.
    """

    def __init__(self, input_func: Callable[[str], str] = input, pre_approved: bool = False):
        self.input_func = input_func
        self.pre_approved = pre_approved
        self.satisfied = False

    async def await_confirmation(self):
        if self.satisfied:
            return
        if self.pre_approved:
            print("Confirmation pre-approved, continuing.")
        else:
            # input() blocks, so it is read off the event loop thread.
            await asyncio.to_thread(self.input_func, CONFIRMATION_PROMPT)
        self.satisfied = True
