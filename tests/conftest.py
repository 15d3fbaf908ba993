import json
import os
from typing import Optional

import pytest
import pytest_asyncio
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from bridge_bootstrap.contracts import ContractRegistry
from bridge_bootstrap.pipeline import (
    BRIDGE_CONTRACT,
    ROOT_BRIDGE_ADDRESS,
    ROOT_TEST_CUSTOM_TOKEN,
    RATE_ROLE,
    TEST_TOKEN_CONTRACT,
    PreparationConfig,
    resolve_environment,
)
from bridge_bootstrap.signers import Signer
from bridge_bootstrap.transactions import ConfirmationGate

CHAIN_ID = 31337
DEPLOYER_KEY = "0x" + "01" * 32
TEST_ACCOUNT_KEY = "0x" + "02" * 32
DEPLOYER_ADDRESS = Account.from_key(DEPLOYER_KEY).address
TEST_ACCOUNT_ADDRESS = Account.from_key(TEST_ACCOUNT_KEY).address
MULTISIG_ADDRESS = "0x0000000000000000000000000000000000001337"
BRIDGE_ADDRESS = "0x0000000000000000000000000000000000002222"
DEFAULT_ADMIN_ROLE = bytes(32)
TOKEN_BYTECODE = "0x6080604052"


class FakeChain:
    """
    A minimal in-memory ledger. Every sent transaction is mined into its own block, unless its
    function name is listed in stall (never mined) or revert (mined with status 0).
    Functions listed in reject fail while the transaction is being built, like a revert during
    gas estimation.
    """

    def __init__(self, chain_id: int = CHAIN_ID):
        self.chain_id = chain_id
        self.block_number = 0
        self.auto_advance_blocks = False
        self.transactions = []
        self.calls = []
        self.receipts = {}
        self.deployed = []
        self.balances = {}
        self.thresholds = {}
        self.roles = set()
        self.reject = set()
        self.stall = set()
        self.revert = set()
        for account in (DEPLOYER_ADDRESS, MULTISIG_ADDRESS):
            self.grant(DEFAULT_ADMIN_ROLE, account)
            self.grant(RATE_ROLE, account)

    def grant(self, role: bytes, account: str):
        self.roles.add((bytes(role), Web3.to_checksum_address(account)))

    def has_role(self, role: bytes, account: str) -> bool:
        return (bytes(role), Web3.to_checksum_address(account)) in self.roles

    @property
    def function_names(self):
        return [name for _, name, _ in self.transactions]

    def send(self, tx: dict) -> bytes:
        to, name, args = tx["data"]
        self.transactions.append((to, name, args))
        self.block_number += 1
        tx_hash = Web3.keccak(text=f"tx-{len(self.transactions)}")
        receipt = {
            "transactionHash": tx_hash,
            "blockNumber": self.block_number,
            "status": 0 if name in self.revert else 1,
            "contractAddress": None,
        }
        if receipt["status"] == 1:
            receipt["contractAddress"] = self.apply(to, name, args)
        if name not in self.stall:
            self.receipts[Web3.to_hex(tx_hash)] = receipt
        return tx_hash

    def apply(self, to: Optional[str], name: str, args: tuple) -> Optional[str]:
        if name == "constructor":
            address = Web3.to_checksum_address(f"0x{0xC0FFEE00 + len(self.deployed):040x}")
            self.deployed.append((address, args))
            return address
        if name == "mint":
            recipient, amount = args
            self.balances[(to, recipient)] = self.balances.get((to, recipient), 0) + amount
        elif name == "setRateControlThreshold":
            token, *thresholds = args
            self.thresholds[token] = tuple(thresholds)
        elif name == "revokeRole":
            role, account = args
            self.roles.discard((bytes(role), Web3.to_checksum_address(account)))
        return None

    def call(self, to: str, name: str, args: tuple):
        self.calls.append((to, name, args))
        if name == "DEFAULT_ADMIN_ROLE":
            return DEFAULT_ADMIN_ROLE
        if name == "hasRole":
            return self.has_role(*args)
        raise AssertionError(f"Unexpected call {name}")


class FakeFunction:
    def __init__(self, chain: FakeChain, to: Optional[str], name: str, args: tuple):
        self.chain = chain
        self.to = to
        self.name = name
        self.args = args

    async def build_transaction(self, transaction: dict) -> dict:
        if self.name in self.chain.reject:
            raise ContractLogicError("execution reverted: AccessControl: account is missing role")
        tx = dict(transaction, gas=100_000, data=(self.to, self.name, self.args))
        if self.to is not None:
            tx["to"] = self.to
        return tx

    async def call(self):
        return self.chain.call(self.to, self.name, self.args)


class FakeFunctions:
    def __init__(self, chain: FakeChain, address: Optional[str]):
        self._chain = chain
        self._address = address

    def __getattr__(self, name: str):
        return lambda *args: FakeFunction(self._chain, self._address, name, args)


class FakeContract:
    def __init__(self, chain: FakeChain, address: str):
        self.address = address
        self.functions = FakeFunctions(chain, address)


class FakeContractFactory:
    def __init__(self, chain: FakeChain, bytecode: str):
        self.chain = chain
        self.bytecode = bytecode

    def constructor(self, *args) -> FakeFunction:
        return FakeFunction(self.chain, None, "constructor", args)


class FakeEth:
    def __init__(self, chain: FakeChain):
        self.chain = chain

    @staticmethod
    async def _value(value):
        return value

    @property
    def chain_id(self):
        return self._value(self.chain.chain_id)

    @property
    def block_number(self):
        if self.chain.auto_advance_blocks:
            self.chain.block_number += 1
        return self._value(self.chain.block_number)

    def contract(self, address: Optional[str] = None, abi=None, bytecode=None):
        if address is None:
            return FakeContractFactory(self.chain, bytecode)
        return FakeContract(self.chain, Web3.to_checksum_address(address))

    async def get_transaction_count(self, address: str, block_identifier: str = "latest") -> int:
        return len(self.chain.transactions)

    async def send_raw_transaction(self, raw_tx: dict) -> bytes:
        return self.chain.send(raw_tx)

    async def wait_for_transaction_receipt(self, tx_hash: str, timeout: float, poll_latency: float):
        if tx_hash not in self.chain.receipts:
            raise TimeExhausted(f"Transaction {tx_hash} is not mined after {timeout} seconds")
        return self.chain.receipts[tx_hash]


class FakeWeb3:
    def __init__(self, chain: FakeChain):
        self.eth = FakeEth(chain)


class FakeSigner(Signer):
    """
    Hands the built transaction over to the fake chain as is.
    """

    def __init__(self, address: str = DEPLOYER_ADDRESS):
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    def sign_transaction(self, tx: dict) -> dict:
        return tx


def write_artifact(artifacts_dir, name: str, bytecode: Optional[str]):
    with open(os.path.join(artifacts_dir, f"{name}.json"), "w") as artifact_file:
        json.dump({"contractName": name, "abi": [], "bytecode": bytecode}, artifact_file)


def write_contracts_file(path, contracts: dict):
    with open(path, "w") as contracts_file:
        json.dump(contracts, contracts_file, indent=4)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def w3(chain: FakeChain) -> FakeWeb3:
    return FakeWeb3(chain)


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def artifacts_dir(tmp_path) -> str:
    path = tmp_path / "artifacts"
    path.mkdir()
    write_artifact(path, BRIDGE_CONTRACT, bytecode=None)
    write_artifact(path, TEST_TOKEN_CONTRACT, bytecode=TOKEN_BYTECODE)
    return str(path)


@pytest.fixture
def contracts_file(tmp_path) -> str:
    path = tmp_path / "root_contracts.json"
    write_contracts_file(path, {ROOT_BRIDGE_ADDRESS: BRIDGE_ADDRESS, ROOT_TEST_CUSTOM_TOKEN: ""})
    return str(path)


@pytest.fixture
def registry(contracts_file: str) -> ContractRegistry:
    return ContractRegistry.load(contracts_file)


@pytest.fixture
def config() -> PreparationConfig:
    return PreparationConfig(
        rpc_url="http://localhost:8545",
        chain_id=CHAIN_ID,
        deployer_secret=DEPLOYER_KEY,
        test_account_secret=TEST_ACCOUNT_KEY,
        multisig_address=MULTISIG_ADDRESS,
    )


@pytest.fixture
def gate() -> ConfirmationGate:
    return ConfirmationGate(input_func=lambda prompt: "")


@pytest_asyncio.fixture
async def context(config, w3, signer, registry, gate, artifacts_dir):
    return await resolve_environment(
        config=config,
        w3=w3,
        deployer=signer,
        registry=registry,
        gate=gate,
        artifacts_dir=artifacts_dir,
        receipt_timeout=1,
        poll_latency=0.01,
    )


@pytest.fixture
def env(monkeypatch):
    """
    A complete environment for the test preparation script.
    """
    values = {
        "ROOT_RPC_URL": "http://localhost:8545",
        "ROOT_CHAIN_ID": str(CHAIN_ID),
        "DEPLOYER_SECRET": DEPLOYER_KEY,
        "TEST_ACCOUNT_SECRET": TEST_ACCOUNT_KEY,
        "PRIVILEGED_ROOT_MULTISIG_ADDR": MULTISIG_ADDRESS,
    }
    for name, value in values.items():
        monkeypatch.setenv(name, value)
    monkeypatch.delenv("DEPLOYER_LEDGER_INDEX", raising=False)
    return values
