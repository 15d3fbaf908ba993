import dataclasses
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, NamedTuple, Optional, Sequence, Tuple

from eth_account import Account
from web3 import AsyncWeb3, Web3

from bridge_bootstrap.contracts import (
    DEFAULT_ARTIFACTS_DIR,
    ContractRegistry,
    deploy_contract,
    get_contract,
    load_contract,
)
from bridge_bootstrap.env import require_address_env, require_env, require_int_env
from bridge_bootstrap.errors import BootstrapError, ConfigurationError
from bridge_bootstrap.signers import (
    LEDGER_SECRET,
    LedgerSigner,
    PrivateKeySigner,
    Signer,
    ledger_derivation_path,
)
from bridge_bootstrap.transactions import (
    DEFAULT_CONFIRMATIONS,
    DEFAULT_POLL_LATENCY,
    DEFAULT_RECEIPT_TIMEOUT,
    ConfirmationGate,
    TransactionIntent,
    TransactionWorkflow,
)

# Hardened BIP32 indices are below 2**31.
MAX_LEDGER_INDEX = 2**31 - 1

# Environment variables.
ROOT_RPC_URL = "ROOT_RPC_URL"
ROOT_CHAIN_ID = "ROOT_CHAIN_ID"
DEPLOYER_SECRET = "DEPLOYER_SECRET"
DEPLOYER_LEDGER_INDEX = "DEPLOYER_LEDGER_INDEX"
TEST_ACCOUNT_SECRET = "TEST_ACCOUNT_SECRET"
PRIVILEGED_ROOT_MULTISIG_ADDR = "PRIVILEGED_ROOT_MULTISIG_ADDR"

# Contract registry keys.
ROOT_BRIDGE_ADDRESS = "ROOT_BRIDGE_ADDRESS"
ROOT_TEST_CUSTOM_TOKEN = "ROOT_TEST_CUSTOM_TOKEN"

BRIDGE_CONTRACT = "RootERC20BridgeFlowRate"
TEST_TOKEN_CONTRACT = "ERC20PresetMinterPauser"
TEST_TOKEN_NAME = "Custom Token"
TEST_TOKEN_SYMBOL = "CTK"

# Amounts with 18 decimals.
MINT_AMOUNT = Web3.to_wei("1000.0", "ether")
RATE_CAPACITY = Web3.to_wei("20016.0", "ether")
RATE_REFILL_RATE = Web3.to_wei("5.56", "ether")
LARGE_TRANSFER_THRESHOLD = Web3.to_wei("10008.0", "ether")

RATE_ROLE = Web3.keccak(text="RATE")

# Step names.
RESOLVE_ENVIRONMENT = "Resolve Environment"
AWAIT_CONFIRMATION = "Await Confirmation"
ENSURE_TOKEN_DEPLOYED = "Ensure Token Deployed"
MINT = "Mint"
SET_RATE_THRESHOLDS = "Set Rate Thresholds"
REVOKE_RATE_ROLE = "Revoke Rate Role"
REVOKE_ADMIN_ROLE = "Revoke Admin Role"
PRINT_SUMMARY = "Print Summary"


def require_ledger_index_env(name: str) -> int:
    index = require_int_env(name)
    if not 0 <= index <= MAX_LEDGER_INDEX:
        raise ConfigurationError(name, f"is out of range [0, {MAX_LEDGER_INDEX}]: {index}")
    return index


@dataclass(frozen=True)
class PreparationConfig:
    rpc_url: str
    chain_id: int
    deployer_secret: str
    test_account_secret: str
    multisig_address: str
    deployer_ledger_index: Optional[int] = None

    @classmethod
    def from_env(cls) -> "PreparationConfig":
        """
        Reads every required variable up front, so that a missing one aborts the run before any
        network activity.
        """
        deployer_secret = require_env(DEPLOYER_SECRET)
        return cls(
            rpc_url=require_env(ROOT_RPC_URL),
            chain_id=require_int_env(ROOT_CHAIN_ID),
            deployer_secret=deployer_secret,
            test_account_secret=require_env(TEST_ACCOUNT_SECRET),
            multisig_address=require_address_env(PRIVILEGED_ROOT_MULTISIG_ADDR),
            deployer_ledger_index=(
                require_ledger_index_env(DEPLOYER_LEDGER_INDEX)
                if deployer_secret == LEDGER_SECRET
                else None
            ),
        )

    def deployer_signer(self) -> Signer:
        """
        Selects the deployer's signer: the literal "ledger" selects the hardware wallet at
        DEPLOYER_LEDGER_INDEX, anything else is treated as a raw private key.
        """
        if self.deployer_secret == LEDGER_SECRET:
            return LedgerSigner(ledger_derivation_path(self.deployer_ledger_index or 0))
        try:
            return PrivateKeySigner(self.deployer_secret)
        except Exception as err:
            raise ConfigurationError(DEPLOYER_SECRET, "is not a valid private key") from err

    def test_account_address(self) -> str:
        try:
            return Account.from_key(self.test_account_secret).address
        except Exception as err:
            raise ConfigurationError(TEST_ACCOUNT_SECRET, "is not a valid private key") from err


@dataclass(frozen=True)
class RoleSummary:
    multisig_has_admin: bool
    deployer_has_admin: bool
    multisig_has_rate_admin: bool
    deployer_has_rate_admin: bool


@dataclass(frozen=True)
class PreparationContext:
    """
    Everything a preparation step may use. Steps never mutate a context, they return an updated
    copy, and the pipeline records which steps have completed.
    """

    config: PreparationConfig
    w3: AsyncWeb3
    workflow: TransactionWorkflow
    gate: ConfirmationGate
    registry: ContractRegistry
    artifacts_dir: str
    deployer_address: str
    test_account_address: str
    bridge: Any
    token: Any = None
    summary: Optional[RoleSummary] = None
    completed: Tuple[str, ...] = ()

    def require_token(self):
        if self.token is None:
            raise BootstrapError("The test token has not been deployed or loaded yet")
        return self.token


class Step(NamedTuple):
    name: str
    run: Callable[[PreparationContext], Awaitable[PreparationContext]]
    requires: Tuple[str, ...] = ()


async def resolve_environment(
    config: PreparationConfig,
    w3: AsyncWeb3,
    deployer: Signer,
    registry: ContractRegistry,
    gate: ConfirmationGate,
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR,
    receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
    poll_latency: float = DEFAULT_POLL_LATENCY,
    confirmations: int = DEFAULT_CONFIRMATIONS,
) -> PreparationContext:
    """
    Connects the configuration to the chain and builds the initial context. Only read only calls
    are made here.
    """
    test_account_address = config.test_account_address()
    node_chain_id = await w3.eth.chain_id
    if node_chain_id != config.chain_id:
        raise ConfigurationError(
            ROOT_CHAIN_ID, f"is {config.chain_id} but the node reports chain id {node_chain_id}"
        )

    bridge = get_contract(
        w3,
        load_contract(BRIDGE_CONTRACT, artifacts_dir),
        registry.require_address(ROOT_BRIDGE_ADDRESS),
    )
    return PreparationContext(
        config=config,
        w3=w3,
        workflow=TransactionWorkflow(
            w3=w3,
            signer=deployer,
            chain_id=config.chain_id,
            receipt_timeout=receipt_timeout,
            poll_latency=poll_latency,
            confirmations=confirmations,
        ),
        gate=gate,
        registry=registry,
        artifacts_dir=artifacts_dir,
        deployer_address=deployer.address,
        test_account_address=test_account_address,
        bridge=bridge,
        completed=(RESOLVE_ENVIRONMENT,),
    )


async def await_confirmation(context: PreparationContext) -> PreparationContext:
    print("Prepare test in...")
    await context.gate.await_confirmation()
    return context


async def ensure_token_deployed(context: PreparationContext) -> PreparationContext:
    artifact = load_contract(TEST_TOKEN_CONTRACT, context.artifacts_dir)
    address = context.registry.get_address(ROOT_TEST_CUSTOM_TOKEN)
    if address is not None:
        print(f"Root test custom token has already been deployed to: {address}, skip.")
        token = get_contract(context.w3, artifact, address)
    else:
        recorded = context.registry.contracts.get(ROOT_TEST_CUSTOM_TOKEN)
        if recorded:
            print(f"Ignoring malformed {ROOT_TEST_CUSTOM_TOKEN} entry: {recorded!r}")
        print("Deploy root test custom token...")
        token = await deploy_contract(
            context.workflow, context.w3, artifact, TEST_TOKEN_NAME, TEST_TOKEN_SYMBOL
        )
        print("Custom token deployed to:", token.address)
        # Persisted right away, so that a failure in a later step does not cause a redeploy.
        context.registry.set_address(ROOT_TEST_CUSTOM_TOKEN, token.address)
    print(f"Deployed to {ROOT_TEST_CUSTOM_TOKEN}:", token.address)
    return dataclasses.replace(context, token=token)


async def mint(context: PreparationContext) -> PreparationContext:
    print("Mint tokens...")
    token = context.require_token()
    await context.workflow.execute(
        TransactionIntent(
            description="mint",
            function=token.functions.mint(context.test_account_address, MINT_AMOUNT),
        )
    )
    return context


async def set_rate_thresholds(context: PreparationContext) -> PreparationContext:
    print("Set rate control...")
    token = context.require_token()
    await context.workflow.execute(
        TransactionIntent(
            description="setRateControlThreshold",
            function=context.bridge.functions.setRateControlThreshold(
                token.address, RATE_CAPACITY, RATE_REFILL_RATE, LARGE_TRANSFER_THRESHOLD
            ),
        )
    )
    return context


async def revoke_rate_role(context: PreparationContext) -> PreparationContext:
    print("Revoke RATE_CONTROL_ROLE of deployer...")
    await context.workflow.execute(
        TransactionIntent(
            description="revokeRole(RATE)",
            function=context.bridge.functions.revokeRole(RATE_ROLE, context.deployer_address),
        )
    )
    return context


async def revoke_admin_role(context: PreparationContext) -> PreparationContext:
    print("Revoke DEFAULT_ADMIN of deployer...")
    admin_role = await context.workflow.call(context.bridge.functions.DEFAULT_ADMIN_ROLE())
    await context.workflow.execute(
        TransactionIntent(
            description="revokeRole(DEFAULT_ADMIN)",
            function=context.bridge.functions.revokeRole(admin_role, context.deployer_address),
        )
    )
    return context


async def print_summary(context: PreparationContext) -> PreparationContext:
    workflow = context.workflow
    functions = context.bridge.functions
    multisig = context.config.multisig_address
    deployer = context.deployer_address
    admin_role = await workflow.call(functions.DEFAULT_ADMIN_ROLE())

    summary = RoleSummary(
        multisig_has_admin=await workflow.call(functions.hasRole(admin_role, multisig)),
        deployer_has_admin=await workflow.call(functions.hasRole(admin_role, deployer)),
        multisig_has_rate_admin=await workflow.call(functions.hasRole(RATE_ROLE, multisig)),
        deployer_has_rate_admin=await workflow.call(functions.hasRole(RATE_ROLE, deployer)),
    )
    print("Does multisig have DEFAULT_ADMIN:", summary.multisig_has_admin)
    print("Does deployer have DEFAULT_ADMIN:", summary.deployer_has_admin)
    print("Does multisig have RATE_ADMIN:", summary.multisig_has_rate_admin)
    print("Does deployer have RATE_ADMIN:", summary.deployer_has_rate_admin)
    return dataclasses.replace(context, summary=summary)


# Each step requires the one before it. In particular the deployer may only lose its roles once
# every action that needs them has been mined.
PREPARATION_STEPS: Tuple[Step, ...] = (
    Step(AWAIT_CONFIRMATION, await_confirmation, requires=(RESOLVE_ENVIRONMENT,)),
    Step(ENSURE_TOKEN_DEPLOYED, ensure_token_deployed, requires=(AWAIT_CONFIRMATION,)),
    Step(MINT, mint, requires=(ENSURE_TOKEN_DEPLOYED,)),
    Step(SET_RATE_THRESHOLDS, set_rate_thresholds, requires=(MINT,)),
    Step(REVOKE_RATE_ROLE, revoke_rate_role, requires=(SET_RATE_THRESHOLDS,)),
    Step(REVOKE_ADMIN_ROLE, revoke_admin_role, requires=(REVOKE_RATE_ROLE,)),
    Step(PRINT_SUMMARY, print_summary, requires=(REVOKE_ADMIN_ROLE,)),
)


async def run_pipeline(
    context: PreparationContext, steps: Sequence[Step] = PREPARATION_STEPS
) -> PreparationContext:
    """
    Runs the steps in order. The first failure stops the run; steps that already completed are
    not rolled back.
    """
    for step in steps:
        if step.name in context.completed:
            raise BootstrapError(f"Step {step.name!r} has already run")
        missing = [name for name in step.requires if name not in context.completed]
        if missing:
            raise BootstrapError(f"Step {step.name!r} requires {', '.join(missing)} to run first")
        context = await step.run(context)
        context = dataclasses.replace(context, completed=context.completed + (step.name,))
    return context
