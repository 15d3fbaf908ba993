import json
import os
from typing import Optional

from web3 import AsyncWeb3, Web3
from web3.contract import AsyncContract

from bridge_bootstrap.errors import BootstrapError, ConfigurationError
from bridge_bootstrap.transactions import TransactionIntent, TransactionWorkflow

DEFAULT_ARTIFACTS_DIR = "artifacts"
DEFAULT_CONTRACTS_FILE = os.path.join("out", "root_contracts.json")


def load_contract(name: str, artifacts_dir: str = DEFAULT_ARTIFACTS_DIR) -> dict:
    """
    Loads a contract json (contractName, abi, bytecode) from the artifacts directory.
    Foundry style artifacts, where the bytecode is nested under "object", are accepted as well.
    """
    path = os.path.join(artifacts_dir, f"{name}.json")
    if not os.path.isfile(path):
        raise ConfigurationError(path, "does not exist")
    with open(path) as artifact_file:
        artifact = json.load(artifact_file)
    bytecode = artifact.get("bytecode")
    if isinstance(bytecode, dict):
        bytecode = bytecode.get("object")
    return {
        "contractName": artifact.get("contractName", name),
        "abi": artifact["abi"],
        "bytecode": bytecode,
    }


def get_contract(w3: AsyncWeb3, artifact: dict, address: str) -> AsyncContract:
    return w3.eth.contract(address=Web3.to_checksum_address(address), abi=artifact["abi"])


async def deploy_contract(
    workflow: TransactionWorkflow, w3: AsyncWeb3, artifact: dict, *constructor_args
) -> AsyncContract:
    """
    Deploys a contract from its artifact and waits for the deployment to be mined.
    """
    # We cannot deploy an empty bytecode (pure virtual contracts have one).
    if not artifact["bytecode"]:
        raise BootstrapError(f"{artifact['contractName']} has no bytecode to deploy")
    factory = w3.eth.contract(abi=artifact["abi"], bytecode=artifact["bytecode"])
    receipt = await workflow.execute(
        TransactionIntent(
            description=f"{artifact['contractName']} deployment",
            function=factory.constructor(*constructor_args),
        )
    )
    return get_contract(w3, artifact, receipt["contractAddress"])


class ContractRegistry:
    """
    Addresses of deployed contracts, keyed by logical name (e.g. ROOT_BRIDGE_ADDRESS) and kept in
    a json file so that reruns of the bootstrap scripts reuse earlier deployments.
    """

    def __init__(self, path: str, contracts: dict):
        self.path = path
        self.contracts = contracts

    @classmethod
    def load(cls, path: str = DEFAULT_CONTRACTS_FILE) -> "ContractRegistry":
        if not os.path.isfile(path):
            raise ConfigurationError(path, "does not exist")
        with open(path) as contracts_file:
            try:
                contracts = json.load(contracts_file)
            except json.JSONDecodeError as err:
                raise ConfigurationError(path, f"is not valid json: {err}") from err
        if not isinstance(contracts, dict):
            raise ConfigurationError(path, "does not hold a json object")
        return cls(path=path, contracts=contracts)

    def save(self):
        with open(self.path, "w") as contracts_file:
            json.dump(self.contracts, contracts_file, indent=4)

    def get_address(self, name: str) -> Optional[str]:
        """
        Returns the recorded address, or None if the entry is missing, empty or malformed.
        """
        value = self.contracts.get(name)
        if not isinstance(value, str) or not Web3.is_address(value.strip()):
            return None
        return Web3.to_checksum_address(value.strip())

    def require_address(self, name: str) -> str:
        address = self.get_address(name)
        if address is None:
            raise ConfigurationError(name, f"has no valid address in {self.path}")
        return address

    def set_address(self, name: str, address: str):
        self.contracts[name] = Web3.to_checksum_address(address)
        self.save()
