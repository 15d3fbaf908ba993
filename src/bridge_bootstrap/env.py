import os
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from web3 import Web3

from bridge_bootstrap.errors import ConfigurationError


def load_env(env_file: Optional[str] = None) -> None:
    """
    Loads variables from a .env file into the process environment. Variables that are already set
    take precedence over the file.
    """
    if env_file is not None:
        if not os.path.isfile(env_file):
            raise ConfigurationError(env_file, "does not exist")
        load_dotenv(dotenv_path=env_file)
    else:
        load_dotenv(find_dotenv(usecwd=True))


def require_env(name: str) -> str:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        raise ConfigurationError(name)
    return value.strip()


def require_int_env(name: str) -> int:
    value = require_env(name)
    try:
        return int(value, 0)
    except ValueError:
        raise ConfigurationError(name, f"is not an integer: {value!r}")


def require_address_env(name: str) -> str:
    value = require_env(name)
    if not Web3.is_address(value):
        raise ConfigurationError(name, f"is not a valid address: {value!r}")
    return Web3.to_checksum_address(value)
