"""
Operator Session

Owns the single operator key for the whole process and hands it to the
components that need to sign. Both environment addresses are projections of
the same key. One asyncio lock per environment serializes submissions so the
operator never has two transactions outstanding on the same ledger (the
ledgers order operator transactions by nonce/sequence).
"""

import asyncio
import os
from typing import Dict, Mapping, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_keys import keys
from eth_utils import keccak
from loguru import logger

from .address_translator import Environment, to_environment_a
from .errors import ConfigError


DEFAULT_HD_PATH = "m/44'/60'/0'/0/0"

PRIVATE_KEY_ENV = "FAUCET_PRIVATE_KEY"
MNEMONIC_ENV = "FAUCET_MNEMONIC"
HD_PATH_ENV = "FAUCET_HD_PATH"


class OperatorSession:
    """
    The distributing operator's key and per-environment submission locks

    Features:
    - One secp256k1 key, two address projections
    - Ledger-B transaction signing
    - Ledger-A (eth_secp256k1) sign-doc signing
    - Single outstanding submission per environment
    """

    def __init__(self, account: LocalAccount, bech32_prefix: str):
        """
        Initialize session

        Args:
            account: eth_account local account holding the operator key
            bech32_prefix: Ledger-A human readable prefix
        """
        self._account = account
        self._private_key = keys.PrivateKey(bytes(account.key))
        self.bech32_prefix = bech32_prefix

        self.ledger_b_address: str = account.address
        self.ledger_a_address: str = to_environment_a(account.address, bech32_prefix)

        self._locks: Dict[Environment, asyncio.Lock] = {
            Environment.LEDGER_A: asyncio.Lock(),
            Environment.LEDGER_B: asyncio.Lock(),
        }

        logger.info("Operator session initialized")
        logger.info(f"  Ledger-B address: {self.ledger_b_address}")
        logger.info(f"  Ledger-A address: {self.ledger_a_address}")

    @classmethod
    def from_private_key(cls, private_key: str, bech32_prefix: str) -> 'OperatorSession':
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"{PRIVATE_KEY_ENV} is not a valid secp256k1 private key") from e
        return cls(account, bech32_prefix)

    @classmethod
    def from_mnemonic(
        cls,
        mnemonic: str,
        bech32_prefix: str,
        hd_path: str = DEFAULT_HD_PATH
    ) -> 'OperatorSession':
        Account.enable_unaudited_hdwallet_features()
        try:
            account = Account.from_mnemonic(mnemonic, account_path=hd_path)
        except Exception as e:
            # eth_account raises several different types for bad phrases
            raise ConfigError(f"{MNEMONIC_ENV} could not be used to derive a key: {type(e).__name__}") from e
        return cls(account, bech32_prefix)

    @classmethod
    def from_env(
        cls,
        bech32_prefix: str,
        environ: Optional[Mapping[str, str]] = None
    ) -> 'OperatorSession':
        """
        Load the operator key from the process environment

        FAUCET_PRIVATE_KEY takes precedence over FAUCET_MNEMONIC.
        """
        environ = os.environ if environ is None else environ

        private_key = environ.get(PRIVATE_KEY_ENV)
        if private_key:
            return cls.from_private_key(private_key, bech32_prefix)

        mnemonic = environ.get(MNEMONIC_ENV)
        if mnemonic:
            hd_path = environ.get(HD_PATH_ENV, DEFAULT_HD_PATH)
            return cls.from_mnemonic(mnemonic, bech32_prefix, hd_path)

        raise ConfigError(f"Operator key not configured: set {PRIVATE_KEY_ENV} or {MNEMONIC_ENV}")

    @property
    def normalized(self) -> str:
        return self.ledger_b_address.lower()

    @property
    def public_key_compressed(self) -> bytes:
        return self._private_key.public_key.to_compressed_bytes()

    def address_for(self, environment: Environment) -> str:
        if environment == Environment.LEDGER_A:
            return self.ledger_a_address
        return self.ledger_b_address

    def lock_for(self, environment: Environment) -> asyncio.Lock:
        """Submission lock for an environment"""
        return self._locks[environment]

    def sign_ledger_b_transaction(self, transaction: Dict) -> bytes:
        """Sign a Ledger-B transaction dict and return the raw bytes"""
        signed = self._account.sign_transaction(transaction)
        return bytes(signed.raw_transaction)

    def sign_ledger_a_doc(self, sign_doc_bytes: bytes) -> bytes:
        """
        Sign Ledger-A SignDoc bytes with eth_secp256k1 semantics

        keccak256 over the serialized SignDoc, 64-byte r||s signature.
        """
        signature = self._private_key.sign_msg_hash(keccak(sign_doc_bytes))
        return signature.r.to_bytes(32, 'big') + signature.s.to_bytes(32, 'big')

    def __repr__(self):
        return f"OperatorSession({self.ledger_b_address} / {self.ledger_a_address})"
