"""
Ledger primitives: keys, scripts, transactions, BEEF and merkle paths.
"""

from .interfaces import LedgerCrypto, WalletHandle, WalletProvider
from .merkle import MerklePath, PathLeaf, build_merkle_path_from_tsc
from .secp256k1 import Secp256k1Ledger
from .transaction import Beef, Transaction, TxInput, TxOutput

__all__ = [
    "LedgerCrypto",
    "WalletHandle",
    "WalletProvider",
    "MerklePath",
    "PathLeaf",
    "build_merkle_path_from_tsc",
    "Secp256k1Ledger",
    "Beef",
    "Transaction",
    "TxInput",
    "TxOutput",
]
