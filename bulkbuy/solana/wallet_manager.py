"""
Wallet management for Solana.

The keystore is a directory of keypair{N}.json files, each holding a 64-byte
secret key as a JSON array of integers, plus a keyInfo.json summary record.
"""

import json
import math
import re
from pathlib import Path
from typing import Any, Dict, List

import base58
from loguru import logger
from solana.constants import LAMPORTS_PER_SOL
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from bulkbuy.config import WalletMode
from bulkbuy.solana.batching import OperationSkipped
from bulkbuy.solana.models import WalletInfo


class KeystoreError(Exception):
    """Raised when the keystore cannot be read or written."""
    pass


class MissingWalletInfoError(OperationSkipped):
    """Raised when a wallet has no entry in the key info record."""
    pass


class WalletManager:
    """
    Manages the pool of wallets used by the pipeline: creation, persistence and loading.
    """

    KEYPAIR_PATTERN = re.compile(r"^keypair(\d+)\.json$")

    def __init__(self, keypairs_dir: Path, key_info_path: Path):
        """
        Initialize the wallet manager.

        Args:
            keypairs_dir: Directory holding keypair{N}.json files
            key_info_path: Path of the keyInfo.json summary record
        """
        self.keypairs_dir = Path(keypairs_dir)
        self.key_info_path = Path(key_info_path)
        logger.info(f"WalletManager initialized with keystore {self.keypairs_dir}")

    def _indexed_files(self) -> List[tuple]:
        if not self.keypairs_dir.is_dir():
            return []
        indexed = []
        for path in self.keypairs_dir.iterdir():
            match = self.KEYPAIR_PATTERN.match(path.name)
            if match:
                indexed.append((int(match.group(1)), path))
        return sorted(indexed)

    def has_keystore(self) -> bool:
        return bool(self._indexed_files())

    def generate_wallets(self, count: int) -> List[Keypair]:
        """Generate count fresh keypairs."""
        if count < 1:
            raise ValueError("count must be at least 1")
        return [Keypair() for _ in range(count)]

    def save_keypair(self, keypair: Keypair, index: int) -> Path:
        """
        Persist one keypair as keypair{index}.json.

        Args:
            keypair: Keypair to save
            index: 1-based position in the pool

        Returns:
            Path of the written file
        """
        self.keypairs_dir.mkdir(parents=True, exist_ok=True)
        path = self.keypairs_dir / f"keypair{index}.json"
        path.write_text(json.dumps(list(bytes(keypair))))
        return path

    def create_wallets(self, count: int) -> List[Keypair]:
        """
        Generate and persist a new pool of count wallets.

        Existing keypair{1..count}.json files are overwritten.
        """
        logger.warning("Creating new wallets: any SOL left in overwritten keystore wallets will be lost")

        wallets = self.generate_wallets(count)
        for index, wallet in enumerate(wallets, start=1):
            self.save_keypair(wallet, index)
            logger.info(f"Wallet {index} Public Key: {wallet.pubkey()}")

        stale = [path.name for index, path in self._indexed_files() if index > count]
        if stale:
            logger.warning(
                f"Keystore still holds {len(stale)} keypair files from an earlier pool",
                extra={"files": stale}
            )

        self.update_key_info(wallets)
        logger.info(f"{len(wallets)} wallets have been created")
        return wallets

    def load_keypairs(self) -> List[Keypair]:
        """
        Load every keypair{N}.json from the keystore, ordered by N.

        Raises:
            KeystoreError: If the directory is missing or a key file is unreadable
        """
        if not self.keypairs_dir.is_dir():
            raise KeystoreError(f"Keystore directory {self.keypairs_dir} not found")

        keypairs = []
        for index, path in self._indexed_files():
            try:
                secret = json.loads(path.read_text())
                keypairs.append(Keypair.from_bytes(bytes(secret)))
            except (OSError, ValueError, TypeError) as e:
                raise KeystoreError(f"Cannot read keypair file {path.name}: {type(e).__name__}") from e
            logger.debug(f"Read Wallet {index} Public Key: {keypairs[-1].pubkey()}")

        return keypairs

    def read_key_info(self) -> Dict[str, Any]:
        """Read the key info record, or an empty record if there is none."""
        if not self.key_info_path.exists():
            return {}
        try:
            return json.loads(self.key_info_path.read_text())
        except (OSError, ValueError) as e:
            raise KeystoreError(f"Cannot read key info file {self.key_info_path}: {str(e)}") from e

    def update_key_info(self, wallets: List[Keypair]) -> Dict[str, Any]:
        """
        Record the pool size and public keys, keeping any per-wallet entries already present.
        """
        info = self.read_key_info()
        info["numOfWallets"] = len(wallets)
        for index, wallet in enumerate(wallets, start=1):
            info[f"pubkey{index}"] = str(wallet.pubkey())

        self.key_info_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_info_path.write_text(json.dumps(info, indent=2))
        return info

    def ensure_wallets(self, mode: WalletMode, count: int) -> List[Keypair]:
        """
        Return the wallet pool for this run.

        Args:
            mode: create a fresh pool, use the existing one, or auto (use if present)
            count: Pool size when wallets are created

        Raises:
            KeystoreError: In use mode, if the keystore is missing or empty
        """
        mode = WalletMode(mode)
        if mode == WalletMode.CREATE or (mode == WalletMode.AUTO and not self.has_keystore()):
            return self.create_wallets(count)

        wallets = self.load_keypairs()
        if not wallets:
            raise KeystoreError(f"No keypair files found in {self.keypairs_dir}")

        self.update_key_info(wallets)
        logger.info(f"{len(wallets)} wallets have been loaded")
        return wallets

    def get_buy_lamports(self, wallet: Pubkey, key_info: Dict[str, Any]) -> int:
        """
        Per-wallet buy amount from the key info record.

        Raises:
            MissingWalletInfoError: If the wallet has no usable solAmount entry
        """
        entry = key_info.get(str(wallet))
        if not isinstance(entry, dict) or "solAmount" not in entry:
            raise MissingWalletInfoError(f"No info for {wallet}")

        value = entry["solAmount"]
        try:
            sol = float(value)
        except (TypeError, ValueError):
            raise MissingWalletInfoError(f"solAmount for {wallet} is not a number: {value!r}") from None
        if isinstance(value, bool) or not math.isfinite(sol) or sol < 0:
            raise MissingWalletInfoError(f"solAmount for {wallet} must be a finite non-negative number, got {value!r}")
        return int(round(sol * LAMPORTS_PER_SOL))

    def wallet_infos(self, wallets: List[Keypair]) -> List[WalletInfo]:
        """Describe the pool for reporting; secrets stay masked."""
        key_info = self.read_key_info()
        infos = []
        for index, wallet in enumerate(wallets, start=1):
            try:
                buy_lamports = self.get_buy_lamports(wallet.pubkey(), key_info)
            except MissingWalletInfoError:
                buy_lamports = None
            infos.append(WalletInfo(index=index, address=str(wallet.pubkey()), buy_lamports=buy_lamports))
        return infos

    @staticmethod
    def load_fee_payer(secret: str) -> Keypair:
        """
        Reconstruct the fee payer from a base58 string or a JSON byte array.

        Raises:
            KeystoreError: If the secret cannot be decoded; the secret itself is never included
        """
        secret = secret.strip()
        try:
            if secret.startswith("["):
                return Keypair.from_bytes(bytes(json.loads(secret)))
            return Keypair.from_bytes(base58.b58decode(secret))
        except (ValueError, TypeError) as e:
            logger.error("Invalid fee payer private key format")
            raise KeystoreError("Invalid fee payer private key format. Must be base58 or a JSON byte array.") from e
