"""
Run context: the settings, clients and signing identity shared by one pipeline run.
"""

from dataclasses import dataclass
from typing import Dict

from loguru import logger
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.keypair import Keypair

from bulkbuy.config import BulkBuySettings, ConfigError
from bulkbuy.solana.dispatcher import TxDispatcher
from bulkbuy.solana.pump_sdk import PumpSdk
from bulkbuy.solana.wallet_manager import WalletManager


@dataclass
class RunContext:
    """Everything a pipeline stage needs, passed explicitly instead of living in globals."""
    settings: BulkBuySettings
    payer: Keypair
    clients: Dict[str, AsyncClient]
    dispatcher: TxDispatcher
    sdk: PumpSdk
    wallet_manager: WalletManager

    @property
    def client(self) -> AsyncClient:
        """Primary endpoint client, used for reads and confirmations."""
        return self.dispatcher.primary

    @classmethod
    def from_settings(cls, settings: BulkBuySettings) -> "RunContext":
        """
        Build clients and load the fee payer from settings.

        Raises:
            ConfigError: If no fee payer key is configured
        """
        if settings.fee_payer_private_key is None:
            raise ConfigError("No fee payer private key configured")

        payer = WalletManager.load_fee_payer(settings.fee_payer_private_key.get_secret_value())
        clients = {url: AsyncClient(url, commitment=Confirmed) for url in settings.all_endpoints}
        dispatcher = TxDispatcher(
            clients,
            commitment=Confirmed,
            confirm_timeout_seconds=settings.confirm_timeout_seconds,
            poll_interval_seconds=settings.confirm_poll_seconds,
        )

        logger.info(f"Fee payer: {payer.pubkey()}")
        return cls(
            settings=settings,
            payer=payer,
            clients=clients,
            dispatcher=dispatcher,
            sdk=PumpSdk(dispatcher.primary),
            wallet_manager=WalletManager(settings.keypairs_dir, settings.key_info_path),
        )

    async def close(self):
        for url, client in self.clients.items():
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing client for {url}: {str(e)}")
