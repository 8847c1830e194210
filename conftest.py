"""
Shared fixtures: an in-memory ledger that speaks the AsyncClient surface used by the pipeline.
"""

import struct
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from bulkbuy.config import WSOL_MINT, BulkBuySettings
from bulkbuy.solana.context import RunContext
from bulkbuy.solana.dispatcher import TxDispatcher
from bulkbuy.solana.pump_sdk import (
    BUY_DISCRIMINATOR,
    CREATE_DISCRIMINATOR,
    GLOBAL_DISCRIMINATOR,
    PUMP_GLOBAL,
    PUMP_PROGRAM_ID,
    BondingCurveState,
    GlobalState,
    PumpSdk,
    bonding_curve_pda,
)
from bulkbuy.solana.token_program import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    CREATE_IDEMPOTENT_INSTRUCTION,
    TOKEN_PROGRAM_ID,
    TRANSFER_CHECKED_INSTRUCTION,
    derive_ata,
)
from bulkbuy.solana.tx_sealer import PACKET_DATA_SIZE
from bulkbuy.solana.wallet_manager import WalletManager

WSOL = Pubkey.from_string(WSOL_MINT)


class TransactionFailed(Exception):
    pass


def global_account_data(fee_basis_points: int = 95, creator_fee_basis_points: int = 5) -> bytes:
    return (
        GLOBAL_DISCRIMINATOR
        + GlobalState._BASE_STRUCT.build(dict(
            initialized=True,
            authority=bytes(Pubkey.default()),
            fee_recipient=bytes(Pubkey.default()),
            initial_virtual_token_reserves=1_073_000_000_000_000,
            initial_virtual_sol_reserves=30_000_000_000,
            initial_real_token_reserves=793_100_000_000_000,
            token_total_supply=1_000_000_000_000_000,
            fee_basis_points=fee_basis_points,
        ))
        + GlobalState._EXTENDED_STRUCT.build(dict(
            withdraw_authority=bytes(Pubkey.default()),
            enable_migrate=False,
            pool_migration_fee=0,
            creator_fee_basis_points=creator_fee_basis_points,
            fee_recipients=[bytes(Pubkey.default())] * 7,
        ))
    )


def fresh_curve(creator: Pubkey = Pubkey.default()) -> BondingCurveState:
    return BondingCurveState(
        virtual_token_reserves=1_073_000_000_000_000,
        virtual_sol_reserves=30_000_000_000,
        real_token_reserves=793_100_000_000_000,
        real_sol_reserves=0,
        token_total_supply=1_000_000_000_000_000,
        complete=False,
        creator=creator,
    )


class FakeLedger:
    """
    Applies the subset of instructions the pipeline emits.

    A transaction lands once no matter how many endpoints it is sent to.
    Effects are all-or-nothing per transaction.
    """

    def __init__(self):
        self.block_height = 1000
        self.height_step = 0          # block height added per get_block_height call
        self.auto_confirm = True
        self.lamports: Dict[Pubkey, int] = {}
        self.token_accounts: Dict[Pubkey, int] = {}
        self.accounts: Dict[Pubkey, SimpleNamespace] = {}
        self.statuses: Dict[str, SimpleNamespace] = {}
        self.submissions: List[SimpleNamespace] = []
        self.landed: List[VersionedTransaction] = []
        self.buys: List[SimpleNamespace] = []
        self.ata_creations = 0
        self.blockhash_requests = 0
        self.failing_endpoints = set()
        self.error_for: Optional[Callable[[VersionedTransaction], Optional[str]]] = None

    # seeding helpers

    def add_mint(self, mint: Pubkey, owner: Pubkey = TOKEN_PROGRAM_ID):
        self.accounts[mint] = SimpleNamespace(owner=owner, data=b"")

    def add_global(self, data: Optional[bytes] = None):
        self.accounts[PUMP_GLOBAL] = SimpleNamespace(owner=PUMP_PROGRAM_ID, data=data or global_account_data())

    def add_curve(self, mint: Pubkey, curve: Optional[BondingCurveState] = None):
        curve = curve or fresh_curve()
        self.accounts[bonding_curve_pda(mint)] = SimpleNamespace(owner=PUMP_PROGRAM_ID, data=curve.to_bytes())

    def fund_token_account(self, owner: Pubkey, mint: Pubkey, amount: int):
        self.token_accounts[derive_ata(owner, mint)] = amount

    # transaction processing

    def _apply(self, tx: VersionedTransaction):
        message = tx.message
        keys = list(message.account_keys)
        lamports = dict(self.lamports)
        token_accounts = dict(self.token_accounts)
        accounts = dict(self.accounts)
        buys = []
        creations = 0

        for ix in message.instructions:
            program = keys[ix.program_id_index]
            metas = [keys[i] for i in ix.accounts]
            data = bytes(ix.data)

            if program == SYSTEM_PROGRAM_ID and struct.unpack("<I", data[:4])[0] == 2:
                amount = struct.unpack("<Q", data[4:12])[0]
                lamports[metas[0]] = lamports.get(metas[0], 0) - amount
                lamports[metas[1]] = lamports.get(metas[1], 0) + amount

            elif program == ASSOCIATED_TOKEN_PROGRAM_ID:
                ata = metas[1]
                if ata in token_accounts:
                    if data != bytes([CREATE_IDEMPOTENT_INSTRUCTION]):
                        raise TransactionFailed("account already in use")
                else:
                    token_accounts[ata] = 0
                    creations += 1

            elif program == TOKEN_PROGRAM_ID and data[0] == TRANSFER_CHECKED_INSTRUCTION:
                amount = struct.unpack("<Q", data[1:9])[0]
                source, dest = metas[0], metas[2]
                if source not in token_accounts or dest not in token_accounts:
                    raise TransactionFailed("invalid account data")
                if token_accounts[source] < amount:
                    raise TransactionFailed("insufficient funds")
                token_accounts[source] -= amount
                token_accounts[dest] += amount

            elif program == PUMP_PROGRAM_ID and data[:8] == BUY_DISCRIMINATOR:
                amount, max_sol_cost = struct.unpack("<QQ", data[8:24])
                buys.append(SimpleNamespace(user=metas[6], user_ata=metas[5], mint=metas[2], amount=amount, max_sol_cost=max_sol_cost))

            elif program == PUMP_PROGRAM_ID and data[:8] == CREATE_DISCRIMINATOR:
                mint = metas[0]
                accounts[mint] = SimpleNamespace(owner=TOKEN_PROGRAM_ID, data=b"")
                accounts[bonding_curve_pda(mint)] = SimpleNamespace(
                    owner=PUMP_PROGRAM_ID, data=fresh_curve(creator=metas[7]).to_bytes()
                )

        self.lamports = lamports
        self.token_accounts = token_accounts
        self.accounts = accounts
        self.buys.extend(buys)
        self.ata_creations += creations

    def submit(self, endpoint: str, raw: bytes, opts) -> VersionedTransaction:
        if len(raw) > PACKET_DATA_SIZE:
            raise ValueError(f"transaction too large: {len(raw)} bytes")
        tx = VersionedTransaction.from_bytes(raw)
        signature = str(tx.signatures[0])
        self.submissions.append(SimpleNamespace(endpoint=endpoint, signature=signature, tx=tx, opts=opts))

        if signature in self.statuses:
            return tx

        error = self.error_for(tx) if self.error_for else None
        if error is None:
            try:
                self._apply(tx)
                self.landed.append(tx)
            except TransactionFailed as e:
                error = str(e)

        confirmed = TransactionConfirmationStatus.Confirmed if self.auto_confirm else TransactionConfirmationStatus.Processed
        self.statuses[signature] = SimpleNamespace(err=error, confirmation_status=confirmed)
        return tx


class FakeClient:
    """Implements the AsyncClient calls the pipeline makes."""

    def __init__(self, ledger: FakeLedger, endpoint: str):
        self.ledger = ledger
        self.endpoint = endpoint
        self.closed = False

    async def get_latest_blockhash(self, commitment=None):
        self.ledger.blockhash_requests += 1
        return SimpleNamespace(value=SimpleNamespace(
            blockhash=Hash.new_unique(),
            last_valid_block_height=self.ledger.block_height + 150,
        ))

    async def send_raw_transaction(self, txn: bytes, opts=None):
        if self.endpoint in self.ledger.failing_endpoints:
            raise ConnectionError(f"{self.endpoint} unavailable")
        tx = self.ledger.submit(self.endpoint, txn, opts)
        return SimpleNamespace(value=tx.signatures[0])

    async def get_signature_statuses(self, signatures, search_transaction_history=False):
        return SimpleNamespace(value=[self.ledger.statuses.get(str(sig)) for sig in signatures])

    async def get_block_height(self, commitment=None):
        self.ledger.block_height += self.ledger.height_step
        return SimpleNamespace(value=self.ledger.block_height)

    async def get_account_info(self, pubkey, commitment=None, encoding="base64", data_slice=None):
        return SimpleNamespace(value=self.ledger.accounts.get(pubkey))

    async def close(self):
        self.closed = True


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def payer():
    return Keypair()


@pytest.fixture
def mint(ledger):
    mint = Keypair().pubkey()
    ledger.add_mint(mint)
    ledger.add_mint(WSOL)
    ledger.add_global()
    ledger.add_curve(mint)
    return mint


@pytest.fixture
def settings(tmp_path, mint):
    return BulkBuySettings(
        rpc_url="http://primary.test",
        rpc_endpoints=[],
        keypairs_dir=tmp_path / "keypairs",
        key_info_path=tmp_path / "keyInfo.json",
        wallet_mode="auto",
        num_wallets=2,
        token_mint=str(mint),
        send_max_retries=None,
        confirm_timeout_seconds=5,
        confirm_poll_seconds=0,
        unique_memo=False,
        report_dir=tmp_path / "reports",
    )


@pytest.fixture
def make_context(ledger, payer):
    def _make(settings: BulkBuySettings) -> RunContext:
        clients = {url: FakeClient(ledger, url) for url in settings.all_endpoints}
        dispatcher = TxDispatcher(clients, confirm_timeout_seconds=settings.confirm_timeout_seconds, poll_interval_seconds=0)
        return RunContext(
            settings=settings,
            payer=payer,
            clients=clients,
            dispatcher=dispatcher,
            sdk=PumpSdk(dispatcher.primary),
            wallet_manager=WalletManager(settings.keypairs_dir, settings.key_info_path),
        )
    return _make
