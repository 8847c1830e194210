"""
Bulk buy pipeline.

Runs the fixed stage order: wallets, associated token accounts for the token
and for wrapped SOL, SOL funding, WSOL funding, then the buys. Stages run
strictly one after another; a stage starts only once the previous one has
returned. Nothing is rolled back or checkpointed.
"""

import math
import time
import uuid
from typing import List, Optional

from loguru import logger
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from bulkbuy.config import WSOL_DECIMALS, WSOL_MINT, BuyAmountPolicy
from bulkbuy.solana.batching import BatchPolicy, accumulate_batches, batch_operations, build_operations
from bulkbuy.solana.context import RunContext
from bulkbuy.solana.models import Batch, Operation, PipelineSummary, StageResult, TxStatus
from bulkbuy.solana.pump_sdk import quote_buy
from bulkbuy.solana.token_program import (
    TOKEN_PROGRAM_ID,
    compute_budget_prefix,
    create_ata_instruction,
    get_mint_token_program,
    memo_instruction,
    sol_transfer_instruction,
    token_transfer_instruction,
)

WSOL = Pubkey.from_string(WSOL_MINT)


class StageFailedError(Exception):
    """Raised when a stage that later stages depend on did not confirm."""
    pass


class BulkBuyPipeline:
    """
    Drives the bulk buy stages against one RunContext.
    """

    def __init__(self, context: RunContext):
        """
        Initialize the pipeline.

        Args:
            context: Settings, clients and fee payer for this run
        """
        self.context = context
        self.settings = context.settings
        self.payer: Keypair = context.payer
        self.wallets: List[Keypair] = []
        self.summary = PipelineSummary()
        logger.info(f"BulkBuyPipeline initialized, fee payer {self.payer.pubkey()}")

    def _policy(self, max_operations: int, prefix=None, **kwargs) -> BatchPolicy:
        return BatchPolicy(
            max_operations=max_operations,
            prefix_instructions=prefix or [],
            max_retries=self.settings.send_max_retries,
            **kwargs
        )

    async def _dispatch_stage(self, name: str, batches: List[Batch], policy: BatchPolicy, skipped: Optional[List[str]] = None) -> StageResult:
        stage = StageResult(name=name, skipped_wallets=list(skipped or []))
        logger.info(f"Stage {name}: {sum(len(b) for b in batches)} operations in {len(batches)} transactions")

        stage.results = await self.context.dispatcher.dispatch(batches, self.payer, policy)
        stage.transactions = len(batches)
        stage.end_time = time.time()

        logger.info(
            f"Stage {name} finished: {stage.success_count} succeeded, {stage.failure_count} failed",
            extra={"stage": name, "success": stage.success_count, "failed": stage.failure_count, "duration": stage.duration}
        )
        self.summary.stages.append(stage)
        return stage

    def prepare_wallets(self) -> List[Keypair]:
        """Create or load the wallet pool according to the configured wallet mode."""
        manager = self.context.wallet_manager
        self.wallets = manager.ensure_wallets(self.settings.wallet_mode, self.settings.num_wallets)
        self.summary.wallets = manager.wallet_infos(self.wallets)
        return self.wallets

    async def create_pump_token(self) -> Pubkey:
        """
        Launch a fresh token on a new bonding curve, for test runs without a configured mint.

        Raises:
            StageFailedError: If the create transaction does not confirm
        """
        mint_keypair = Keypair()
        instruction = self.context.sdk.create_instruction(
            mint=mint_keypair.pubkey(),
            user=self.payer.pubkey(),
            name=self.settings.launch_token_name,
            symbol=self.settings.launch_token_symbol,
            uri=self.settings.launch_token_uri,
            creator=self.payer.pubkey(),
        )
        operation = Operation(wallet=str(self.payer.pubkey()), instructions=[instruction], signers=[mint_keypair])
        policy = self._policy(1, confirm=True)

        stage = await self._dispatch_stage("create_token", batch_operations([operation], policy), policy)
        if not stage.results or stage.results[0].status != TxStatus.CONFIRMED:
            raise StageFailedError(f"Token launch for {mint_keypair.pubkey()} did not confirm")

        logger.info(f"Created token: {mint_keypair.pubkey()}")
        return mint_keypair.pubkey()

    async def resolve_mint(self) -> Pubkey:
        """Configured TOKEN_MINT, or a freshly launched test token when none is set."""
        if self.settings.token_mint:
            mint = Pubkey.from_string(self.settings.token_mint)
        else:
            logger.warning("No TOKEN_MINT configured, launching a test token")
            mint = await self.create_pump_token()
        self.summary.mint = str(mint)
        return mint

    async def create_atas(self, mint: Pubkey, name: Optional[str] = None) -> StageResult:
        """
        Create every wallet's associated token account for mint, paid by the fee payer.

        Creation is idempotent, so re-running this stage is safe. Transactions
        are sent one at a time and each must confirm.

        Raises:
            StageFailedError: If any account-creation transaction did not confirm
        """
        if mint == WSOL:
            token_program_id = TOKEN_PROGRAM_ID
        else:
            token_program_id = await get_mint_token_program(self.context.client, mint)
        payer_key = self.payer.pubkey()

        def build(wallet: Keypair) -> Operation:
            return Operation(
                wallet=str(wallet.pubkey()),
                instructions=[create_ata_instruction(payer_key, wallet.pubkey(), mint, token_program_id)],
            )

        policy = self._policy(
            self.settings.ata_batch_size,
            prefix=compute_budget_prefix(self.settings.ata_compute_units, self.settings.priority_fee_microlamports),
            confirm=True,
        )
        batches = accumulate_batches(self.wallets, build, policy)
        stage = await self._dispatch_stage(name or f"create_atas:{mint}", batches, policy)

        failed = [r for r in stage.results if r.status != TxStatus.CONFIRMED]
        if failed:
            raise StageFailedError(
                f"{len(failed)} of {len(stage.results)} account-creation transactions for {mint} did not confirm"
            )
        return stage

    async def fund_wallets(self, lamports: Optional[int] = None) -> StageResult:
        """
        Send native SOL from the fee payer to every wallet.

        Not idempotent: every run transfers again.
        """
        lamports = self.settings.fund_lamports if lamports is None else lamports
        adjusted = math.floor(lamports * (1 + self.settings.fund_buffer_percent / 100))
        payer_key = self.payer.pubkey()

        def build(wallet: Keypair) -> Operation:
            return Operation(
                wallet=str(wallet.pubkey()),
                instructions=[sol_transfer_instruction(payer_key, wallet.pubkey(), adjusted)],
                amount=adjusted,
            )

        policy = self._policy(self.settings.transfer_batch_size)
        return await self._dispatch_stage("fund_wallets", accumulate_batches(self.wallets, build, policy), policy)

    async def fund_with_wsol(self, amount: Optional[int] = None) -> StageResult:
        """
        Transfer wrapped SOL from the fee payer's WSOL account to every wallet's WSOL account.

        Not idempotent: every run transfers again.
        """
        amount = self.settings.fund_wsol_amount if amount is None else amount
        payer_key = self.payer.pubkey()

        def build(wallet: Keypair) -> Operation:
            return Operation(
                wallet=str(wallet.pubkey()),
                instructions=[token_transfer_instruction(payer_key, wallet.pubkey(), WSOL, amount, WSOL_DECIMALS)],
                amount=amount,
            )

        policy = self._policy(self.settings.transfer_batch_size)
        return await self._dispatch_stage("fund_with_wsol", accumulate_batches(self.wallets, build, policy), policy)

    async def buy_token(self, mint: Pubkey, lamports: Optional[int] = None) -> StageResult:
        """
        Buy mint from every wallet, several wallets per transaction.

        All transactions share one blockhash. The curve is read once and each
        quote is projected forward locally, so later wallets in the run are
        quoted against the reserves left by earlier ones. Wallets whose buy
        cannot be built are skipped and reported. Not idempotent.
        """
        flat_lamports = self.settings.buy_lamports if lamports is None else lamports
        sdk = self.context.sdk
        global_state = await sdk.fetch_global()
        curve = await sdk.fetch_bonding_curve(mint)
        token_program_id = await get_mint_token_program(self.context.client, mint)

        per_wallet = self.settings.buy_amount_policy == BuyAmountPolicy.PER_WALLET
        key_info = self.context.wallet_manager.read_key_info() if per_wallet else {}

        async def build(wallet: Keypair) -> Operation:
            nonlocal curve
            user = wallet.pubkey()
            if per_wallet:
                sol_amount = self.context.wallet_manager.get_buy_lamports(user, key_info)
            else:
                sol_amount = flat_lamports

            tokens, projected = quote_buy(global_state, curve, sol_amount)
            if tokens == 0:
                raise ValueError(f"Buy of {sol_amount} lamports quotes zero tokens")

            instructions = sdk.buy_instructions(
                global_state=global_state,
                curve=curve,
                mint=mint,
                user=user,
                amount=tokens,
                sol_amount=sol_amount,
                slippage_percent=self.settings.buy_slippage_percent,
                token_program_id=token_program_id,
            )
            curve = projected
            return Operation(wallet=str(user), instructions=instructions, signers=[wallet], amount=sol_amount)

        operations, skipped = await build_operations(self.wallets, build, describe=lambda kp: str(kp.pubkey()))

        policy = self._policy(
            self.settings.buy_batch_size,
            prefix=compute_budget_prefix(self.settings.buy_compute_units, self.settings.priority_fee_microlamports),
            share_blockhash=True,
        )
        batches = batch_operations(operations, policy)

        if self.settings.unique_memo:
            # Per-transaction memo keeps otherwise identical payloads distinct
            for batch in batches:
                batch.instructions.append(memo_instruction(self.payer.pubkey(), f"bulkbuy-{uuid.uuid4().hex}"))

        return await self._dispatch_stage("buy_token", batches, policy, skipped=skipped)

    async def run(self) -> PipelineSummary:
        """
        Run every stage in order and return the summary.

        Exceptions other than per-wallet build failures propagate and end the run.
        """
        self.summary = PipelineSummary()
        logger.info("Starting bulk buy pipeline")

        self.prepare_wallets()
        mint = await self.resolve_mint()

        await self.create_atas(mint, name="create_token_atas")
        logger.info("Created token accounts for all wallets")
        await self.create_atas(WSOL, name="create_wsol_atas")
        logger.info("Created wsol token accounts for all wallets")

        await self.fund_wallets()
        logger.info("Wallets funded with sol")
        await self.fund_with_wsol()
        logger.info("Wallets funded with wsol")

        await self.buy_token(mint)

        self.summary.end_time = time.time()
        logger.info(f"Bulk buy pipeline finished in {self.summary.duration:.2f}s")
        return self.summary
