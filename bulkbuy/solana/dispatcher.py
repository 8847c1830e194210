"""
Submission of sealed transactions to one or more RPC endpoints.

Two policies are supported:

- fire-and-forget: every transaction goes to every endpoint concurrently and
  only the endpoint's answer is recorded; on-chain finality stays unknown.
- sequential-confirmed: one transaction at a time on the primary endpoint,
  each polled until confirmed, rejected or expired before the next is sent.
"""

import asyncio
import time
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed, Finalized
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction_status import TransactionConfirmationStatus

from bulkbuy.solana.batching import BatchPolicy
from bulkbuy.solana.models import Batch, SealedTransaction, SubmissionResult, TxStatus
from bulkbuy.solana.tx_sealer import seal_batch


class TxDispatcher:
    """
    Seals batches against a freshness token and sends them.
    """

    # Default confirmation timeout in seconds
    CONFIRMATION_TIMEOUT = 60
    # Delay between status polls in seconds
    POLL_INTERVAL = 1.0

    def __init__(
        self,
        clients: Dict[str, AsyncClient],
        commitment: Commitment = Confirmed,
        confirm_timeout_seconds: float = CONFIRMATION_TIMEOUT,
        poll_interval_seconds: float = POLL_INTERVAL,
    ):
        """
        Initialize the dispatcher.

        Args:
            clients: Endpoint URL -> client, primary endpoint first
            commitment: Commitment level that counts as confirmed
            confirm_timeout_seconds: Upper bound on polling one transaction
            poll_interval_seconds: Delay between status polls
        """
        if not clients:
            raise ValueError("At least one endpoint is required")
        self.clients = dict(clients)
        self.primary_endpoint, self.primary = next(iter(self.clients.items()))
        self.commitment = commitment
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

        if commitment == Finalized:
            self._terminal = (TransactionConfirmationStatus.Finalized,)
        else:
            self._terminal = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)

        logger.info(f"TxDispatcher initialized with {len(self.clients)} endpoint(s), primary {self.primary_endpoint}")

    async def fetch_blockhash(self) -> Tuple[Hash, int]:
        """Fetch a recent blockhash and its last valid block height from the primary endpoint."""
        resp = await self.primary.get_latest_blockhash(self.commitment)
        return resp.value.blockhash, resp.value.last_valid_block_height

    async def prepare(self, batches: Sequence[Batch], payer: Keypair, policy: BatchPolicy) -> List[SealedTransaction]:
        """
        Seal every batch.

        With policy.share_blockhash one blockhash is fetched for the whole
        invocation; otherwise a fresh one is fetched per batch.
        """
        sealed = []
        shared: Optional[Tuple[Hash, int]] = None
        if policy.share_blockhash and batches:
            shared = await self.fetch_blockhash()
            logger.info(f"Reusing blockhash {shared[0]} for {len(batches)} transactions")

        for batch in batches:
            blockhash, last_valid = shared if shared else await self.fetch_blockhash()
            sealed.append(seal_batch(batch, payer, blockhash, last_valid))

        return sealed

    def _tx_opts(self, policy: BatchPolicy) -> TxOpts:
        return TxOpts(
            skip_preflight=policy.skip_preflight,
            preflight_commitment=self.commitment,
            max_retries=policy.max_retries,
        )

    async def _send_one(
        self,
        endpoint: str,
        client: AsyncClient,
        sealed: SealedTransaction,
        opts: TxOpts,
    ) -> SubmissionResult:
        """Send one transaction to one endpoint; failures become a rejected record."""
        result = SubmissionResult(
            batch_index=sealed.batch.index,
            endpoint=endpoint,
            status=TxStatus.BUILT,
            wallets=sealed.batch.wallets,
        )
        try:
            resp = await client.send_raw_transaction(bytes(sealed.transaction), opts=opts)
            result.signature = str(resp.value)
            result.status = TxStatus.ACCEPTED
        except Exception as e:
            result.status = TxStatus.REJECTED
            result.error = f"{type(e).__name__}: {str(e)}"
            logger.bind(batch_index=sealed.batch.index, endpoint=endpoint).warning(
                f"Transaction for batch {sealed.batch.index} rejected by {endpoint}: {result.error}"
            )
        return result

    async def send_fire_and_forget(self, sealed: Sequence[SealedTransaction], policy: BatchPolicy) -> List[SubmissionResult]:
        """
        Send every transaction to every endpoint concurrently without waiting for confirmation.

        Returns:
            Exactly len(sealed) * len(endpoints) results, transaction-major order
        """
        opts = self._tx_opts(policy)
        pairs = [(tx, endpoint, client) for tx in sealed for endpoint, client in self.clients.items()]
        settled = await asyncio.gather(
            *(self._send_one(endpoint, client, tx, opts) for tx, endpoint, client in pairs),
            return_exceptions=True,
        )

        results = []
        for (tx, endpoint, _), outcome in zip(pairs, settled):
            if isinstance(outcome, BaseException):
                # _send_one records its own failures; this only covers cancellation
                outcome = SubmissionResult(
                    batch_index=tx.batch.index,
                    endpoint=endpoint,
                    status=TxStatus.REJECTED,
                    error=f"{type(outcome).__name__}: {str(outcome)}",
                    wallets=tx.batch.wallets,
                )
            results.append(outcome)
            if outcome.success:
                logger.info(f"Sent tx: {outcome.signature} via {endpoint}")

        return results

    async def wait_for_confirmation(self, sealed: SealedTransaction, client: Optional[AsyncClient] = None) -> Tuple[TxStatus, Optional[str]]:
        """
        Poll until the transaction is confirmed, fails, or its blockhash expires.

        Returns:
            Tuple of (terminal status, error message or None)
        """
        client = client or self.primary
        signature = sealed.transaction.signatures[0]
        start_time = time.time()

        while True:
            try:
                resp = await client.get_signature_statuses([signature])
                status = resp.value[0]
                if status is not None:
                    if status.err is not None:
                        return TxStatus.REJECTED, str(status.err)
                    if status.confirmation_status in self._terminal:
                        return TxStatus.CONFIRMED, None

                height = (await client.get_block_height(self.commitment)).value
                if height > sealed.last_valid_block_height:
                    return TxStatus.EXPIRED, f"blockhash expired at block height {height}"

            except Exception as e:
                logger.error(f"Error checking transaction status for {signature}: {str(e)}")

            if time.time() - start_time >= self.confirm_timeout_seconds:
                logger.warning(f"Transaction confirmation timeout for {signature}")
                return TxStatus.EXPIRED, "confirmation timeout"

            await asyncio.sleep(self.poll_interval_seconds)

    async def send_sequential_confirmed(self, sealed: Sequence[SealedTransaction], policy: BatchPolicy) -> List[SubmissionResult]:
        """
        Send transactions one at a time on the primary endpoint, waiting for each to settle.

        A transaction that is rejected or expires is recorded and not retried;
        the next transaction is still sent.
        """
        opts = self._tx_opts(policy)
        results = []

        for tx in sealed:
            result = await self._send_one(self.primary_endpoint, self.primary, tx, opts)
            if result.status == TxStatus.ACCEPTED:
                result.status = TxStatus.SUBMITTED
                logger.info(f"Sent: {result.signature}")

                status, error = await self.wait_for_confirmation(tx)
                result.status = status
                result.error = error

                if status == TxStatus.CONFIRMED:
                    logger.info(f"Confirmed: {result.signature}")
                else:
                    logger.bind(batch_index=tx.batch.index, status=status.value).warning(
                        f"Transaction {result.signature} ended {status.value}: {error}"
                    )
            results.append(result)

        return results

    async def dispatch(self, batches: Sequence[Batch], payer: Keypair, policy: BatchPolicy) -> List[SubmissionResult]:
        """Seal batches and send them using the policy's submission mode."""
        sealed = await self.prepare(batches, payer, policy)
        logger.info(f"Prepared {len(sealed)} transactions")
        if policy.confirm:
            return await self.send_sequential_confirmed(sealed, policy)
        return await self.send_fire_and_forget(sealed, policy)
