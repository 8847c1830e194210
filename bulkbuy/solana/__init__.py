"""
Solana integration for the bulk buy pipeline.

This package contains modules for batching per-wallet operations into
multi-signer transactions, sealing and submitting them, managing the wallet
keystore, and building instructions for the bonding-curve program.

Note: start on devnet. Buys, SOL and WSOL funding are not idempotent;
re-running the pipeline repeats them.
"""

from bulkbuy.solana.models import (
    Batch,
    Operation,
    PipelineSummary,
    SealedTransaction,
    StageResult,
    SubmissionResult,
    TxStatus,
    WalletInfo,
)
from bulkbuy.solana.batching import BatchPolicy, OperationSkipped, accumulate_batches, batch_operations, build_operations
from bulkbuy.solana.tx_sealer import seal_batch
from bulkbuy.solana.dispatcher import TxDispatcher
from bulkbuy.solana.wallet_manager import KeystoreError, MissingWalletInfoError, WalletManager
from bulkbuy.solana.pump_sdk import BondingCurveState, CurveStateError, GlobalState, PumpSdk
from bulkbuy.solana.context import RunContext
from bulkbuy.solana.pipeline import BulkBuyPipeline, StageFailedError
