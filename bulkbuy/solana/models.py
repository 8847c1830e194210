"""
Models for Solana operations.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction


class WalletInfo(BaseModel):
    """Information about a keystore wallet."""
    index: int
    address: str
    secret_key: Optional[SecretStr] = None
    created_at: datetime = Field(default_factory=datetime.now)
    buy_lamports: Optional[int] = None


class TxStatus(str, Enum):
    """Lifecycle of one submitted transaction."""
    BUILT = "built"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"    # endpoint returned a signature, finality unknown
    REJECTED = "rejected"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"      # blockhash validity window passed before confirmation


class SubmissionResult(BaseModel):
    """Outcome of sending one transaction to one endpoint."""
    batch_index: int
    endpoint: str
    status: TxStatus
    signature: Optional[str] = None
    error: Optional[str] = None
    wallets: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def success(self) -> bool:
        return self.status in (TxStatus.ACCEPTED, TxStatus.CONFIRMED)


@dataclass
class Operation:
    """One unit of work for one wallet."""
    wallet: str
    instructions: List[Instruction] = field(default_factory=list)
    signers: List[Keypair] = field(default_factory=list)
    amount: Optional[int] = None


@dataclass
class Batch:
    """A bounded group of operations destined for one transaction."""
    index: int
    instructions: List[Instruction] = field(default_factory=list)
    signers: List[Keypair] = field(default_factory=list)
    operations: List[Operation] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def wallets(self) -> List[str]:
        return [op.wallet for op in self.operations]


@dataclass
class SealedTransaction:
    """A signed transaction plus the freshness token it was built against."""
    batch: Batch
    transaction: VersionedTransaction
    blockhash: Hash
    last_valid_block_height: int

    @property
    def signature(self) -> str:
        return str(self.transaction.signatures[0])


@dataclass
class StageResult:
    """Results of one pipeline stage."""
    name: str
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    transactions: int = 0
    results: List[SubmissionResult] = field(default_factory=list)
    skipped_wallets: List[str] = field(default_factory=list)

    @property
    def duration(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return None

    @property
    def success_count(self) -> int:
        return len([r for r in self.results if r.success])

    @property
    def failure_count(self) -> int:
        return len([r for r in self.results if not r.success])


@dataclass
class PipelineSummary:
    """Everything one pipeline run produced, in stage order."""
    mint: Optional[str] = None
    wallets: List[WalletInfo] = field(default_factory=list)
    stages: List[StageResult] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return None

    def stage(self, name: str) -> Optional[StageResult]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None
