"""
Batching of per-wallet operations into bounded, transaction-sized groups.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from loguru import logger
from solana.exceptions import SolanaRpcException
from solders.instruction import Instruction
from solders.keypair import Keypair

from bulkbuy.solana.models import Batch, Operation

T = TypeVar("T")


class OperationSkipped(Exception):
    """Raised by an operation builder to leave one entity out of the run."""
    pass


@dataclass
class BatchPolicy:
    """How operations are packed into transactions and how those are sent."""
    max_operations: int
    prefix_instructions: List[Instruction] = field(default_factory=list)
    share_blockhash: bool = False  # one freshness token for the whole invocation
    confirm: bool = False          # sequential-confirmed instead of fire-and-forget
    skip_preflight: bool = True
    max_retries: Optional[int] = None

    def __post_init__(self):
        if self.max_operations < 1:
            raise ValueError("max_operations must be at least 1")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")


def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    """Split items into consecutive groups of at most size elements."""
    if size < 1:
        raise ValueError("size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _dedupe_signers(signers: Iterable[Keypair]) -> List[Keypair]:
    seen = set()
    unique = []
    for kp in signers:
        key = kp.pubkey()
        if key in seen:
            continue
        seen.add(key)
        unique.append(kp)
    return unique


def batch_operations(operations: Sequence[Operation], policy: BatchPolicy) -> List[Batch]:
    """
    Seal already-built operations into batches.

    Every batch starts with the policy's prefix instructions and holds at most
    policy.max_operations operations, in input order. The last batch may be
    smaller. An empty input yields no batches.
    """
    batches = []
    for index, group in enumerate(chunk(operations, policy.max_operations)):
        instructions = list(policy.prefix_instructions)
        signers: List[Keypair] = []
        for op in group:
            instructions.extend(op.instructions)
            signers.extend(op.signers)
        batches.append(Batch(
            index=index,
            instructions=instructions,
            signers=_dedupe_signers(signers),
            operations=list(group),
        ))
    return batches


def accumulate_batches(
    entities: Iterable[T],
    build: Callable[[T], Operation],
    policy: BatchPolicy,
) -> List[Batch]:
    """
    Map each entity to an operation and group the operations into batches.

    Args:
        entities: Ordered entities, usually wallets
        build: Maps one entity to its Operation
        policy: Batch size and fixed prefix instructions

    Returns:
        Ordered list of batches
    """
    operations = [build(entity) for entity in entities]
    batches = batch_operations(operations, policy)
    logger.debug(
        f"Accumulated {len(operations)} operations into {len(batches)} batches",
        extra={"operations": len(operations), "batches": len(batches), "max_operations": policy.max_operations}
    )
    return batches


async def build_operations(
    entities: Iterable[T],
    build: Callable[[T], Awaitable[Operation]],
    describe: Callable[[T], str] = str,
) -> Tuple[List[Operation], List[str]]:
    """
    Build operations one entity at a time, skipping entities whose build fails.

    Failures local to one entity (missing metadata, account fetch errors) are
    logged and that entity is left out; the rest of the run continues.

    Returns:
        Tuple of (built operations in input order, descriptions of skipped entities)
    """
    operations = []
    skipped = []
    for entity in entities:
        name = describe(entity)
        try:
            operations.append(await build(entity))
        except OperationSkipped as e:
            logger.warning(f"Skipping {name}: {str(e)}")
            skipped.append(name)
        except (SolanaRpcException, ValueError, KeyError) as e:
            logger.bind(entity=name).error(
                f"Failed to build operation for {name}, skipping: {type(e).__name__} - {str(e)}"
            )
            skipped.append(name)
    return operations, skipped
