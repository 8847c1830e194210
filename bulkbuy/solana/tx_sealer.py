"""
Turns a batch into a signed v0 transaction.
"""

from typing import List

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from bulkbuy.solana.models import Batch, SealedTransaction

# Largest serialized transaction an endpoint accepts
PACKET_DATA_SIZE = 1232


class TransactionTooLargeError(ValueError):
    """Raised when a sealed batch does not fit in one packet."""
    pass


def signers_for(batch: Batch, payer: Keypair) -> List[Keypair]:
    """Fee payer first, then every batch signer that is not the payer."""
    payer_key = payer.pubkey()
    return [payer] + [kp for kp in batch.signers if kp.pubkey() != payer_key]


def seal_batch(
    batch: Batch,
    payer: Keypair,
    blockhash: Hash,
    last_valid_block_height: int,
) -> SealedTransaction:
    """
    Compile and sign one batch.

    Signing is local; instruction shape is not validated here, a malformed
    instruction only surfaces when the endpoint rejects the transaction.

    Args:
        batch: Instructions and signers to include
        payer: Fee payer keypair
        blockhash: Recent blockhash fetched from the endpoint
        last_valid_block_height: Last block height at which blockhash is accepted

    Returns:
        SealedTransaction ready for submission

    Raises:
        TransactionTooLargeError: If the signed transaction exceeds PACKET_DATA_SIZE
    """
    message = MessageV0.try_compile(payer.pubkey(), batch.instructions, [], blockhash)
    transaction = VersionedTransaction(message, signers_for(batch, payer))
    size = len(bytes(transaction))
    if size > PACKET_DATA_SIZE:
        raise TransactionTooLargeError(
            f"Batch {batch.index} serializes to {size} bytes, limit is {PACKET_DATA_SIZE}; "
            f"lower the batch size for {len(batch)} operations"
        )
    return SealedTransaction(
        batch=batch,
        transaction=transaction,
        blockhash=blockhash,
        last_valid_block_height=last_valid_block_height,
    )
