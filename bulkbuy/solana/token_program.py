"""
SPL Token program utilities for Solana.

This module provides the instruction builders the pipeline needs: associated
token account derivation and idempotent creation, native SOL and SPL
transfers, the compute-budget prefix and an optional memo.
"""

from typing import List

from loguru import logger
from solana.rpc.async_api import AsyncClient
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from spl.memo.constants import MEMO_PROGRAM_ID
from spl.memo.instructions import MemoParams, create_memo
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

# SPL Token Program Instruction Codes
TRANSFER_CHECKED_INSTRUCTION = 12
CREATE_IDEMPOTENT_INSTRUCTION = 1


class TokenError(Exception):
    """Base exception for token-related errors."""
    pass


def derive_ata(owner: Pubkey, mint: Pubkey, token_program_id: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    """
    Derive the associated token account of owner for mint.

    Args:
        owner: Wallet that owns the account
        mint: Token mint
        token_program_id: Token program that owns the mint

    Returns:
        Associated token account address
    """
    return get_associated_token_address(owner, mint, token_program_id)


def compute_budget_prefix(units: int, microlamports: int) -> List[Instruction]:
    """Compute-unit limit and price instructions placed at the head of a transaction."""
    return [
        set_compute_unit_limit(units),
        set_compute_unit_price(microlamports),
    ]


def create_ata_instruction(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    """
    Create-if-absent instruction for owner's associated token account.

    Executing it against an account that already exists succeeds without
    changing anything, so repeated runs are safe.
    """
    return create_idempotent_associated_token_account(
        payer,
        owner,
        mint,
        token_program_id=token_program_id,
    )


def sol_transfer_instruction(sender: Pubkey, recipient: Pubkey, lamports: int) -> Instruction:
    """Native SOL transfer through the System program."""
    return transfer(TransferParams(from_pubkey=sender, to_pubkey=recipient, lamports=lamports))


def token_transfer_instruction(
    sender: Pubkey,
    recipient: Pubkey,
    mint: Pubkey,
    amount: int,
    decimals: int,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    """
    Create an SPL transfer_checked instruction between two wallets' associated accounts.

    Args:
        sender: Owner of the source account, must sign
        recipient: Owner of the destination account
        mint: Token mint
        amount: Amount in base units
        decimals: Mint decimals, checked on chain
        token_program_id: Token program that owns the mint

    Returns:
        Instruction for the token transfer
    """
    return transfer_checked(TransferCheckedParams(
        program_id=token_program_id,
        source=derive_ata(sender, mint, token_program_id),
        mint=mint,
        dest=derive_ata(recipient, mint, token_program_id),
        owner=sender,
        amount=amount,
        decimals=decimals,
    ))


def memo_instruction(signer: Pubkey, message: str) -> Instruction:
    """Memo instruction signed by signer."""
    return create_memo(MemoParams(
        program_id=MEMO_PROGRAM_ID,
        signer=signer,
        message=message.encode("utf-8"),
    ))


async def get_mint_token_program(client: AsyncClient, mint: Pubkey) -> Pubkey:
    """
    Find which token program owns a mint.

    Raises:
        TokenError: If the mint account does not exist or is not a token mint
    """
    resp = await client.get_account_info(mint)
    account = resp.value
    if account is None:
        raise TokenError(f"Mint account {mint} not found")

    if account.owner in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
        return account.owner

    logger.error(
        f"Mint {mint} is owned by unexpected program {account.owner}",
        extra={"mint": str(mint), "owner": str(account.owner)}
    )
    raise TokenError(f"Account {mint} is not a token mint")


__all__ = [
    "ASSOCIATED_TOKEN_PROGRAM_ID",
    "TOKEN_2022_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
    "TokenError",
    "compute_budget_prefix",
    "create_ata_instruction",
    "derive_ata",
    "get_mint_token_program",
    "memo_instruction",
    "sol_transfer_instruction",
    "token_transfer_instruction",
]
