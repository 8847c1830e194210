"""
Client for the pump.fun bonding-curve program.

Parses the program's Global and BondingCurve accounts, quotes buys against
the constant-product curve and builds buy and create instructions.
"""

import struct
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from construct import Array, Bytes, ConstructError, Flag, Int64ul, Struct
from loguru import logger
from solana.rpc.async_api import AsyncClient
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import RENT

from bulkbuy.solana.token_program import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    create_ata_instruction,
    derive_ata,
)

PUMP_PROGRAM_ID = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
PUMP_GLOBAL = Pubkey.from_string("4wTV1YmiEkRvAtNtsSGPtUrqRYQMe5SKy2uB4Jjaxnjf")
PUMP_EVENT_AUTHORITY = Pubkey.from_string("Ce6TQqeHC9p8KetsN6JsjHK7UTZk7nasjjnr7XxXp9F1")
PUMP_FEE_RECIPIENT = Pubkey.from_string("CebN5WGQ4jvEPvsVU4EoHEpgzq1VV7AbicfhtW4xC9iM")
PUMP_FEE_PROGRAM_ID = Pubkey.from_string("pfeeUxB6jkeY1Hxd7CsFCAjcbHA9rWtchMGdZ6VojVZ")
METAPLEX_PROGRAM_ID = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")

BUY_DISCRIMINATOR = bytes.fromhex("66063d1201daebea")
CREATE_DISCRIMINATOR = bytes.fromhex("181ec828051c0777")
BONDING_CURVE_DISCRIMINATOR = struct.pack("<Q", 6966180631402821399)
GLOBAL_DISCRIMINATOR = bytes([167, 232, 232, 177, 200, 108, 114, 127])

# track_volume: Some(true)
TRACK_VOLUME = bytes([1, 1])

FEE_DENOMINATOR = 10_000
U64_MAX = 2**64 - 1


class CurveStateError(ValueError):
    """Raised when a program account is missing, malformed, or the curve is complete."""
    pass


@dataclass(frozen=True)
class GlobalState:
    """Program-wide parameters stored in the Global account."""
    initialized: bool
    authority: Pubkey
    fee_recipient: Pubkey
    initial_virtual_token_reserves: int
    initial_virtual_sol_reserves: int
    initial_real_token_reserves: int
    token_total_supply: int
    fee_basis_points: int
    creator_fee_basis_points: int = 0

    _BASE_STRUCT = Struct(
        "initialized" / Flag,
        "authority" / Bytes(32),
        "fee_recipient" / Bytes(32),
        "initial_virtual_token_reserves" / Int64ul,
        "initial_virtual_sol_reserves" / Int64ul,
        "initial_real_token_reserves" / Int64ul,
        "token_total_supply" / Int64ul,
        "fee_basis_points" / Int64ul,
    )
    _EXTENDED_STRUCT = Struct(
        "withdraw_authority" / Bytes(32),
        "enable_migrate" / Flag,
        "pool_migration_fee" / Int64ul,
        "creator_fee_basis_points" / Int64ul,
        "fee_recipients" / Array(7, Bytes(32)),
    )

    @classmethod
    def from_bytes(cls, data: bytes) -> "GlobalState":
        if data[:8] != GLOBAL_DISCRIMINATOR:
            raise CurveStateError("Invalid global account discriminator")

        try:
            base = cls._BASE_STRUCT.parse(data[8:])
        except ConstructError as e:
            raise CurveStateError(f"Malformed global account: {str(e)}") from e
        offset = 8 + cls._BASE_STRUCT.sizeof()
        creator_fee = 0
        # Older layouts stop after fee_basis_points
        if len(data) >= offset + cls._EXTENDED_STRUCT.sizeof():
            creator_fee = cls._EXTENDED_STRUCT.parse(data[offset:]).creator_fee_basis_points

        return cls(
            initialized=base.initialized,
            authority=Pubkey.from_bytes(base.authority),
            fee_recipient=Pubkey.from_bytes(base.fee_recipient),
            initial_virtual_token_reserves=base.initial_virtual_token_reserves,
            initial_virtual_sol_reserves=base.initial_virtual_sol_reserves,
            initial_real_token_reserves=base.initial_real_token_reserves,
            token_total_supply=base.token_total_supply,
            fee_basis_points=base.fee_basis_points,
            creator_fee_basis_points=creator_fee,
        )


@dataclass(frozen=True)
class BondingCurveState:
    """Reserves of one token's bonding curve."""
    virtual_token_reserves: int
    virtual_sol_reserves: int
    real_token_reserves: int
    real_sol_reserves: int
    token_total_supply: int
    complete: bool
    creator: Pubkey = Pubkey.default()

    _BASE_STRUCT = Struct(
        "virtual_token_reserves" / Int64ul,
        "virtual_sol_reserves" / Int64ul,
        "real_token_reserves" / Int64ul,
        "real_sol_reserves" / Int64ul,
        "token_total_supply" / Int64ul,
        "complete" / Flag,
    )

    @classmethod
    def from_bytes(cls, data: bytes) -> "BondingCurveState":
        if data[:8] != BONDING_CURVE_DISCRIMINATOR:
            raise CurveStateError("Invalid curve state discriminator")

        try:
            parsed = cls._BASE_STRUCT.parse(data[8:])
        except ConstructError as e:
            raise CurveStateError(f"Malformed bonding curve account: {str(e)}") from e
        offset = 8 + cls._BASE_STRUCT.sizeof()
        creator = Pubkey.from_bytes(data[offset:offset + 32]) if len(data) >= offset + 32 else Pubkey.default()

        return cls(
            virtual_token_reserves=parsed.virtual_token_reserves,
            virtual_sol_reserves=parsed.virtual_sol_reserves,
            real_token_reserves=parsed.real_token_reserves,
            real_sol_reserves=parsed.real_sol_reserves,
            token_total_supply=parsed.token_total_supply,
            complete=parsed.complete,
            creator=creator,
        )

    def to_bytes(self) -> bytes:
        """Account data layout, used to seed local ledgers."""
        return (
            BONDING_CURVE_DISCRIMINATOR
            + self._BASE_STRUCT.build(dict(
                virtual_token_reserves=self.virtual_token_reserves,
                virtual_sol_reserves=self.virtual_sol_reserves,
                real_token_reserves=self.real_token_reserves,
                real_sol_reserves=self.real_sol_reserves,
                token_total_supply=self.token_total_supply,
                complete=self.complete,
            ))
            + bytes(self.creator)
        )


# PDA helpers

def bonding_curve_pda(mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"bonding-curve", bytes(mint)], PUMP_PROGRAM_ID)[0]


def associated_bonding_curve(mint: Pubkey, bonding_curve: Pubkey, token_program_id: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    return derive_ata(bonding_curve, mint, token_program_id)


def creator_vault_pda(creator: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"creator-vault", bytes(creator)], PUMP_PROGRAM_ID)[0]


def global_volume_accumulator_pda() -> Pubkey:
    return Pubkey.find_program_address([b"global_volume_accumulator"], PUMP_PROGRAM_ID)[0]


def user_volume_accumulator_pda(user: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"user_volume_accumulator", bytes(user)], PUMP_PROGRAM_ID)[0]


def fee_config_pda() -> Pubkey:
    return Pubkey.find_program_address([b"fee_config", bytes(PUMP_PROGRAM_ID)], PUMP_FEE_PROGRAM_ID)[0]


def mint_authority_pda() -> Pubkey:
    return Pubkey.find_program_address([b"mint-authority"], PUMP_PROGRAM_ID)[0]


def metadata_pda(mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"metadata", bytes(METAPLEX_PROGRAM_ID), bytes(mint)], METAPLEX_PROGRAM_ID)[0]


# Curve math

def get_buy_token_amount_from_sol_amount(global_state: GlobalState, curve: BondingCurveState, amount: int) -> int:
    """
    Tokens received for spending amount lamports, fees included.

    The fee-adjusted input is swapped against the virtual reserves and the
    result is capped by the curve's real token reserves.

    Args:
        global_state: Program fee parameters
        curve: Current curve reserves
        amount: Lamports to spend including fees

    Returns:
        Token base units received
    """
    if amount == 0 or curve.virtual_token_reserves == 0:
        return 0

    total_fee_bps = global_state.fee_basis_points
    if curve.creator != Pubkey.default():
        total_fee_bps += global_state.creator_fee_basis_points

    input_amount = amount * FEE_DENOMINATOR // (total_fee_bps + FEE_DENOMINATOR)
    tokens = input_amount * curve.virtual_token_reserves // (curve.virtual_sol_reserves + input_amount)
    return min(tokens, curve.real_token_reserves)


def max_sol_cost(sol_amount: int, slippage_percent: float) -> int:
    """Upper bound on lamports spent; slippage is applied in tenths of a percent."""
    return sol_amount + sol_amount * int(slippage_percent * 10) // 1000


def apply_buy(global_state: GlobalState, curve: BondingCurveState, sol_amount: int, token_amount: int) -> BondingCurveState:
    """Project the curve forward after a buy, so the next quote in the same run sees it."""
    total_fee_bps = global_state.fee_basis_points
    if curve.creator != Pubkey.default():
        total_fee_bps += global_state.creator_fee_basis_points
    sol_in = sol_amount * FEE_DENOMINATOR // (total_fee_bps + FEE_DENOMINATOR)

    return replace(
        curve,
        virtual_token_reserves=curve.virtual_token_reserves - token_amount,
        virtual_sol_reserves=curve.virtual_sol_reserves + sol_in,
        real_token_reserves=curve.real_token_reserves - token_amount,
        real_sol_reserves=curve.real_sol_reserves + sol_in,
    )


def _borsh_string(value: str) -> bytes:
    encoded = value.encode("utf-8")
    return struct.pack("<I", len(encoded)) + encoded


class PumpSdk:
    """
    Reads program accounts and builds instructions for the bonding-curve program.
    """

    def __init__(self, client: AsyncClient):
        """
        Initialize the SDK.

        Args:
            client: Async Solana RPC client used for account reads
        """
        self.client = client

    async def _fetch_account_data(self, address: Pubkey) -> bytes:
        resp = await self.client.get_account_info(address, encoding="base64")
        if resp.value is None:
            raise CurveStateError(f"Account {address} not found")
        return bytes(resp.value.data)

    async def fetch_global(self) -> GlobalState:
        """Fetch and parse the program's Global account."""
        data = await self._fetch_account_data(PUMP_GLOBAL)
        state = GlobalState.from_bytes(data)
        logger.debug(
            f"Fetched global state, fee {state.fee_basis_points} bps",
            extra={"fee_basis_points": state.fee_basis_points, "creator_fee_basis_points": state.creator_fee_basis_points}
        )
        return state

    async def fetch_bonding_curve(self, mint: Pubkey) -> BondingCurveState:
        """
        Fetch and parse the bonding curve of mint.

        Raises:
            CurveStateError: If the account is missing or malformed, or the curve has completed
        """
        curve = BondingCurveState.from_bytes(await self._fetch_account_data(bonding_curve_pda(mint)))
        if curve.complete:
            raise CurveStateError(f"Bonding curve for {mint} is complete, token has migrated")
        return curve

    def buy_instructions(
        self,
        global_state: GlobalState,
        curve: BondingCurveState,
        mint: Pubkey,
        user: Pubkey,
        amount: int,
        sol_amount: int,
        slippage_percent: float,
        token_program_id: Pubkey = TOKEN_PROGRAM_ID,
    ) -> List[Instruction]:
        """
        Build the instructions for one wallet's buy.

        The user's token account is created idempotently first, paid by the user.

        Args:
            global_state: Program fee parameters
            curve: Curve state the quote was computed from
            mint: Token mint
            user: Buying wallet, must sign
            amount: Token base units to receive
            sol_amount: Lamports the quote was computed for
            slippage_percent: Allowed price movement in percent
            token_program_id: Token program that owns the mint

        Returns:
            List of instructions (ATA create, buy)

        Raises:
            ValueError: If an amount does not fit the instruction's u64 fields
        """
        max_cost = max_sol_cost(sol_amount, slippage_percent)
        if not (0 <= amount <= U64_MAX and 0 <= sol_amount and max_cost <= U64_MAX):
            raise ValueError(f"Buy amounts out of range: amount={amount}, sol_amount={sol_amount}")

        bonding_curve = bonding_curve_pda(mint)
        user_ata = derive_ata(user, mint, token_program_id)
        fee_recipient = global_state.fee_recipient if global_state.fee_recipient != Pubkey.default() else PUMP_FEE_RECIPIENT

        keys = [
            AccountMeta(pubkey=PUMP_GLOBAL, is_signer=False, is_writable=False),
            AccountMeta(pubkey=fee_recipient, is_signer=False, is_writable=True),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=bonding_curve, is_signer=False, is_writable=True),
            AccountMeta(pubkey=associated_bonding_curve(mint, bonding_curve, token_program_id), is_signer=False, is_writable=True),
            AccountMeta(pubkey=user_ata, is_signer=False, is_writable=True),
            AccountMeta(pubkey=user, is_signer=True, is_writable=True),
            AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=token_program_id, is_signer=False, is_writable=False),
            AccountMeta(pubkey=creator_vault_pda(curve.creator), is_signer=False, is_writable=True),
            AccountMeta(pubkey=PUMP_EVENT_AUTHORITY, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=global_volume_accumulator_pda(), is_signer=False, is_writable=False),
            AccountMeta(pubkey=user_volume_accumulator_pda(user), is_signer=False, is_writable=True),
            AccountMeta(pubkey=fee_config_pda(), is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_FEE_PROGRAM_ID, is_signer=False, is_writable=False),
        ]

        data = (
            BUY_DISCRIMINATOR
            + struct.pack("<QQ", amount, max_cost)
            + TRACK_VOLUME
        )

        return [
            create_ata_instruction(user, user, mint, token_program_id),
            Instruction(program_id=PUMP_PROGRAM_ID, data=data, accounts=keys),
        ]

    def create_instruction(
        self,
        mint: Pubkey,
        user: Pubkey,
        name: str,
        symbol: str,
        uri: str,
        creator: Optional[Pubkey] = None,
    ) -> Instruction:
        """
        Build the instruction that launches a new token on a fresh bonding curve.

        Both mint and user must sign the transaction.
        """
        bonding_curve = bonding_curve_pda(mint)
        keys = [
            AccountMeta(pubkey=mint, is_signer=True, is_writable=True),
            AccountMeta(pubkey=mint_authority_pda(), is_signer=False, is_writable=False),
            AccountMeta(pubkey=bonding_curve, is_signer=False, is_writable=True),
            AccountMeta(pubkey=associated_bonding_curve(mint, bonding_curve), is_signer=False, is_writable=True),
            AccountMeta(pubkey=PUMP_GLOBAL, is_signer=False, is_writable=False),
            AccountMeta(pubkey=METAPLEX_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=metadata_pda(mint), is_signer=False, is_writable=True),
            AccountMeta(pubkey=user, is_signer=True, is_writable=True),
            AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=RENT, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_EVENT_AUTHORITY, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_PROGRAM_ID, is_signer=False, is_writable=False),
        ]

        data = (
            CREATE_DISCRIMINATOR
            + _borsh_string(name)
            + _borsh_string(symbol)
            + _borsh_string(uri)
            + bytes(creator or user)
        )
        return Instruction(program_id=PUMP_PROGRAM_ID, data=data, accounts=keys)


def quote_buy(
    global_state: GlobalState,
    curve: BondingCurveState,
    sol_amount: int,
) -> Tuple[int, BondingCurveState]:
    """Quote one buy and return the token amount with the projected curve."""
    tokens = get_buy_token_amount_from_sol_amount(global_state, curve, sol_amount)
    return tokens, apply_buy(global_state, curve, sol_amount, tokens)
