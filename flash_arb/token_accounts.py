"""
Associated token accounts and native SOL wrapping.
"""
import asyncio
import logging
from typing import List, Optional, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from spl.token.instructions import (
    CloseAccountParams,
    SyncNativeParams,
    close_account,
    create_associated_token_account,
    get_associated_token_address,
    sync_native,
)

from .constants import COMMON_TOKEN_MINTS, SOL_MINT, TOKEN_PROGRAM_ID
from .solana_client import SolanaClient

logger = logging.getLogger(__name__)

TOKEN_PROGRAM = Pubkey.from_string(TOKEN_PROGRAM_ID)
NATIVE_MINT = Pubkey.from_string(SOL_MINT)
LAMPORTS_PER_SOL = 1_000_000_000


async def create_token_account_instructions(
    solana_client: SolanaClient,
    mints: Sequence[str] = COMMON_TOKEN_MINTS,
    owner: Optional[Pubkey] = None
) -> List[Instruction]:
    """
    One create-ATA instruction per mint whose account does not exist yet.

    Args:
        solana_client: Client whose wallet pays for the accounts
        mints: Mint addresses (base58)
        owner: Account owner (defaults to the wallet)
    """
    payer = solana_client.payer
    owner = owner or payer
    mint_keys = [Pubkey.from_string(m) for m in mints]
    atas = [get_associated_token_address(owner, mint) for mint in mint_keys]
    exists = await asyncio.gather(*(solana_client.account_exists(ata) for ata in atas))
    return [
        create_associated_token_account(payer, owner, mint)
        for mint, found in zip(mint_keys, exists)
        if not found
    ]


def wrap_sol_instructions(owner: Pubkey, native_token_account: Pubkey, amount_sol: float) -> List[Instruction]:
    """Move lamports into a wSOL account and sync its token balance."""
    lamports = int(round(amount_sol * LAMPORTS_PER_SOL))
    return [
        transfer(TransferParams(from_pubkey=owner, to_pubkey=native_token_account, lamports=lamports)),
        sync_native(SyncNativeParams(program_id=TOKEN_PROGRAM, account=native_token_account)),
    ]


def unwrap_sol_instructions(
    owner: Pubkey,
    native_token_account: Pubkey,
    keep_account_open: bool = True
) -> List[Instruction]:
    """
    Close a wSOL account back into the owner's SOL balance.

    With keep_account_open the associated wSOL account is recreated in the
    same transaction.
    """
    ixs = [
        close_account(CloseAccountParams(
            program_id=TOKEN_PROGRAM,
            account=native_token_account,
            dest=owner,
            owner=owner,
            signers=[]
        ))
    ]
    if keep_account_open:
        ixs.append(create_associated_token_account(owner, owner, NATIVE_MINT))
    return ixs


def native_token_account(owner: Pubkey) -> Pubkey:
    return get_associated_token_address(owner, NATIVE_MINT)
