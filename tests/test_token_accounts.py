"""
Tests for token_accounts.py
"""
import pytest
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from flash_arb.constants import SOL_MINT, TOKEN_PROGRAM_ID
from flash_arb.token_accounts import (
    create_token_account_instructions,
    native_token_account,
    unwrap_sol_instructions,
    wrap_sol_instructions,
)


@pytest.mark.asyncio
async def test_creates_only_missing_accounts(mock_solana_client, sol_mint, usdc_mint):
    owner = mock_solana_client.payer
    existing = get_associated_token_address(owner, Pubkey.from_string(sol_mint))
    mock_solana_client.account_exists.side_effect = lambda ata: ata == existing

    ixs = await create_token_account_instructions(mock_solana_client, [sol_mint, usdc_mint])

    assert len(ixs) == 1
    created = get_associated_token_address(owner, Pubkey.from_string(usdc_mint))
    assert created in [meta.pubkey for meta in ixs[0].accounts]


@pytest.mark.asyncio
async def test_all_accounts_exist(mock_solana_client, sol_mint):
    mock_solana_client.account_exists.return_value = True
    assert await create_token_account_instructions(mock_solana_client, [sol_mint]) == []


def test_native_token_account(mock_keypair):
    owner = mock_keypair.pubkey()
    assert native_token_account(owner) == get_associated_token_address(owner, Pubkey.from_string(SOL_MINT))


def test_wrap_sol(mock_keypair):
    owner = mock_keypair.pubkey()
    account = native_token_account(owner)
    transfer_ix, sync_ix = wrap_sol_instructions(owner, account, 0.25)

    assert [m.pubkey for m in transfer_ix.accounts] == [owner, account]
    # System transfer: u32 tag 2, then u64 lamports
    assert int.from_bytes(bytes(transfer_ix.data)[4:12], "little") == 250_000_000
    assert sync_ix.program_id == Pubkey.from_string(TOKEN_PROGRAM_ID)


def test_unwrap_sol(mock_keypair):
    owner = mock_keypair.pubkey()
    account = native_token_account(owner)

    assert len(unwrap_sol_instructions(owner, account)) == 2
    close_only = unwrap_sol_instructions(owner, account, keep_account_open=False)
    assert len(close_only) == 1
    assert close_only[0].accounts[0].pubkey == account
