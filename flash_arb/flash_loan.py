"""
Flash Loan Mastery client: pool addresses and instruction builders.

Borrow and repay must land in the same transaction; the program checks the
instructions sysvar for a matching repay. Repayment is the borrowed amount
plus the pool fee.
"""
import hashlib
import logging
import math
import struct
from dataclasses import dataclass
from typing import List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from spl.token.instructions import create_associated_token_account, get_associated_token_address

from .constants import (
    DEFAULT_FLM_PROGRAM_ID,
    FEE_DENOMINATOR,
    LOAN_FEE_PPM,
    SYSTEM_PROGRAM_ID,
    SYSVAR_INSTRUCTIONS_ID,
    TOKEN_PROGRAM_ID,
)
from .errors import AccountNotFoundError
from .solana_client import SolanaClient
from .utils import get_terminal_colors, to_base_units

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

POOL_AUTHORITY_SEED = b"flash_loan"
# Pool authority account: 8-byte discriminator, token mint, pool share mint, bump
POOL_SHARE_MINT_OFFSET = 8 + 32

TOKEN_PROGRAM = Pubkey.from_string(TOKEN_PROGRAM_ID)
SYSTEM_PROGRAM = Pubkey.from_string(SYSTEM_PROGRAM_ID)
SYSVAR_INSTRUCTIONS = Pubkey.from_string(SYSVAR_INSTRUCTIONS_ID)


def anchor_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256('global:<name>')."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def loan_fee(amount: int) -> int:
    """Pool fee on a borrowed amount, rounded up."""
    return math.ceil(amount * LOAN_FEE_PPM / FEE_DENOMINATOR)


def repayment_amount(amount: int) -> int:
    return amount + loan_fee(amount)


@dataclass
class FlashLoanPlan:
    """Borrow/repay pair for one flash loan, plus optional referral setup."""
    borrow_instruction: Instruction
    repay_instruction: Instruction
    repayment_amount: int
    amount: int
    setup_instruction: Optional[Instruction] = None

    def instructions(self) -> List[Instruction]:
        """Stand-alone loan: setup (if any), borrow, repay."""
        ixs = [self.setup_instruction] if self.setup_instruction else []
        return ixs + [self.borrow_instruction, self.repay_instruction]

    def account_keys(self) -> List[Pubkey]:
        """Every account meta of the plan, duplicates included."""
        return [meta.pubkey for ix in self.instructions() for meta in ix.accounts]


class FlashLoanClient:
    """Builds Flash Loan Mastery instructions for the configured wallet."""

    def __init__(self, solana_client: SolanaClient, program_id: str = DEFAULT_FLM_PROGRAM_ID):
        self.solana = solana_client
        self.program_id = Pubkey.from_string(program_id)

    def pool_authority(self, mint: Pubkey) -> Pubkey:
        address, _ = Pubkey.find_program_address([POOL_AUTHORITY_SEED, bytes(mint)], self.program_id)
        return address

    def bank_token(self, mint: Pubkey) -> Pubkey:
        """Token account holding the pool's liquidity."""
        return get_associated_token_address(self.pool_authority(mint), mint)

    def _instruction(self, name: str, accounts: List[AccountMeta], amount: Optional[int] = None) -> Instruction:
        data = anchor_discriminator(name)
        if amount is not None:
            data += struct.pack("<Q", amount)
        return Instruction(self.program_id, data, accounts)

    def borrow_instruction(self, mint: Pubkey, borrower: Pubkey, amount: int) -> Instruction:
        accounts = [
            AccountMeta(self.pool_authority(mint), is_signer=False, is_writable=True),
            AccountMeta(borrower, is_signer=True, is_writable=False),
            AccountMeta(self.bank_token(mint), is_signer=False, is_writable=True),
            AccountMeta(get_associated_token_address(borrower, mint), is_signer=False, is_writable=True),
            AccountMeta(SYSVAR_INSTRUCTIONS, is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
        ]
        return self._instruction("borrow", accounts, amount)

    def repay_instruction(
        self,
        mint: Pubkey,
        repayer: Pubkey,
        amount: int,
        referral_token_to: Optional[Pubkey] = None
    ) -> Instruction:
        accounts = [
            AccountMeta(repayer, is_signer=True, is_writable=False),
            AccountMeta(get_associated_token_address(repayer, mint), is_signer=False, is_writable=True),
            AccountMeta(self.bank_token(mint), is_signer=False, is_writable=True),
            AccountMeta(self.pool_authority(mint), is_signer=False, is_writable=True),
            AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
        ]
        if referral_token_to is not None:
            accounts.append(AccountMeta(referral_token_to, is_signer=False, is_writable=True))
        return self._instruction("repay", accounts, amount)

    async def get_flash_loan_instructions(
        self,
        mint: Pubkey,
        amount: float,
        referral_wallet: Optional[Pubkey] = None
    ) -> FlashLoanPlan:
        """
        Build the borrow/repay pair for amount (UI units) of mint.

        When a referral wallet is given and has no token account for mint
        yet, a setup instruction creating it is included.

        Raises:
            AccountNotFoundError: If the mint does not exist
        """
        borrower = self.solana.payer
        decimals = await self.solana.get_mint_decimals(mint)
        base_amount = to_base_units(amount, decimals)

        setup_ix = None
        referral_token = None
        if referral_wallet is not None:
            referral_token = get_associated_token_address(referral_wallet, mint)
            if not await self.solana.account_exists(referral_token):
                logger.info(f"Referral token account {referral_token} missing, adding setup instruction")
                setup_ix = create_associated_token_account(borrower, referral_wallet, mint)

        plan = FlashLoanPlan(
            borrow_instruction=self.borrow_instruction(mint, borrower, base_amount),
            repay_instruction=self.repay_instruction(mint, borrower, base_amount, referral_token),
            repayment_amount=repayment_amount(base_amount),
            amount=base_amount,
            setup_instruction=setup_ix
        )
        logger.debug(f"Flash loan of {base_amount} base units of {mint}, repay {plan.repayment_amount}")
        return plan

    async def get_pool_share_mint(self, mint: Pubkey) -> Pubkey:
        """
        Raises:
            AccountNotFoundError: If no pool exists for mint
        """
        pool_authority = self.pool_authority(mint)
        data = await self.solana.get_account_data(pool_authority)
        if data is None:
            raise AccountNotFoundError(str(pool_authority), "flash loan pool")
        return Pubkey.from_bytes(data[POOL_SHARE_MINT_OFFSET:POOL_SHARE_MINT_OFFSET + 32])

    async def init_pool_instructions(self, token_mint: Pubkey, pool_mint: Pubkey) -> List[Instruction]:
        """
        Instructions creating a pool for token_mint with pool_mint as share token.

        pool_mint must be a new, empty mint whose authority is the wallet.
        """
        funder = self.solana.payer
        pool_authority = self.pool_authority(token_mint)
        ixs = []
        if not await self.solana.account_exists(self.bank_token(token_mint)):
            ixs.append(create_associated_token_account(funder, pool_authority, token_mint))
        accounts = [
            AccountMeta(funder, is_signer=True, is_writable=True),
            AccountMeta(token_mint, is_signer=False, is_writable=False),
            AccountMeta(pool_mint, is_signer=False, is_writable=True),
            AccountMeta(funder, is_signer=True, is_writable=False),
            AccountMeta(pool_authority, is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
        ]
        ixs.append(self._instruction("init_pool", accounts))
        logger.info(
            f"Pool Address {colors['CYAN']}{pool_authority}{colors['RESET']}, "
            f"Pool Bank Token Address {colors['CYAN']}{self.bank_token(token_mint)}{colors['RESET']}"
        )
        return ixs

    async def deposit_instructions(self, mint: Pubkey, token_from: Pubkey, amount: float) -> List[Instruction]:
        depositor = self.solana.payer
        decimals = await self.solana.get_mint_decimals(mint)
        pool_share_mint = await self.get_pool_share_mint(mint)
        pool_share_token_to = get_associated_token_address(depositor, pool_share_mint)

        ixs = []
        if not await self.solana.account_exists(pool_share_token_to):
            ixs.append(create_associated_token_account(depositor, depositor, pool_share_mint))
        accounts = [
            AccountMeta(depositor, is_signer=True, is_writable=False),
            AccountMeta(token_from, is_signer=False, is_writable=True),
            AccountMeta(self.bank_token(mint), is_signer=False, is_writable=True),
            AccountMeta(pool_share_token_to, is_signer=False, is_writable=True),
            AccountMeta(pool_share_mint, is_signer=False, is_writable=True),
            AccountMeta(self.pool_authority(mint), is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
        ]
        ixs.append(self._instruction("deposit", accounts, to_base_units(amount, decimals)))
        logger.info(f"Pool Share Token Address {colors['CYAN']}{pool_share_token_to}{colors['RESET']}")
        return ixs

    async def withdraw_instructions(
        self,
        mint: Pubkey,
        pool_share_token_from: Pubkey,
        amount: float
    ) -> List[Instruction]:
        withdrawer = self.solana.payer
        decimals = await self.solana.get_mint_decimals(mint)
        pool_share_mint = await self.get_pool_share_mint(mint)
        token_to = get_associated_token_address(withdrawer, mint)

        ixs = []
        if not await self.solana.account_exists(token_to):
            ixs.append(create_associated_token_account(withdrawer, withdrawer, mint))
        accounts = [
            AccountMeta(withdrawer, is_signer=True, is_writable=False),
            AccountMeta(self.bank_token(mint), is_signer=False, is_writable=True),
            AccountMeta(token_to, is_signer=False, is_writable=True),
            AccountMeta(pool_share_token_from, is_signer=False, is_writable=True),
            AccountMeta(pool_share_mint, is_signer=False, is_writable=True),
            AccountMeta(self.pool_authority(mint), is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
        ]
        ixs.append(self._instruction("withdraw", accounts, to_base_units(amount, decimals)))
        return ixs

