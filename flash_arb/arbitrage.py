"""
Two-leg flash loan arbitrage loop.

Each iteration walks QUOTING -> EVALUATING -> CONVERGING -> SUBMITTING ->
COOLING and starts over. Transient failures only cut the iteration short.
A missing lookup table in cached mode, or one that cannot be created,
stops the loop.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.pubkey import Pubkey

from .cache_store import DiskCacheStore, KeyFrequencyCache
from .constants import ARB_SLEEP_SECONDS, DEFAULT_SLIPPAGE_BPS
from .errors import FlashArbError, LookupTableCreationError, MissingLookupTableError
from .flash_loan import FlashLoanClient, FlashLoanPlan
from .jupiter_client import JupiterClient, JupiterQuote, JupiterSwapInstructionsResponse
from .lookup_tables import LookupTableManager
from .sequencer import InstructionBundle, SequencedTransaction, sequence_arbitrage
from .solana_client import LookupTableState
from .submitter import SubmissionResult, TransactionSubmitter
from .utils import get_terminal_colors

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


class LoopState(Enum):
    QUOTING = "quoting"
    EVALUATING = "evaluating"
    CONVERGING = "converging"
    SUBMITTING = "submitting"
    COOLING = "cooling"


def is_profitable(out_amount: int, repayment_amount: int) -> bool:
    """Only strictly more than the repayment obligation counts."""
    return out_amount > repayment_amount


def bundle_from_swap_instructions(response: JupiterSwapInstructionsResponse) -> InstructionBundle:
    return InstructionBundle(setup=response.setup(), swap=response.swap(), cleanup=response.cleanup())


@dataclass
class Opportunity:
    """A buy/sell quote pair for one loan amount."""
    buy_quote: JupiterQuote
    sell_quote: JupiterQuote
    repayment_amount: int

    @property
    def expected_profit(self) -> int:
        return self.sell_quote.out_amount - self.repayment_amount

    @property
    def profitable(self) -> bool:
        return is_profitable(self.sell_quote.out_amount, self.repayment_amount)


@dataclass
class IterationResult:
    """States visited by one iteration and what, if anything, was submitted."""
    states: List[LoopState] = field(default_factory=list)
    opportunity: Optional[Opportunity] = None
    missing_keys: List[str] = field(default_factory=list)
    submission: Optional[SubmissionResult] = None


class ArbitrageLoop:
    """
    Polls Jupiter for a mint1 -> mint2 -> mint1 round trip funded by a flash loan.

    With cache_name set, transactions use that cache's lookup table and keys
    missing from it are recorded for the next convergence run. Without it, a
    fresh lookup table is created for every opportunity.
    """

    def __init__(
        self,
        jupiter: JupiterClient,
        flash_loans: FlashLoanClient,
        submitter: TransactionSubmitter,
        tables: LookupTableManager,
        store: DiskCacheStore,
        mint1: Pubkey,
        mint2: Pubkey,
        amount: float,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        cache_name: Optional[str] = None,
        sleep_seconds: float = ARB_SLEEP_SECONDS,
        priority_fee_lamports: int = 0
    ):
        self.jupiter = jupiter
        self.flash_loans = flash_loans
        self.submitter = submitter
        self.tables = tables
        self.store = store
        self.mint1 = mint1
        self.mint2 = mint2
        self.amount = amount
        self.slippage_bps = slippage_bps
        self.cache_name = cache_name
        self.sleep_seconds = sleep_seconds
        self.priority_fee_lamports = priority_fee_lamports

        self.state = LoopState.QUOTING
        self.loan: Optional[FlashLoanPlan] = None
        self.cache: Optional[KeyFrequencyCache] = None
        self.table: Optional[LookupTableState] = None

    @property
    def cached(self) -> bool:
        return self.cache_name is not None

    async def prepare(self) -> None:
        """
        Build the flash loan plan and, in cached mode, load the lookup table.

        Raises:
            MissingLookupTableError: If cached mode has no usable table
            AccountNotFoundError: If mint1 does not exist
        """
        self.loan = await self.flash_loans.get_flash_loan_instructions(self.mint1, self.amount)
        logger.info(
            f"Flash loan of {colors['YELLOW']}{self.loan.amount}{colors['RESET']} base units, "
            f"repayment {colors['YELLOW']}{self.loan.repayment_amount}{colors['RESET']}"
        )
        if self.cached:
            self.cache = self.store.load_key_cache(self.cache_name)
            if not self.cache.lookup_table_address:
                raise MissingLookupTableError(f"Address lookup table is missing from {self.cache_name}")
            await self._reload_table()

    async def _reload_table(self) -> None:
        self.table = await self.tables.reload_table(Pubkey.from_string(self.cache.lookup_table_address))

    def _enter(self, state: LoopState, result: IterationResult) -> None:
        self.state = state
        result.states.append(state)

    async def quote(self) -> Optional[Opportunity]:
        """Best buy quote for the loan amount, then best sell quote for its output."""
        buy_quote = await self.jupiter.get_quote(
            str(self.mint1), str(self.mint2), self.loan.amount, slippage_bps=self.slippage_bps
        )
        if buy_quote is None:
            logger.debug("No buy quote")
            return None
        sell_quote = await self.jupiter.get_quote(
            str(self.mint2), str(self.mint1), buy_quote.out_amount, slippage_bps=self.slippage_bps
        )
        if sell_quote is None:
            logger.debug("No sell quote")
            return None
        return Opportunity(buy_quote=buy_quote, sell_quote=sell_quote, repayment_amount=self.loan.repayment_amount)

    async def build_sequence(self, opportunity: Opportunity) -> Optional[SequencedTransaction]:
        user = str(self.submitter.solana.payer)
        buy, sell = await asyncio.gather(
            self.jupiter.get_swap_instructions(
                opportunity.buy_quote, user,
                priority_fee_lamports=self.priority_fee_lamports, slippage_bps=self.slippage_bps
            ),
            self.jupiter.get_swap_instructions(
                opportunity.sell_quote, user,
                priority_fee_lamports=self.priority_fee_lamports, slippage_bps=self.slippage_bps
            ),
        )
        if buy is None or sell is None:
            logger.warning("Could not get swap instructions for both legs")
            return None
        return sequence_arbitrage(self.loan, bundle_from_swap_instructions(buy), bundle_from_swap_instructions(sell))

    async def record_missing_keys(self, sequence: SequencedTransaction) -> List[str]:
        """
        Record keys the cached table lacks and persist the cache.

        The table itself is not extended here; that happens in the next
        convergence run.
        """
        await self._reload_table()
        in_table = set(self.table.address_strings())
        missing = [key for key in sequence.account_keys if key not in in_table]
        if not missing:
            return []

        logger.info(f"{colors['YELLOW']}{len(missing)}{colors['RESET']} keys not cached")
        async with self.store.lock(self.cache_name):
            new_keys = self.cache.record(missing)
            self.store.save_key_cache(self.cache_name, self.cache)
        if new_keys:
            logger.info(f"{len(new_keys)} new keys saved to {colors['CYAN']}{self.cache_name}{colors['RESET']}")
        return missing

    async def _lookup_tables_for(
        self,
        sequence: SequencedTransaction,
        result: IterationResult
    ) -> Optional[List[AddressLookupTableAccount]]:
        if self.cached:
            result.missing_keys = await self.record_missing_keys(sequence)
            return [self.table.to_account()]
        try:
            table = await self.tables.create_ephemeral_table(sequence.account_keys)
        except LookupTableCreationError:
            raise
        except FlashArbError as e:
            logger.warning(f"Lookup table for this opportunity is incomplete: {e}")
            return None
        return [table.to_account()]

    async def _advance(self, result: IterationResult) -> None:
        self._enter(LoopState.QUOTING, result)
        opportunity = await self.quote()
        if opportunity is None:
            return

        result.opportunity = opportunity
        self._enter(LoopState.EVALUATING, result)
        if not opportunity.profitable:
            logger.debug(
                f"No opportunity: out {opportunity.sell_quote.out_amount} <= repay {opportunity.repayment_amount}"
            )
            return
        logger.info(
            f"Opportunity: out {colors['YELLOW']}{opportunity.sell_quote.out_amount}{colors['RESET']} > "
            f"repay {opportunity.repayment_amount} (profit {opportunity.expected_profit})"
        )

        sequence = await self.build_sequence(opportunity)
        if sequence is None:
            return
        self._enter(LoopState.CONVERGING, result)
        lookup_tables = await self._lookup_tables_for(sequence, result)
        if lookup_tables is None:
            return

        self._enter(LoopState.SUBMITTING, result)
        result.submission = await self.submitter.submit(sequence.instructions, lookup_tables)
        if result.submission.success:
            logger.info(f"Transaction signature {colors['CYAN']}{result.submission.signature}{colors['RESET']}")
        else:
            logger.warning(f"{colors['RED']}Transaction failed{colors['RESET']}: {result.submission.error}")

    async def run_once(self) -> IterationResult:
        """
        One pass through the states, ending in COOLING.

        Errors other than the two below are logged and the iteration still
        ends in COOLING.

        Raises:
            MissingLookupTableError: If the cached table disappears
            LookupTableCreationError: If a lookup table could not be created
        """
        result = IterationResult()
        try:
            await self._advance(result)
        except (MissingLookupTableError, LookupTableCreationError):
            raise
        except Exception as e:
            logger.error(f"{colors['RED']}Iteration failed while {self.state.value}{colors['RESET']}: {e}")

        self._enter(LoopState.COOLING, result)
        await asyncio.sleep(self.sleep_seconds)
        return result

    async def run(self, max_iterations: Optional[int] = None) -> None:
        """Loop forever, or for max_iterations passes."""
        if self.loan is None:
            await self.prepare()
        iteration = 0
        while max_iterations is None or iteration < max_iterations:
            await self.run_once()
            iteration += 1
