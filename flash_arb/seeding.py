"""
Key seeding: sample routes and record the accounts they touch.
"""
import asyncio
import logging
from typing import List, Optional

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .cache_store import DiskCacheStore, KeyFrequencyCache
from .constants import DEFAULT_SLIPPAGE_BPS, SEED_AMOUNT, SEED_ROUNDS, SEED_SLEEP_SECONDS, SEED_TAKE_ROUTES
from .flash_loan import FlashLoanClient
from .jupiter_client import JupiterClient, JupiterQuote
from .utils import get_terminal_colors

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


def instruction_keys(instructions: List[Instruction]) -> List[str]:
    """All account keys of instructions, duplicates included."""
    return [str(meta.pubkey) for ix in instructions for meta in ix.accounts]


class KeySeeder:
    """Fills key frequency caches and keeps the network table registry current."""

    def __init__(self, store: DiskCacheStore, registry_name: str):
        self.store = store
        self.registry_name = registry_name

    async def record(self, cache_name: str, keys: List[str]) -> KeyFrequencyCache:
        """Record keys into a cache document and flush it."""
        async with self.store.lock(cache_name):
            cache = self.store.load_key_cache(cache_name)
            new_keys = cache.record(keys)
            self.store.save_key_cache(cache_name, cache)
        logger.debug(f"Recorded {len(keys)} keys ({len(new_keys)} new) into {cache_name}")
        return cache

    def register_cache_table(self, cache: KeyFrequencyCache) -> None:
        if cache.lookup_table_address and self.store.register_lookup_table(
            self.registry_name, cache.lookup_table_address
        ):
            logger.info(f"Registered lookup table {cache.lookup_table_address} in {self.registry_name}")

    async def seed_flash_loan_keys(
        self,
        flash_loans: FlashLoanClient,
        cache_name: str,
        mint: Pubkey,
        amount: float,
        referral_wallet: Optional[Pubkey] = None
    ) -> KeyFrequencyCache:
        """Record the accounts of a stand-alone flash loan."""
        plan = await flash_loans.get_flash_loan_instructions(mint, amount, referral_wallet)
        cache = await self.record(cache_name, [str(k) for k in plan.account_keys()])
        self.register_cache_table(cache)
        logger.info(f"Done. Results saved to {colors['CYAN']}{cache_name}{colors['RESET']}")
        return cache

    async def _record_route(
        self, jupiter: JupiterClient, quote: JupiterQuote, user: str, slippage_bps: int
    ) -> List[str]:
        response = await jupiter.get_swap_instructions(quote, user, slippage_bps=slippage_bps)
        if response is None:
            return []
        return instruction_keys(response.setup() + response.swap() + response.cleanup())

    async def seed_arbitrage_keys(
        self,
        jupiter: JupiterClient,
        flash_loans: FlashLoanClient,
        cache_name: str,
        mint1: Pubkey,
        mint2: Pubkey,
        seed_rounds: int = SEED_ROUNDS,
        sleep_seconds: float = SEED_SLEEP_SECONDS,
        amount: float = SEED_AMOUNT,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        take_routes: int = SEED_TAKE_ROUTES
    ) -> KeyFrequencyCache:
        """
        Sample up to take_routes routes each way for seed_rounds rounds.

        The flash loan's accounts are recorded once; every sampled route's
        setup, swap and cleanup accounts are recorded per round. The cache
        is flushed after each round.

        Args:
            jupiter: Route source
            flash_loans: Builds the loan whose accounts are recorded
            cache_name: Key cache document for the mint pair
            mint1: Loan mint
            mint2: Intermediate mint
            seed_rounds: Number of sampling rounds
            sleep_seconds: Pause between rounds
            amount: Loan size in UI units
            slippage_bps: Slippage passed to quotes
            take_routes: Routes sampled per direction per round
        """
        plan = await flash_loans.get_flash_loan_instructions(mint1, amount)
        cache = await self.record(cache_name, [str(k) for k in plan.account_keys()])
        user = str(flash_loans.solana.payer)

        for round_number in range(1, seed_rounds + 1):
            buy_quotes = await jupiter.get_route_quotes(
                str(mint1), str(mint2), plan.amount, slippage_bps=slippage_bps, take_routes=take_routes
            )
            sell_amount = buy_quotes[0].out_amount if buy_quotes else plan.amount
            sell_quotes = await jupiter.get_route_quotes(
                str(mint2), str(mint1), sell_amount, slippage_bps=slippage_bps, take_routes=take_routes
            )

            round_keys: List[str] = []
            for quote in buy_quotes + sell_quotes:
                round_keys.extend(await self._record_route(jupiter, quote, user, slippage_bps))
            cache = await self.record(cache_name, round_keys)

            logger.info(
                f"Round {round_number} done: {len(buy_quotes)} buy / {len(sell_quotes)} sell routes, "
                f"{colors['GREEN']}{len(cache)}{colors['RESET']} keys cached"
            )
            if round_number < seed_rounds:
                await asyncio.sleep(sleep_seconds)

        self.register_cache_table(cache)
        logger.info(f"Done. Results saved to {colors['CYAN']}{cache_name}{colors['RESET']}")
        return cache
