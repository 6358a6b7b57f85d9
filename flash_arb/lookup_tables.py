"""
Address lookup table instructions and convergence of tables with key caches.

A key cache names the accounts a route family touches. Convergence makes the
on-chain table a superset of that cache: create the table once, then extend it
with whatever the cache has that the table lacks, in fixed-size batches.
Batches that exhaust their retries are reported and picked up again by the
next convergence, which re-diffs against the table.

Callers must not run two convergences against the same cache name at once.
"""
import asyncio
import logging
import struct
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .cache_store import DiskCacheStore, KeyFrequencyCache, extracted_keys_cache_name
from .constants import (
    ALT_ACTIVATION_SLEEP_SECONDS,
    ALT_PROGRAM_ID,
    IX_RETRY_SLEEP_SECONDS,
    MAX_ACCOUNTS_PER_EXTEND,
    MAX_IX_RETRIES,
    MAX_TABLES_PER_TX,
    SYSTEM_PROGRAM_ID,
)
from .errors import FlashArbError, LookupTableCreationError, MissingLookupTableError, RetryExhaustedError
from .solana_client import LookupTableState, SolanaClient
from .submitter import TransactionSubmitter
from .utils import chunk_list, dedupe_preserving_order, get_terminal_colors, with_retry

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

ALT_PROGRAM = Pubkey.from_string(ALT_PROGRAM_ID)
SYSTEM_PROGRAM = Pubkey.from_string(SYSTEM_PROGRAM_ID)

# Instruction tags of the address lookup table program
CREATE_LOOKUP_TABLE = 0
EXTEND_LOOKUP_TABLE = 2
DEACTIVATE_LOOKUP_TABLE = 3
CLOSE_LOOKUP_TABLE = 4


def derive_lookup_table_address(authority: Pubkey, recent_slot: int) -> Tuple[Pubkey, int]:
    """Derive the table PDA from authority + slot."""
    return Pubkey.find_program_address(
        [bytes(authority), struct.pack("<Q", recent_slot)],
        ALT_PROGRAM,
    )


def create_lookup_table_instruction(
    authority: Pubkey, payer: Pubkey, recent_slot: int
) -> Tuple[Instruction, Pubkey]:
    """Build a CreateLookupTable instruction. Returns (instruction, table_address)."""
    table_address, bump = derive_lookup_table_address(authority, recent_slot)
    data = struct.pack("<IQB", CREATE_LOOKUP_TABLE, recent_slot, bump)
    accounts = [
        AccountMeta(table_address, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
    ]
    return Instruction(ALT_PROGRAM, data, accounts), table_address


def extend_lookup_table_instruction(
    table_address: Pubkey, authority: Pubkey, payer: Pubkey, new_addresses: Sequence[Pubkey]
) -> Instruction:
    """Build an ExtendLookupTable instruction carrying new_addresses."""
    data = struct.pack("<IQ", EXTEND_LOOKUP_TABLE, len(new_addresses))
    data += b"".join(bytes(addr) for addr in new_addresses)
    accounts = [
        AccountMeta(table_address, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
    ]
    return Instruction(ALT_PROGRAM, data, accounts)


def deactivate_lookup_table_instruction(table_address: Pubkey, authority: Pubkey) -> Instruction:
    accounts = [
        AccountMeta(table_address, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
    ]
    return Instruction(ALT_PROGRAM, struct.pack("<I", DEACTIVATE_LOOKUP_TABLE), accounts)


def close_lookup_table_instruction(table_address: Pubkey, authority: Pubkey, recipient: Pubkey) -> Instruction:
    accounts = [
        AccountMeta(table_address, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
        AccountMeta(recipient, is_signer=False, is_writable=True),
    ]
    return Instruction(ALT_PROGRAM, struct.pack("<I", CLOSE_LOOKUP_TABLE), accounts)


def select_closable_tables(states: Sequence[LookupTableState], current_slot: int) -> List[LookupTableState]:
    """Tables whose deactivation cooldown has elapsed at current_slot."""
    return [state for state in states if state.can_close(current_slot)]


@dataclass
class BatchOutcome:
    """Result of one retried batch (extend, deactivate or close)."""
    items: List[str]
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ConvergenceReport:
    """What a convergence run did to a table."""
    table_address: Pubkey
    created: bool = False
    missing_count: int = 0
    batches: List[BatchOutcome] = field(default_factory=list)

    @property
    def added_keys(self) -> List[str]:
        return [k for b in self.batches if b.success for k in b.items]

    @property
    def failed_keys(self) -> List[str]:
        return [k for b in self.batches if not b.success for k in b.items]

    @property
    def complete(self) -> bool:
        return all(b.success for b in self.batches)


class LookupTableManager:
    """Creates, extends, deactivates and closes lookup tables owned by the wallet."""

    def __init__(
        self,
        solana_client: SolanaClient,
        submitter: TransactionSubmitter,
        store: DiskCacheStore,
        registry_name: str,
        max_retries: int = MAX_IX_RETRIES,
        retry_sleep: float = IX_RETRY_SLEEP_SECONDS,
        batch_size: int = MAX_ACCOUNTS_PER_EXTEND,
        tables_per_tx: int = MAX_TABLES_PER_TX
    ):
        self.solana = solana_client
        self.submitter = submitter
        self.store = store
        self.registry_name = registry_name
        self.max_retries = max_retries
        self.retry_sleep = retry_sleep
        self.batch_size = batch_size
        self.tables_per_tx = tables_per_tx

    @property
    def dry_run(self) -> bool:
        """True when the submitter only simulates; nothing is written on chain or to the registry."""
        return self.submitter.simulate_only

    async def _retry(self, operation, label: str, fatal=()):
        return await with_retry(
            operation, ceiling=self.max_retries, interval=self.retry_sleep, label=label, fatal=fatal
        )

    async def create_table(self) -> Pubkey:
        """
        Create a new lookup table and register it in the network registry.

        Raises:
            LookupTableCreationError: If creation failed on every attempt (fatal)
        """
        authority = self.solana.payer

        async def _create() -> Tuple[Pubkey, str]:
            slot = await self.solana.get_current_slot()
            if slot is None:
                raise FlashArbError("Could not read current slot")
            ix, table_address = create_lookup_table_instruction(authority, authority, slot)
            signature = await self.submitter.send([ix], confirm=True)
            return table_address, signature

        try:
            table_address, signature = await self._retry(_create, "create lookup table")
        except RetryExhaustedError as e:
            raise LookupTableCreationError(e.label, e.attempts, e.last_error) from e

        if self.dry_run:
            logger.info(f"Simulated creation of lookup table {colors['CYAN']}{table_address}{colors['RESET']}")
            return table_address
        logger.info(f"Created lookup table {colors['CYAN']}{table_address}{colors['RESET']} (tx {signature})")
        self.store.register_lookup_table(self.registry_name, table_address)
        return table_address

    async def ensure_table(self, cache: KeyFrequencyCache, cache_name: str) -> Pubkey:
        """
        Return the cache's table, creating and persisting one if it has none.

        The new address is saved into the cache document before any key is
        added to the table. A dry run leaves the cache document untouched.
        """
        if cache.lookup_table_address:
            return Pubkey.from_string(cache.lookup_table_address)

        table_address = await self.create_table()
        if self.dry_run:
            return table_address
        cache.set_lookup_table(table_address)
        self.store.save_key_cache(cache_name, cache)
        logger.info(f"Lookup table saved to {colors['CYAN']}{cache_name}{colors['RESET']}")
        return table_address

    async def load_table(self, table_address: Pubkey) -> LookupTableState:
        """
        Raises:
            MissingLookupTableError: If the table account does not exist
        """
        state = await self.solana.get_lookup_table_state(table_address)
        if state is None:
            raise MissingLookupTableError(f"Address lookup table {table_address} does not exist")
        return state

    async def reload_table(self, table_address: Pubkey) -> LookupTableState:
        """
        load_table with RPC errors retried.

        Raises:
            MissingLookupTableError: At once, if the table does not exist
            RetryExhaustedError: If the table could not be read
        """
        return await self._retry(
            lambda: self.load_table(table_address), "load lookup table", fatal=(MissingLookupTableError,)
        )

    async def extend(self, table_address: Pubkey, missing_keys: Sequence[str]) -> List[BatchOutcome]:
        """
        Add keys to a table, one extend instruction per batch.

        Batches run concurrently and each is retried on its own. A batch that
        exhausts its retries is reported as failed; succeeded batches stay.
        """
        authority = self.solana.payer
        batches = chunk_list(dedupe_preserving_order(str(k) for k in missing_keys), self.batch_size)

        async def _extend_batch(batch: List[str]) -> BatchOutcome:
            ix = extend_lookup_table_instruction(
                table_address, authority, authority, [Pubkey.from_string(k) for k in batch]
            )
            try:
                signature = await self._retry(
                    lambda: self.submitter.send([ix], confirm=True),
                    f"extend lookup table (+{len(batch)} keys)"
                )
                logger.debug(f"Extended {table_address} with {len(batch)} keys (tx {signature})")
                return BatchOutcome(items=batch, success=True, signature=signature)
            except RetryExhaustedError as e:
                logger.error(f"Failed to add {len(batch)} keys to {table_address}: {e}")
                return BatchOutcome(items=batch, success=False, error=str(e))

        return list(await asyncio.gather(*(_extend_batch(b) for b in batches)))

    async def converge(self, cache_name: str) -> ConvergenceReport:
        """
        Make the cache's lookup table contain every cached key.

        In a dry run a table that would be newly created does not exist, so
        the report only counts the keys it would receive.

        Raises:
            LookupTableCreationError: If a new table could not be created
            MissingLookupTableError: If the cached table is gone or deactivated
        """
        async with self.store.lock(cache_name):
            cache = self.store.load_key_cache(cache_name)
            created = cache.lookup_table_address is None
            table_address = await self.ensure_table(cache, cache_name)
            if created and self.dry_run:
                missing = cache.diff_against_table([])
                logger.info(
                    f"New lookup table would receive {colors['GREEN']}{len(missing)}{colors['RESET']} keys"
                )
                return ConvergenceReport(table_address=table_address, created=True, missing_count=len(missing))
            if not self.dry_run:
                self.store.register_lookup_table(self.registry_name, table_address)

            state = await self.reload_table(table_address)
            if not state.is_active:
                raise MissingLookupTableError(
                    f"Address lookup table {table_address} is deactivated (slot {state.deactivation_slot})"
                )

            missing = cache.diff_against_table(state.addresses)
            report = ConvergenceReport(table_address=table_address, created=created, missing_count=len(missing))
            if missing:
                report.batches = await self.extend(table_address, missing)
                logger.info(
                    f"Added {colors['GREEN']}{len(report.added_keys)}{colors['RESET']}/{len(missing)} "
                    f"keys to lookup table {colors['CYAN']}{table_address}{colors['RESET']}"
                )
                if not report.complete:
                    logger.warning(
                        f"{colors['RED']}{len(report.failed_keys)} keys still missing{colors['RESET']}, "
                        f"run convergence again to retry them"
                    )
            else:
                logger.info(f"Lookup table {table_address} already covers all {len(cache)} cached keys")
            return report

    async def create_ephemeral_table(self, keys: Sequence[str]) -> LookupTableState:
        """
        Create a fresh table holding keys and wait until it is usable.

        Raises:
            LookupTableCreationError: If the table could not be created
            FlashArbError: If any batch could not be added or the table could not be read
        """
        table_address = await self.create_table()
        if self.dry_run:
            # Never created, so compile against what it would hold
            return LookupTableState(
                address=table_address,
                addresses=[Pubkey.from_string(k) for k in dedupe_preserving_order(str(k) for k in keys)]
            )
        outcomes = await self.extend(table_address, keys)
        failed = [b for b in outcomes if not b.success]
        if failed:
            raise FlashArbError(f"{sum(len(b.items) for b in failed)} keys could not be added to {table_address}")
        # New entries are only usable from the slot after the extension
        await asyncio.sleep(ALT_ACTIVATION_SLEEP_SECONDS)
        return await self.reload_table(table_address)

    async def _run_table_batches(self, label: str, addresses: List[str], build_ix) -> List[BatchOutcome]:
        outcomes = []
        for batch in chunk_list(addresses, self.tables_per_tx):
            instructions = [build_ix(Pubkey.from_string(a)) for a in batch]
            try:
                signature = await self._retry(
                    lambda: self.submitter.send(instructions, confirm=True),
                    f"{label} {len(batch)} tables"
                )
                logger.info(f"{label.capitalize()} {colors['GREEN']}{len(batch)}{colors['RESET']} tables (tx {signature})")
                outcomes.append(BatchOutcome(items=batch, success=True, signature=signature))
            except RetryExhaustedError as e:
                logger.error(f"Failed to {label} {len(batch)} tables: {e}")
                outcomes.append(BatchOutcome(items=batch, success=False, error=str(e)))
        return outcomes

    async def deactivate_all(self, table_addresses: Sequence[str]) -> List[BatchOutcome]:
        """Deactivate every still-active table in table_addresses."""
        authority = self.solana.payer
        states = await self.solana.get_lookup_table_states(list(table_addresses))
        active = [str(s.address) for s in states if s.is_active]
        logger.info(f"Total number of tables: {len(states)}, active: {len(active)}")
        return await self._run_table_batches(
            "deactivate",
            active,
            lambda table: deactivate_lookup_table_instruction(table, authority)
        )

    async def close_eligible(
        self,
        table_addresses: Sequence[str],
        registry_name: Optional[str] = None
    ) -> List[BatchOutcome]:
        """
        Close tables whose deactivation cooldown has elapsed.

        Only addresses of successfully closed batches are removed from the
        registry; failed ones stay tracked for a later sweep. A dry run leaves
        the registry as it is.

        Raises:
            FlashArbError: If the current slot cannot be read
        """
        registry_name = registry_name or self.registry_name
        authority = self.solana.payer
        current_slot = await self.solana.get_current_slot()
        if current_slot is None:
            raise FlashArbError("Could not read current slot")

        states = await self.solana.get_lookup_table_states(list(table_addresses))
        closable = [str(s.address) for s in select_closable_tables(states, current_slot)]
        logger.info(
            f"Current slot {colors['GREEN']}{current_slot}{colors['RESET']}: "
            f"{len(states)} tables, {len(closable)} can be closed"
        )

        outcomes = await self._run_table_batches(
            "close",
            closable,
            lambda table: close_lookup_table_instruction(table, authority, authority)
        )
        if self.dry_run:
            return outcomes
        for outcome in outcomes:
            if outcome.success:
                self.store.unregister_lookup_tables(registry_name, outcome.items)
        return outcomes

    async def extract_table_keys(self, registry_name: Optional[str] = None) -> Dict[str, int]:
        """
        Count how often each address appears across every registered table.

        The counts are saved next to the registry as '<registry>-keys.json'.
        """
        registry_name = registry_name or self.registry_name
        states = await self.solana.get_lookup_table_states(self.store.load_table_registry(registry_name))
        counts = Counter(str(addr) for state in states for addr in state.addresses)
        results = dict(counts)
        self.store.save(extracted_keys_cache_name(registry_name), results)
        return results
