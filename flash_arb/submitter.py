"""
Turns an ordered instruction list into a signed v0 transaction and sends it.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from .constants import MAX_TRANSACTION_SIZE
from .errors import FlashArbError, TransactionTooLargeError
from .solana_client import SolanaClient
from .utils import get_terminal_colors

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

# Returned by send in simulate-only mode
SIMULATED_SIGNATURE = "simulated"


@dataclass
class SubmissionResult:
    """Outcome of handing one instruction sequence to the ledger."""
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    size_bytes: Optional[int] = None
    simulated: bool = False


class TransactionSubmitter:
    """Builds, signs and sends v0 transactions for the configured wallet."""

    def __init__(
        self,
        solana_client: SolanaClient,
        confirm: bool = True,
        simulate_only: bool = False,
        skip_preflight: bool = False
    ):
        self.solana = solana_client
        self.confirm = confirm
        self.simulate_only = simulate_only
        self.skip_preflight = skip_preflight

    async def build(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Optional[List[AddressLookupTableAccount]] = None
    ) -> VersionedTransaction:
        """
        Compile and sign a v0 transaction.

        Raises:
            ValueError: If there are no instructions or no wallet
            FlashArbError: If no recent blockhash is available
            TransactionTooLargeError: If the signed transaction exceeds 1232 bytes
        """
        if not instructions:
            raise ValueError("No instructions to build transaction")
        if self.solana.wallet is None:
            raise ValueError("No wallet available for transaction signing")

        recent_blockhash = await self.solana.get_recent_blockhash()
        if not recent_blockhash:
            raise FlashArbError("Failed to get recent blockhash")

        message = MessageV0.try_compile(
            payer=self.solana.wallet.pubkey(),
            instructions=list(instructions),
            address_lookup_table_accounts=lookup_tables or [],
            recent_blockhash=recent_blockhash
        )
        tx = VersionedTransaction(message, [self.solana.wallet])

        raw_len = len(bytes(tx))
        if raw_len > MAX_TRANSACTION_SIZE:
            logger.warning(
                f"Transaction too large: raw={colors['YELLOW']}{raw_len}{colors['RESET']} bytes "
                f"(max {MAX_TRANSACTION_SIZE}), instr={len(instructions)}, "
                f"ALTs={len(lookup_tables or [])}"
            )
            raise TransactionTooLargeError(raw_len, MAX_TRANSACTION_SIZE)

        logger.debug(
            f"Built v0 transaction: {len(instructions)} instructions, "
            f"{len(lookup_tables or [])} ALTs, size={raw_len}/{MAX_TRANSACTION_SIZE} bytes"
        )
        return tx

    async def _simulate(self, tx: VersionedTransaction) -> str:
        sim = await self.solana.simulate_versioned_transaction(tx)
        if sim is None:
            raise FlashArbError("Simulation request failed")
        if sim["err"] is not None:
            raise FlashArbError(f"Simulation failed: {sim['err']}")
        logger.info(
            f"{colors['DIM']}Simulated transaction ({len(bytes(tx))} bytes, "
            f"{sim.get('units_consumed')} CU), nothing sent{colors['RESET']}"
        )
        return SIMULATED_SIGNATURE

    async def send(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Optional[List[AddressLookupTableAccount]] = None,
        confirm: Optional[bool] = None
    ) -> str:
        """
        Build, send and (optionally) confirm a transaction.

        In simulate-only mode the transaction is simulated instead and
        SIMULATED_SIGNATURE is returned.

        Returns:
            Transaction signature

        Raises:
            FlashArbError: If sending, confirmation or the simulation fails
        """
        tx = await self.build(instructions, lookup_tables)
        if self.simulate_only:
            return await self._simulate(tx)

        signature = await self.solana.send_versioned_transaction(tx, skip_preflight=self.skip_preflight)
        if not signature:
            raise FlashArbError("Transaction was not accepted by the RPC node")

        should_confirm = self.confirm if confirm is None else confirm
        if should_confirm and not await self.solana.confirm_transaction(signature):
            raise FlashArbError(f"Transaction {signature} was not confirmed")
        return signature

    async def submit(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Optional[List[AddressLookupTableAccount]] = None
    ) -> SubmissionResult:
        """
        Send (or simulate, in dry-run mode) without raising.

        Returns:
            SubmissionResult describing success or the failure reason
        """
        try:
            if self.simulate_only:
                tx = await self.build(instructions, lookup_tables)
                sim = await self.solana.simulate_versioned_transaction(tx)
                if sim is None:
                    return SubmissionResult(success=False, error="simulation request failed", size_bytes=len(bytes(tx)), simulated=True)
                return SubmissionResult(
                    success=sim["err"] is None,
                    error=str(sim["err"]) if sim["err"] is not None else None,
                    size_bytes=len(bytes(tx)),
                    simulated=True
                )

            signature = await self.send(instructions, lookup_tables)
            return SubmissionResult(success=True, signature=signature)
        except TransactionTooLargeError as e:
            return SubmissionResult(success=False, error=str(e), size_bytes=e.size)
        except Exception as e:
            logger.error(f"Transaction submission failed: {e}")
            return SubmissionResult(success=False, error=str(e))
