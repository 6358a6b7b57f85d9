"""
Solana RPC client for slots, accounts, lookup tables and transaction sending.
"""
import asyncio
import base64
import logging
import struct
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.hash import Hash
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.address_lookup_table_account import AddressLookupTableAccount
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts

from .constants import (
    ACTIVE_TABLE_DEACTIVATION_SLOT,
    LOOKUP_TABLE_META_SIZE,
    MAX_ACCOUNTS_TO_FETCH,
)
from .errors import AccountNotFoundError
from .utils import chunk_list

logger = logging.getLogger(__name__)

MINT_DECIMALS_OFFSET = 44


@dataclass
class LookupTableState:
    """On-chain state of an address lookup table."""
    address: Pubkey
    addresses: List[Pubkey] = field(default_factory=list)
    deactivation_slot: Optional[int] = None  # None while the table is active

    @property
    def is_active(self) -> bool:
        return self.deactivation_slot is None

    def can_close(self, current_slot: int) -> bool:
        """Closable only once the current slot is past the deactivation slot."""
        return self.deactivation_slot is not None and current_slot > self.deactivation_slot

    def address_strings(self) -> List[str]:
        return [str(a) for a in self.addresses]

    def to_account(self) -> AddressLookupTableAccount:
        """Convert to the solders type MessageV0.try_compile expects."""
        return AddressLookupTableAccount(key=self.address, addresses=list(self.addresses))


def parse_lookup_table_state(address: Pubkey, data: bytes) -> LookupTableState:
    """
    Parse raw lookup table account data.

    Layout: u32 state tag, u64 deactivation slot, u64 last extended slot,
    u8 start index, optional authority, padding; addresses start at byte 56.

    Raises:
        ValueError: If data is shorter than the table header
    """
    if len(data) < LOOKUP_TABLE_META_SIZE:
        raise ValueError(f"Lookup table {address} data too short: {len(data)} bytes")
    _, deactivation_slot = struct.unpack_from("<IQ", data, 0)
    addr_data = data[LOOKUP_TABLE_META_SIZE:]
    addresses = [
        Pubkey.from_bytes(addr_data[i * 32:(i + 1) * 32])
        for i in range(len(addr_data) // 32)
    ]
    return LookupTableState(
        address=address,
        addresses=addresses,
        deactivation_slot=None if deactivation_slot == ACTIVE_TABLE_DEACTIVATION_SLOT else deactivation_slot
    )


def _account_data_bytes(raw: Any) -> bytes:
    """
    Normalize account data to bytes.

    solana-py may return data as bytes, a base64 string, or a list
    ["<base64>", "<encoding>"] depending on version and encoding.
    """
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, list) and len(raw) > 0 and isinstance(raw[0], str):
        return base64.b64decode(raw[0])
    if isinstance(raw, str):
        return base64.b64decode(raw)
    raise TypeError(f"Unexpected account data type: {type(raw)} (expected bytes, str, or list)")


class SolanaClient:
    """Client for Solana RPC operations with failover support."""

    def __init__(self, rpc_url: str, wallet_keypair: Optional[Keypair] = None, fallback_rpc_url: Optional[str] = None):
        self.rpc_url_primary = rpc_url
        self.rpc_url_fallback = fallback_rpc_url
        self._active_rpc_url = rpc_url
        self._failover_used = False  # Track if failover has been used (for logging)
        self.client = AsyncClient(rpc_url)
        self.wallet = wallet_keypair

    async def _switch_to_fallback(self, reason: str) -> bool:
        """
        Switch to fallback RPC if available.

        Args:
            reason: Reason for failover (for logging)

        Returns:
            True if switched to fallback, False if no fallback available
        """
        if self.rpc_url_fallback and self._active_rpc_url == self.rpc_url_primary:
            if not self._failover_used:
                # Don't log full URLs, they may carry API keys
                primary_domain = self.rpc_url_primary.split('//')[1].split('/')[0] if '//' in self.rpc_url_primary else self.rpc_url_primary
                fallback_domain = self.rpc_url_fallback.split('//')[1].split('/')[0] if '//' in self.rpc_url_fallback else self.rpc_url_fallback
                logger.warning(
                    f"RPC failover: PRIMARY ({primary_domain}) -> FALLBACK ({fallback_domain}), reason: {reason}"
                )
                self._failover_used = True

            try:
                await self.client.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing primary RPC client: {e}")

            self._active_rpc_url = self.rpc_url_fallback
            self.client = AsyncClient(self.rpc_url_fallback)
            return True
        return False

    def _is_failover_error(self, error: Exception) -> bool:
        """
        Check if error should trigger failover.

        Args:
            error: Exception to check

        Returns:
            True if error should trigger failover
        """
        error_str = str(error).lower()
        error_type = type(error).__name__

        if '429' in error_str or 'rate limit' in error_str or 'quota' in error_str or 'exceeded' in error_str:
            return True
        if 'timeout' in error_str or 'timed out' in error_str:
            return True
        if error_type in ('ConnectError', 'ConnectTimeout', 'NetworkError', 'TimeoutError'):
            return True
        if 'connection' in error_str or 'network' in error_str:
            return True

        return False

    async def _with_failover(self, coro_func, *args, **kwargs):
        """
        Execute coroutine with failover support.

        Raises:
            Exception: If both primary and fallback fail
        """
        previous_client = self.client
        try:
            return await coro_func(*args, **kwargs)
        except Exception as e:
            if self._is_failover_error(e) and await self._switch_to_fallback(str(e)):
                # Bound methods of the closed client must be re-resolved
                if getattr(coro_func, '__self__', None) is previous_client:
                    coro_func = getattr(self.client, coro_func.__name__)
                try:
                    return await coro_func(*args, **kwargs)
                except Exception as e2:
                    logger.error(f"Both primary and fallback RPC failed. Last error: {e2}")
                    raise e2 from e
            raise

    @property
    def payer(self) -> Pubkey:
        if self.wallet is None:
            raise ValueError("No wallet configured")
        return self.wallet.pubkey()

    async def get_current_slot(self) -> Optional[int]:
        """
        Get current slot from Solana RPC.

        Returns:
            Current slot number (int) if successful, None if error occurred
        """
        try:
            result = await self._with_failover(self.client.get_slot, commitment=Confirmed)
            if result.value is not None:
                logger.debug(f"Current slot: {result.value}")
                return result.value
            logger.warning("get_slot returned None")
            return None
        except Exception as e:
            logger.error(f"Error getting current slot: {e}")
            return None

    async def get_account_data(self, pubkey: Pubkey) -> Optional[bytes]:
        """
        Fetch raw account data.

        Returns:
            Account data bytes, or None if the account does not exist
        """
        result = await self._with_failover(self.client.get_account_info, pubkey, commitment=Confirmed)
        if result.value is None:
            return None
        return _account_data_bytes(result.value.data)

    async def account_exists(self, pubkey: Pubkey) -> bool:
        return await self.get_account_data(pubkey) is not None

    async def get_mint_decimals(self, mint: Pubkey) -> int:
        """
        Read the decimals field of an SPL mint.

        Raises:
            AccountNotFoundError: If the mint account does not exist
        """
        data = await self.get_account_data(mint)
        if data is None:
            raise AccountNotFoundError(str(mint), "mint")
        if len(data) <= MINT_DECIMALS_OFFSET:
            raise ValueError(f"Account {mint} is not a mint ({len(data)} bytes)")
        return data[MINT_DECIMALS_OFFSET]

    async def get_lookup_table_state(self, address: Pubkey) -> Optional[LookupTableState]:
        """
        Load a single address lookup table.

        Returns:
            LookupTableState, or None if the table account does not exist
        """
        data = await self.get_account_data(address)
        if data is None:
            return None
        state = parse_lookup_table_state(address, data)
        logger.debug(f"Loaded lookup table {address} with {len(state.addresses)} addresses")
        return state

    async def get_lookup_table_states(self, addresses: List[str]) -> List[LookupTableState]:
        """
        Load many lookup tables with chunked getMultipleAccounts calls.

        Tables that no longer exist on chain are skipped.

        Args:
            addresses: Lookup table addresses (base58 strings)

        Returns:
            States of the tables that exist, in input order
        """
        if not addresses:
            return []

        pubkeys = [Pubkey.from_string(a) for a in addresses]

        async def _fetch(chunk: List[Pubkey]):
            result = await self._with_failover(self.client.get_multiple_accounts, chunk, commitment=Confirmed)
            return list(zip(chunk, result.value))

        chunk_results = await asyncio.gather(
            *(_fetch(chunk) for chunk in chunk_list(pubkeys, MAX_ACCOUNTS_TO_FETCH))
        )

        states = []
        for chunk in chunk_results:
            for pubkey, account in chunk:
                if account is None:
                    logger.debug(f"Lookup table {pubkey} not found on chain, skipping")
                    continue
                states.append(parse_lookup_table_state(pubkey, _account_data_bytes(account.data)))
        return states

    async def get_recent_blockhash(self) -> Optional[Hash]:
        """
        Get recent blockhash for transaction building.

        Returns:
            Recent blockhash as Hash object, or None if failed
        """
        try:
            result = await self._with_failover(self.client.get_latest_blockhash, commitment=Confirmed)
            if result.value:
                return result.value.blockhash
            return None
        except Exception as e:
            logger.error(f"Error getting recent blockhash: {e}")
            return None

    async def simulate_versioned_transaction(
        self,
        tx: VersionedTransaction,
        commitment: str = "confirmed"
    ) -> Optional[Dict[str, Any]]:
        """
        Simulate a VersionedTransaction with failover support.

        Returns:
            Simulation result dict with err, logs, units_consumed, or None
        """
        async def _simulate():
            result = await self.client.simulate_transaction(tx, commitment=commitment)
            sim_result = {
                "err": result.value.err,
                "logs": result.value.logs or [],
                "units_consumed": result.value.units_consumed,
            }
            if result.value.err:
                logger.warning(f"Simulation error: {result.value.err}")
            return sim_result

        try:
            return await self._with_failover(_simulate)
        except Exception as e:
            logger.error(f"Error simulating VersionedTransaction: {e}")
            return None

    async def send_versioned_transaction(
        self,
        tx: VersionedTransaction,
        skip_preflight: bool = False,
        max_retries: int = 3
    ) -> Optional[str]:
        """
        Send a signed VersionedTransaction with failover support.

        Args:
            tx: VersionedTransaction object (already signed)
            skip_preflight: Skip preflight checks
            max_retries: Send attempts before giving up

        Returns:
            Transaction signature (base58 string) if successful, None otherwise
        """
        async def _send():
            for attempt in range(max_retries):
                try:
                    opts = TxOpts(
                        skip_preflight=skip_preflight,
                        preflight_commitment=Confirmed,
                        max_retries=0  # We handle retries ourselves
                    )
                    result = await self.client.send_transaction(tx, opts=opts)

                    if result.value:
                        sig = str(result.value)
                        logger.debug(f"Transaction sent: {sig}")
                        return sig
                    logger.warning(f"Transaction send returned no signature (attempt {attempt + 1})")

                except Exception as e:
                    logger.warning(f"Transaction send attempt {attempt + 1} failed: {e}")
                    if attempt < max_retries - 1:
                        await asyncio.sleep(0.5)
                    else:
                        raise

            return None

        try:
            return await self._with_failover(_send)
        except Exception as e:
            logger.error(f"Error sending VersionedTransaction: {e}")
            return None

    async def confirm_transaction(
        self,
        signature: str,
        commitment: str = "confirmed",
        timeout: float = 60.0
    ) -> bool:
        """
        Wait for transaction confirmation.

        Args:
            signature: Transaction signature
            commitment: Commitment level
            timeout: Timeout in seconds

        Returns:
            True if confirmed without error, False otherwise
        """
        try:
            result = await asyncio.wait_for(
                self.client.confirm_transaction(Signature.from_string(signature), commitment=commitment),
                timeout=timeout
            )
            status = result.value[0] if result.value else None
            if status is None:
                return False
            if status.err is not None:
                logger.warning(f"Transaction {signature} failed on chain: {status.err}")
                return False
            return True
        except Exception as e:
            logger.error(f"Error confirming transaction {signature}: {e}")
            return False

    async def close(self):
        """Close RPC client."""
        await self.client.close()
