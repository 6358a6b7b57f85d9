"""
Tests for solana_client.py
"""
import base64
import struct
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from flash_arb.constants import ACTIVE_TABLE_DEACTIVATION_SLOT, LOOKUP_TABLE_META_SIZE
from flash_arb.errors import AccountNotFoundError
from flash_arb.solana_client import SolanaClient, parse_lookup_table_state


def _table_data(addresses, deactivation_slot=ACTIVE_TABLE_DEACTIVATION_SLOT):
    header = struct.pack("<IQ", 1, deactivation_slot)
    header += bytes(LOOKUP_TABLE_META_SIZE - len(header))
    return header + b"".join(bytes(a) for a in addresses)


def _account(data):
    account = MagicMock()
    account.data = data
    return account


class _FakeRpc:
    """Stand-in for AsyncClient with real bound coroutine methods."""

    def __init__(self, slot=None, error=None):
        self.slot = slot
        self.error = error
        self.closed = False

    async def get_slot(self, commitment=None):
        if self.error:
            raise self.error
        return MagicMock(value=self.slot)

    async def close(self):
        self.closed = True


class TestParseLookupTable:

    def test_active_table(self):
        address = Pubkey.new_unique()
        entries = [Pubkey.new_unique(), Pubkey.new_unique()]
        state = parse_lookup_table_state(address, _table_data(entries))

        assert state.is_active
        assert state.addresses == entries
        assert state.address_strings() == [str(e) for e in entries]
        assert state.to_account().key == address

    def test_deactivated_table(self):
        state = parse_lookup_table_state(Pubkey.new_unique(), _table_data([], deactivation_slot=500))

        assert not state.is_active
        assert state.deactivation_slot == 500
        assert not state.can_close(500)
        assert state.can_close(501)

    def test_short_data(self):
        with pytest.raises(ValueError):
            parse_lookup_table_state(Pubkey.new_unique(), b"\x01\x00")


class TestSolanaClient:
    """Tests for SolanaClient class."""

    @pytest.fixture
    def keypair(self):
        """Create a keypair for testing."""
        return Keypair()

    @pytest.fixture
    def client(self, keypair):
        """Create a SolanaClient instance for testing."""
        return SolanaClient("https://api.devnet.solana.com", keypair)

    @pytest.fixture
    def client_no_wallet(self):
        """Create a SolanaClient without wallet."""
        return SolanaClient("https://api.devnet.solana.com", None)

    def test_solana_client_initialization(self, client, keypair):
        """Test SolanaClient can be initialized."""
        assert client.rpc_url_primary == "https://api.devnet.solana.com"
        assert client.wallet == keypair
        assert client.payer == keypair.pubkey()

    def test_payer_requires_wallet(self, client_no_wallet):
        with pytest.raises(ValueError):
            _ = client_no_wallet.payer

    @pytest.mark.asyncio
    async def test_get_current_slot_success(self, client):
        """Test get_current_slot returns slot on success."""
        mock_response = MagicMock()
        mock_response.value = 12345

        with patch.object(client.client, 'get_slot', return_value=mock_response):
            assert await client.get_current_slot() == 12345

    @pytest.mark.asyncio
    async def test_get_current_slot_failure(self, client):
        """Test get_current_slot returns None on failure."""
        with patch.object(client.client, 'get_slot', side_effect=Exception("RPC error")):
            assert await client.get_current_slot() is None

    @pytest.mark.asyncio
    async def test_get_account_data_formats(self, client):
        """Account data may arrive as bytes, base64 string or [base64, encoding]."""
        raw = b"\x01\x02\x03"
        encoded = base64.b64encode(raw).decode()
        for data in (raw, encoded, [encoded, "base64"]):
            with patch.object(client.client, 'get_account_info', return_value=MagicMock(value=_account(data))):
                assert await client.get_account_data(Pubkey.new_unique()) == raw

    @pytest.mark.asyncio
    async def test_missing_account(self, client):
        with patch.object(client.client, 'get_account_info', return_value=MagicMock(value=None)):
            assert await client.get_account_data(Pubkey.new_unique()) is None
            assert await client.account_exists(Pubkey.new_unique()) is False
            assert await client.get_lookup_table_state(Pubkey.new_unique()) is None

    @pytest.mark.asyncio
    async def test_get_mint_decimals(self, client):
        data = bytes(44) + b"\x09" + bytes(37)
        with patch.object(client.client, 'get_account_info', return_value=MagicMock(value=_account(data))):
            assert await client.get_mint_decimals(Pubkey.new_unique()) == 9

    @pytest.mark.asyncio
    async def test_get_mint_decimals_missing_mint(self, client):
        with patch.object(client.client, 'get_account_info', return_value=MagicMock(value=None)):
            with pytest.raises(AccountNotFoundError):
                await client.get_mint_decimals(Pubkey.new_unique())

    @pytest.mark.asyncio
    async def test_get_lookup_table_states_skips_missing(self, client):
        present, gone = Pubkey.new_unique(), Pubkey.new_unique()
        entry = Pubkey.new_unique()
        response = MagicMock(value=[_account(_table_data([entry])), None])

        with patch.object(client.client, 'get_multiple_accounts', return_value=response) as mock_get:
            states = await client.get_lookup_table_states([str(present), str(gone)])

        assert mock_get.await_count == 1
        assert [s.address for s in states] == [present]
        assert states[0].addresses == [entry]

    @pytest.mark.asyncio
    async def test_get_lookup_table_states_empty(self, client):
        assert await client.get_lookup_table_states([]) == []

    @pytest.mark.asyncio
    async def test_simulate_versioned_transaction(self, client):
        sim = MagicMock()
        sim.err = {"code": 1}
        sim.logs = ["Program log: error"]
        sim.units_consumed = 0

        with patch.object(client.client, 'simulate_transaction', return_value=MagicMock(value=sim)):
            result = await client.simulate_versioned_transaction(MagicMock())

        assert result["err"] == {"code": 1}
        assert result["logs"] == ["Program log: error"]

    @pytest.mark.asyncio
    async def test_send_versioned_transaction(self, client):
        signature = str(Signature.new_unique())
        with patch.object(client.client, 'send_transaction', return_value=MagicMock(value=signature)):
            assert await client.send_versioned_transaction(MagicMock()) == signature

    @pytest.mark.asyncio
    async def test_send_versioned_transaction_failure(self, client):
        with patch.object(client.client, 'send_transaction', side_effect=Exception("blockhash not found")), \
                patch('flash_arb.solana_client.asyncio.sleep', new=AsyncMock()):
            assert await client.send_versioned_transaction(MagicMock(), max_retries=2) is None

    @pytest.mark.asyncio
    async def test_confirm_transaction(self, client):
        """Test confirm_transaction returns True only without an on-chain error."""
        ok, failed = MagicMock(err=None), MagicMock(err="InstructionError")
        signature = str(Signature.new_unique())

        with patch.object(client.client, 'confirm_transaction', return_value=MagicMock(value=[ok])):
            assert await client.confirm_transaction(signature) is True
        with patch.object(client.client, 'confirm_transaction', return_value=MagicMock(value=[failed])):
            assert await client.confirm_transaction(signature) is False
        with patch.object(client.client, 'confirm_transaction', side_effect=Exception("RPC error")):
            assert await client.confirm_transaction(signature) is False

    @pytest.mark.asyncio
    async def test_close(self, client):
        """Test close method closes RPC client."""
        await client.close()


class TestFailover:

    @pytest.mark.asyncio
    async def test_switches_to_fallback_on_rate_limit(self):
        primary = _FakeRpc(error=Exception("429 Too Many Requests"))
        fallback = _FakeRpc(slot=77)
        with patch('flash_arb.solana_client.AsyncClient', side_effect=[primary, fallback]):
            client = SolanaClient("https://primary.example", Keypair(), fallback_rpc_url="https://fallback.example")
            slot = await client.get_current_slot()

        assert slot == 77
        assert primary.closed
        assert client.client is fallback

    @pytest.mark.asyncio
    async def test_no_failover_for_other_errors(self):
        primary = _FakeRpc(error=Exception("invalid param"))
        with patch('flash_arb.solana_client.AsyncClient', side_effect=[primary]):
            client = SolanaClient("https://primary.example", Keypair(), fallback_rpc_url="https://fallback.example")
            assert await client.get_current_slot() is None

        assert client.client is primary
