"""
Tests for jupiter_client.py
"""
import base64
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
import httpx
from solders.pubkey import Pubkey

from flash_arb.constants import COMPUTE_BUDGET_PROGRAM_ID
from flash_arb.jupiter_client import (
    JupiterClient,
    JupiterQuote,
    SwapAccountMeta,
    SwapInstruction,
)


def _ok_response(data):
    response = MagicMock()
    response.json.return_value = data
    response.raise_for_status = MagicMock()
    return response


def _http_error(status_code, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.text = "error"
    response.headers = headers or {}
    return httpx.HTTPStatusError(f"{status_code}", request=MagicMock(), response=response)


def _quote_data(input_mint, output_mint, out_amount=100_000_000, labels=("Orca",)):
    return {
        "inputMint": input_mint,
        "outputMint": output_mint,
        "inAmount": "1000000000",
        "outAmount": str(out_amount),
        "priceImpactPct": "0.5",
        "routePlan": [{"swapInfo": {"label": label}, "percent": 100} for label in labels],
        "contextSlot": 42
    }


def _instruction_data(program_id=None, data=b"\x01"):
    return {
        "programId": program_id or str(Pubkey.new_unique()),
        "accounts": [{"pubkey": str(Pubkey.new_unique()), "isSigner": False, "isWritable": True}],
        "data": base64.b64encode(data).decode()
    }


def _quote(labels=("Orca",), out_amount=5_000):
    return JupiterQuote(
        input_mint="a",
        output_mint="b",
        in_amount=1_000,
        out_amount=out_amount,
        price_impact_pct=0.0,
        route_plan=[{"swapInfo": {"label": label}} for label in labels]
    )


class TestJupiterClient:
    """Tests for JupiterClient class."""

    @pytest.fixture
    def client(self):
        """Create a JupiterClient instance for testing."""
        return JupiterClient(api_url=None, api_key=None, timeout=10.0, requests_per_second=0)

    @pytest.fixture
    def client_with_key(self):
        """Create a JupiterClient instance with API key."""
        return JupiterClient(api_url=None, api_key="test_key", timeout=10.0, requests_per_second=0)

    @pytest.fixture
    def client_explicit_url(self):
        """Create a JupiterClient with explicit URL."""
        return JupiterClient(api_url="https://api.jup.ag/", api_key=None, timeout=10.0, requests_per_second=0)

    def test_jupiter_client_initialization(self, client):
        """Test JupiterClient can be initialized."""
        assert client.api_url is None
        assert client.fallback_endpoints == JupiterClient.PUBLIC_ENDPOINTS

    def test_jupiter_client_with_api_key(self, client_with_key):
        """Test JupiterClient initialization with API key."""
        assert client_with_key.fallback_endpoints == JupiterClient.AUTH_ENDPOINTS
        assert client_with_key.client.headers["x-api-key"] == "test_key"

    def test_jupiter_client_explicit_url(self, client_explicit_url):
        """Test JupiterClient with explicit URL (no fallback)."""
        assert client_explicit_url.api_url == "https://api.jup.ag"
        assert client_explicit_url.fallback_endpoints == []

    def test_base_url_strips_version(self):
        assert JupiterClient._base_url("https://quote-api.jup.ag/v6/") == "https://quote-api.jup.ag"
        assert JupiterClient._base_url("https://api.jup.ag/v1") == "https://api.jup.ag"

    @pytest.mark.asyncio
    async def test_get_quote_success(self, client, sol_mint, usdc_mint):
        """Test get_quote returns quote on success."""
        response = _ok_response(_quote_data(sol_mint, usdc_mint))

        with patch.object(client.client, 'get', return_value=response) as mock_get:
            quote = await client.get_quote(sol_mint, usdc_mint, 1_000_000_000, slippage_bps=1)

        assert quote.in_amount == 1_000_000_000
        assert quote.out_amount == 100_000_000
        assert quote.price_impact_pct == 0.5
        assert quote.context_slot == 42
        assert quote.dex_labels == ["Orca"]
        assert mock_get.call_args.args[0] == "https://lite-api.jup.ag/swap/v1/quote"
        params = mock_get.call_args.kwargs["params"]
        assert params["slippageBps"] == 1
        assert params["restrictIntermediateTokens"] == "false"
        assert "excludeDexes" not in params
        assert client._working_endpoint == "https://lite-api.jup.ag"

    @pytest.mark.asyncio
    async def test_get_quote_excludes_dexes(self, client, sol_mint, usdc_mint):
        response = _ok_response(_quote_data(sol_mint, usdc_mint))
        with patch.object(client.client, 'get', return_value=response) as mock_get:
            await client.get_quote(sol_mint, usdc_mint, 1, exclude_dexes=["Orca", "Raydium"])

        assert mock_get.call_args.kwargs["params"]["excludeDexes"] == "Orca,Raydium"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 404])
    async def test_get_quote_no_route(self, client, sol_mint, usdc_mint, status_code):
        """No route is a valid answer: None, and no other endpoint is asked."""
        client.fallback_endpoints = ["https://lite-api.jup.ag", "https://api.jup.ag"]
        with patch.object(client.client, 'get', side_effect=_http_error(status_code)) as mock_get:
            quote = await client.get_quote(sol_mint, usdc_mint, 1_000_000_000)

        assert quote is None
        assert mock_get.call_count == 1
        assert client._tried_endpoints == set()

    @pytest.mark.asyncio
    async def test_get_quote_401_unauthorized(self, client, sol_mint, usdc_mint):
        """Test get_quote handles 401 (unauthorized) and marks endpoint as tried."""
        endpoint = "https://lite-api.jup.ag"
        with patch.object(client.client, 'get', side_effect=_http_error(401)):
            quote = await client.get_quote(sol_mint, usdc_mint, 1_000_000_000)

        assert quote is None
        assert endpoint in client._tried_endpoints
        assert client._quote_endpoints() == []

    @pytest.mark.asyncio
    async def test_get_quote_connection_error_tries_next(self, client, sol_mint, usdc_mint):
        """Test get_quote handles connection errors and tries next endpoint."""
        client.fallback_endpoints = ["https://lite-api.jup.ag", "https://api.jup.ag"]
        responses = [httpx.ConnectError("Connection failed"), _ok_response(_quote_data(sol_mint, usdc_mint))]

        with patch.object(client.client, 'get', side_effect=responses) as mock_get:
            quote = await client.get_quote(sol_mint, usdc_mint, 1_000_000_000)

        assert quote is not None
        assert mock_get.call_args.args[0] == "https://api.jup.ag/swap/v1/quote"

    @pytest.mark.asyncio
    async def test_get_quote_read_timeout_keeps_endpoint(self, client, sol_mint, usdc_mint):
        client.fallback_endpoints = ["https://lite-api.jup.ag", "https://api.jup.ag"]
        with patch.object(client.client, 'get', side_effect=httpx.ReadTimeout("read timed out")):
            assert await client.get_quote(sol_mint, usdc_mint, 1_000_000_000) is None
        # A timeout is transient, the endpoints stay usable
        assert client._tried_endpoints == set()

    @pytest.mark.asyncio
    async def test_get_quote_429_retry_after(self, client, sol_mint, usdc_mint):
        """429 waits for Retry-After and retries the same endpoint."""
        responses = [
            _http_error(429, headers={"Retry-After": "2"}),
            _ok_response(_quote_data(sol_mint, usdc_mint))
        ]
        with patch.object(client.client, 'get', side_effect=responses), \
                patch('flash_arb.jupiter_client.asyncio.sleep', new=AsyncMock()) as mock_sleep:
            quote = await client.get_quote(sol_mint, usdc_mint, 1_000_000_000)

        assert quote is not None
        mock_sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_get_quote_429_exhausted(self, client, sol_mint, usdc_mint):
        client.max_retries_on_429 = 2
        with patch.object(client.client, 'get', side_effect=_http_error(429)) as mock_get, \
                patch('flash_arb.jupiter_client.asyncio.sleep', new=AsyncMock()) as mock_sleep:
            quote = await client.get_quote(sol_mint, usdc_mint, 1_000_000_000)

        assert quote is None
        assert mock_get.call_count == 3
        # Exponential backoff without Retry-After
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_close(self, client):
        await client.close()
        assert client.client.is_closed


class TestRouteSampling:

    @pytest.fixture
    def client(self):
        return JupiterClient(requests_per_second=0)

    @pytest.mark.asyncio
    async def test_excludes_dexes_cumulatively(self, client):
        client.get_quote = AsyncMock(side_effect=[
            _quote(labels=("Orca",)), _quote(labels=("Raydium", "Orca")), None
        ])

        quotes = await client.get_route_quotes("a", "b", 1_000, take_routes=5)

        assert len(quotes) == 2
        excluded = [c.kwargs["exclude_dexes"] for c in client.get_quote.await_args_list]
        assert excluded == [None, ["Orca"], ["Orca", "Raydium"]]

    @pytest.mark.asyncio
    async def test_stops_at_take_routes(self, client):
        client.get_quote = AsyncMock(side_effect=[_quote(labels=("Orca",)), _quote(labels=("Meteora",))])
        quotes = await client.get_route_quotes("a", "b", 1_000, take_routes=2)
        assert len(quotes) == 2
        assert client.get_quote.await_count == 2

    @pytest.mark.asyncio
    async def test_stops_when_no_new_dex(self, client):
        client.get_quote = AsyncMock(return_value=_quote(labels=()))
        quotes = await client.get_route_quotes("a", "b", 1_000, take_routes=10)
        assert len(quotes) == 1


class TestSwapInstructions:

    @pytest.fixture
    def client(self):
        return JupiterClient(requests_per_second=0)

    @pytest.fixture
    def swap_data(self):
        return {
            "computeBudgetInstructions": [_instruction_data(COMPUTE_BUDGET_PROGRAM_ID, b"\x02\x40\x0d\x03\x00")],
            "setupInstructions": [_instruction_data()],
            "swapInstruction": _instruction_data(data=b"swap"),
            "cleanupInstruction": _instruction_data(),
            "addressLookupTableAddresses": [str(Pubkey.new_unique())],
            "lastValidBlockHeight": 1234
        }

    @pytest.mark.asyncio
    async def test_parses_bundle(self, client, swap_data):
        with patch.object(client.client, 'post', return_value=_ok_response(swap_data)) as mock_post:
            bundle = await client.get_swap_instructions(_quote(), "user", priority_fee_lamports=5000)

        assert len(bundle.setup()) == 1
        swap = bundle.swap()
        assert str(swap[0].program_id) == COMPUTE_BUDGET_PROGRAM_ID
        assert bytes(swap[-1].data) == b"swap"
        assert len(bundle.cleanup()) == 1
        assert bundle.last_valid_block_height == 1234

        payload = mock_post.call_args.kwargs["json"]
        assert payload["userPublicKey"] == "user"
        assert payload["wrapAndUnwrapSol"] is False
        assert payload["useSharedAccounts"] is False
        assert payload["prioritizationFeeLamports"]["priorityLevelWithMaxLamports"]["maxLamports"] == 5000
        assert mock_post.call_args.args[0] == "https://lite-api.jup.ag/swap/v1/swap-instructions"

    @pytest.mark.asyncio
    async def test_no_priority_fee_by_default(self, client, swap_data):
        with patch.object(client.client, 'post', return_value=_ok_response(swap_data)) as mock_post:
            await client.get_swap_instructions(_quote(), "user")
        assert "prioritizationFeeLamports" not in mock_post.call_args.kwargs["json"]

    @pytest.mark.asyncio
    async def test_falls_back_to_second_path(self, client, swap_data):
        responses = [_http_error(404), _ok_response(swap_data)]
        with patch.object(client.client, 'post', side_effect=responses) as mock_post:
            bundle = await client.get_swap_instructions(_quote(), "user")

        assert bundle is not None
        assert mock_post.call_args.args[0] == "https://lite-api.jup.ag/swap-instructions"
        assert client._working_swap_endpoint == "https://lite-api.jup.ag"

    @pytest.mark.asyncio
    async def test_rejects_foreign_compute_budget_program(self, client, swap_data):
        swap_data["computeBudgetInstructions"] = [_instruction_data()]
        with patch.object(client.client, 'post', return_value=_ok_response(swap_data)):
            assert await client.get_swap_instructions(_quote(), "user") is None

    @pytest.mark.asyncio
    async def test_all_paths_fail(self, client):
        with patch.object(client.client, 'post', side_effect=_http_error(500)) as mock_post:
            assert await client.get_swap_instructions(_quote(), "user") is None
        # Two endpoints, two paths each
        assert mock_post.call_count == 4


    @pytest.mark.asyncio
    async def test_read_timeout_falls_through_to_none(self, client):
        with patch.object(client.client, 'post', side_effect=httpx.ReadTimeout("read timed out")) as mock_post:
            assert await client.get_swap_instructions(_quote(), "user") is None
        assert mock_post.call_count == 4

    @pytest.mark.asyncio
    async def test_protocol_error_tries_next_path(self, client, swap_data):
        responses = [httpx.RemoteProtocolError("peer closed connection"), _ok_response(swap_data)]
        with patch.object(client.client, 'post', side_effect=responses):
            assert await client.get_swap_instructions(_quote(), "user") is not None


class TestDataClasses:

    def test_dex_labels_unique_in_order(self):
        quote = _quote(labels=("Orca", "Raydium", "Orca"))
        assert quote.dex_labels == ["Orca", "Raydium"]

    def test_request_payload_prefers_raw(self):
        quote = _quote()
        built = quote.to_request_payload(slippage_bps=3)
        assert built["inAmount"] == "1000"
        assert built["slippageBps"] == 3

        quote.raw = {"inAmount": "1000", "contextSlot": 9}
        assert quote.to_request_payload(slippage_bps=3) == quote.raw

    def test_swap_instruction_to_instruction(self):
        key = Pubkey.new_unique()
        program = Pubkey.new_unique()
        ix = SwapInstruction(
            program_id=str(program),
            accounts=[SwapAccountMeta(pubkey=str(key), is_signer=True, is_writable=False)],
            data=base64.b64encode(b"\x09\x08").decode()
        ).to_instruction()

        assert ix.program_id == program
        assert ix.accounts[0].pubkey == key and ix.accounts[0].is_signer
        assert bytes(ix.data) == b"\x09\x08"

    def test_string_accounts_rejected(self):
        client = JupiterClient(requests_per_second=0)
        with pytest.raises(NotImplementedError):
            client._parse_accounts(["abc"])
