"""
Pytest configuration and fixtures for flash loan arbitrage bot tests.
"""
import pytest
from unittest.mock import AsyncMock
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from flash_arb.cache_store import DiskCacheStore
from flash_arb.flash_loan import FlashLoanPlan
from tests.helpers import make_instruction


@pytest.fixture
def mock_keypair():
    """Create a keypair for testing."""
    return Keypair()


@pytest.fixture
def mock_solana_client(mock_keypair):
    """Create a mock SolanaClient with a real wallet."""
    client = AsyncMock()
    client.wallet = mock_keypair
    client.payer = mock_keypair.pubkey()
    return client


@pytest.fixture
def mock_submitter(mock_solana_client):
    """Create a mock TransactionSubmitter whose send succeeds."""
    submitter = AsyncMock()
    submitter.solana = mock_solana_client
    submitter.simulate_only = False
    submitter.send.return_value = "sig"
    return submitter


@pytest.fixture
def mock_jupiter_client():
    """Create a mock JupiterClient for testing."""
    return AsyncMock()


@pytest.fixture
def store(tmp_path):
    """DiskCacheStore in a temporary directory."""
    return DiskCacheStore(tmp_path / "cache")


@pytest.fixture
def sol_mint():
    """SOL mint address."""
    return "So11111111111111111111111111111111111111112"


@pytest.fixture
def usdc_mint():
    """USDC mint address."""
    return "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


@pytest.fixture
def keys():
    """Four distinct account keys as base58 strings (A, B, C, D)."""
    return [str(Pubkey.new_unique()) for _ in range(4)]


@pytest.fixture
def loan_plan():
    """FlashLoanPlan with distinct borrow and repay instructions."""
    return FlashLoanPlan(
        borrow_instruction=make_instruction(data=b"borrow"),
        repay_instruction=make_instruction(data=b"repay"),
        repayment_amount=1_000_900,
        amount=1_000_000
    )
