"""
Ledger, program and tuning constants shared by the flash loan arbitrage bot.
"""

# Well-known mints
SOL_MINT = "So11111111111111111111111111111111111111112"  # wSOL
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

MINT_ALIASES = {
    "sol": SOL_MINT,
    "usdc": USDC_MINT,
    "usdt": USDT_MINT,
}

COMMON_TOKEN_MINTS = [
    SOL_MINT,
    USDC_MINT,
    USDT_MINT,
    "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R",  # RAY
    "7dHbWXmci3dT8UFYWYZweBLXgycu7Y3iL6trKn1Y7ARj",  # stSOL
    "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So",  # mSOL
    "7vfCXTUXx5WJV5JADk17DUJ4ksgau7utNKj4b963voxs",  # ETH (Wormhole)
    "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",  # BONK
]

# Programs
DEFAULT_FLM_PROGRAM_ID = "1oanfPPN8r1i4UbugXHDxWMbWVJ5qLSN5qzNFZkz6Fg"
ALT_PROGRAM_ID = "AddressLookupTab1e1111111111111111111111111"
COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
SYSVAR_INSTRUCTIONS_ID = "Sysvar1nstructions1111111111111111111111111"

# Networks
DEVNET = "devnet"
MAINNET = "mainnet"
DEFAULT_RPC_URL = "https://api.devnet.solana.com"

# Ledger limits
MAX_TRANSACTION_SIZE = 1232  # raw bytes
MAX_ACCOUNTS_PER_EXTEND = 20  # addresses carried by one extend instruction
MAX_TABLES_PER_TX = 10  # deactivate/close instructions per transaction
MAX_ACCOUNTS_TO_FETCH = 100  # getMultipleAccounts ceiling
LOOKUP_TABLE_META_SIZE = 56
ACTIVE_TABLE_DEACTIVATION_SLOT = 2 ** 64 - 1  # u64::MAX while the table is active

# Retry policy
MAX_IX_RETRIES = 5
IX_RETRY_SLEEP_SECONDS = 1.0
MAX_DIE_RETRIES = 5
DIE_SLEEP_SECONDS = 5.0

# Arbitrage loop
DEFAULT_SLIPPAGE_BPS = 1
ARB_SLEEP_SECONDS = 1.0
ALT_ACTIVATION_SLEEP_SECONDS = 1.0

# Key seeding
SEED_AMOUNT = 0.1
SEED_ROUNDS = 5
SEED_TAKE_ROUTES = 10
SEED_SLEEP_SECONDS = 60 * 10  # ten minutes

# Flash loan fees (parts per million of the borrowed amount)
LOAN_FEE_PPM = 900
REFERRAL_FEE_PPM = 50
FEE_DENOMINATOR = 1_000_000
