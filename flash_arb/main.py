"""
Main entry point for the flash loan arbitrage bot.
"""
import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .arbitrage import ArbitrageLoop
from .cache_store import (
    DiskCacheStore,
    example_flash_loan_cache_name,
    jupiter_keys_cache_name,
    lookup_table_registry_name,
)
from .config import BotConfig, load_config, load_wallet
from .constants import (
    DEFAULT_SLIPPAGE_BPS,
    DIE_SLEEP_SECONDS,
    MAX_DIE_RETRIES,
    MINT_ALIASES,
    SEED_AMOUNT,
    SEED_ROUNDS,
    SEED_SLEEP_SECONDS,
    SEED_TAKE_ROUTES,
)
from .errors import FlashArbError, MissingLookupTableError
from .flash_loan import FlashLoanClient
from .jupiter_client import JupiterClient
from .lookup_tables import LookupTableManager
from .seeding import KeySeeder
from .sequencer import sequence_flash_loan
from .solana_client import SolanaClient
from .submitter import TransactionSubmitter
from .token_accounts import (
    create_token_account_instructions,
    native_token_account,
    unwrap_sol_instructions,
    wrap_sol_instructions,
)
from .utils import get_terminal_colors, with_retry

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


def setup_logging(log_file: str, verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file)
        ]
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def parse_mint(value: str) -> Pubkey:
    """Accept a base58 mint or one of the aliases sol/usdc/usdt."""
    alias = MINT_ALIASES.get(value.lower())
    try:
        return Pubkey.from_string(alias or value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid mint address: {value}") from e


def parse_pubkey(value: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid public key: {value}") from e


@dataclass
class Services:
    """Clients shared by every command."""
    config: BotConfig
    solana: SolanaClient
    jupiter: JupiterClient
    flash_loans: FlashLoanClient
    submitter: TransactionSubmitter
    store: DiskCacheStore
    tables: LookupTableManager
    seeder: KeySeeder

    @property
    def registry_name(self) -> str:
        return lookup_table_registry_name(self.config.network)

    async def send(self, instructions: List[Instruction], label: str) -> None:
        if not instructions:
            logger.info(f"Nothing to send for {label}")
            return
        if self.submitter.simulate_only:
            result = await self.submitter.submit(instructions)
            logger.info(f"Simulated {label}: {'ok' if result.success else result.error}")
            return
        signature = await self.submitter.send(instructions)
        logger.info(f"Transaction signature {colors['CYAN']}{signature}{colors['RESET']}")

    async def close(self) -> None:
        await self.jupiter.close()
        await self.solana.close()


def build_services(config: BotConfig, args: argparse.Namespace) -> Services:
    """
    Raises:
        FlashArbError: If no wallet could be loaded
    """
    wallet = load_wallet(keypair_path=args.keypair)
    if wallet is None:
        raise FlashArbError("A wallet is required: pass --keypair or set WALLET_PRIVATE_KEY")

    solana = SolanaClient(config.rpc_url, wallet, fallback_rpc_url=config.fallback_rpc_url)
    submitter = TransactionSubmitter(solana, simulate_only=args.simulate)
    store = DiskCacheStore(config.cache_dir)
    registry_name = lookup_table_registry_name(config.network)
    return Services(
        config=config,
        solana=solana,
        jupiter=JupiterClient(config.jupiter_api_url, api_key=config.jupiter_api_key),
        flash_loans=FlashLoanClient(solana, config.flm_program_id),
        submitter=submitter,
        store=store,
        tables=LookupTableManager(solana, submitter, store, registry_name),
        seeder=KeySeeder(store, registry_name)
    )


# Commands

async def cmd_init_pool(services: Services, args: argparse.Namespace) -> None:
    ixs = await services.flash_loans.init_pool_instructions(args.token_mint, args.pool_mint)
    await services.send(ixs, "init-pool")


async def cmd_deposit(services: Services, args: argparse.Namespace) -> None:
    ixs = await services.flash_loans.deposit_instructions(args.token_mint, args.token_from, args.amount)
    await services.send(ixs, "deposit")


async def cmd_withdraw(services: Services, args: argparse.Namespace) -> None:
    ixs = await services.flash_loans.withdraw_instructions(args.token_mint, args.pool_share_token_from, args.amount)
    await services.send(ixs, "withdraw")


async def cmd_example_flash_loan(services: Services, args: argparse.Namespace) -> None:
    plan = await services.flash_loans.get_flash_loan_instructions(args.token_mint, args.amount, args.referral_wallet)
    await services.send(sequence_flash_loan(plan).instructions, "example flash loan")


async def cmd_seed_example_flash_loan_keys(services: Services, args: argparse.Namespace) -> None:
    await services.seeder.seed_flash_loan_keys(
        services.flash_loans,
        example_flash_loan_cache_name(services.config.network, args.token_mint),
        args.token_mint,
        args.amount,
        args.referral_wallet
    )


async def cmd_create_example_lookup_table(services: Services, args: argparse.Namespace) -> None:
    await services.tables.converge(example_flash_loan_cache_name(services.config.network, args.token_mint))


async def cmd_example_flash_loan_with_lookup_table(services: Services, args: argparse.Namespace) -> None:
    cache_name = example_flash_loan_cache_name(services.config.network, args.token_mint)
    cache = services.store.load_key_cache(cache_name)
    if not cache.lookup_table_address:
        raise MissingLookupTableError(f"Address lookup table is missing from {cache_name}")
    table = await services.tables.reload_table(Pubkey.from_string(cache.lookup_table_address))
    plan = await services.flash_loans.get_flash_loan_instructions(args.token_mint, args.amount, args.referral_wallet)
    sequence = sequence_flash_loan(plan)
    uncovered = set(sequence.account_keys) - set(table.address_strings())
    if uncovered:
        logger.warning(f"{len(uncovered)} loan accounts are not in lookup table {table.address}")
    if services.submitter.simulate_only:
        result = await services.submitter.submit(sequence.instructions, [table.to_account()])
        logger.info(f"Simulated example flash loan: {'ok' if result.success else result.error}")
        return
    signature = await services.submitter.send(sequence.instructions, [table.to_account()])
    logger.info(f"Transaction signature {colors['CYAN']}{signature}{colors['RESET']}")


async def cmd_create_token_accounts(services: Services, args: argparse.Namespace) -> None:
    ixs = await create_token_account_instructions(services.solana)
    logger.info(f"Num of accounts to create: {colors['GREEN']}{len(ixs)}{colors['RESET']}")
    await services.send(ixs, "create-token-accounts")


async def cmd_wrap_sol(services: Services, args: argparse.Namespace) -> None:
    owner = services.solana.payer
    account = args.token_account or native_token_account(owner)
    await services.send(wrap_sol_instructions(owner, account, args.amount), "wrap-sol")


async def cmd_unwrap_sol(services: Services, args: argparse.Namespace) -> None:
    owner = services.solana.payer
    account = args.token_account or native_token_account(owner)
    await services.send(unwrap_sol_instructions(owner, account, keep_account_open=not args.close), "unwrap-sol")


def _arb_loop(services: Services, args: argparse.Namespace, cache_name: Optional[str]) -> ArbitrageLoop:
    return ArbitrageLoop(
        jupiter=services.jupiter,
        flash_loans=services.flash_loans,
        submitter=services.submitter,
        tables=services.tables,
        store=services.store,
        mint1=args.token_mint1,
        mint2=args.token_mint2,
        amount=args.amount,
        slippage_bps=args.slippage_bps,
        cache_name=cache_name,
        sleep_seconds=services.config.arb_sleep_seconds,
        priority_fee_lamports=services.config.priority_fee_lamports
    )


async def cmd_simple_jupiter_arb(services: Services, args: argparse.Namespace) -> None:
    await _arb_loop(services, args, cache_name=None).run(max_iterations=args.iterations)


async def cmd_cached_jupiter_arb(services: Services, args: argparse.Namespace) -> None:
    cache_name = jupiter_keys_cache_name(services.config.network, args.token_mint1, args.token_mint2)
    await _arb_loop(services, args, cache_name=cache_name).run(max_iterations=args.iterations)


async def cmd_seed_jupiter_arb_keys(services: Services, args: argparse.Namespace) -> None:
    await services.seeder.seed_arbitrage_keys(
        services.jupiter,
        services.flash_loans,
        jupiter_keys_cache_name(services.config.network, args.token_mint1, args.token_mint2),
        args.token_mint1,
        args.token_mint2,
        seed_rounds=args.seed_rounds,
        sleep_seconds=args.sleep_time,
        amount=args.amount,
        slippage_bps=args.slippage_bps,
        take_routes=args.take_routes
    )


async def cmd_create_lookup_table_from_cache(services: Services, args: argparse.Namespace) -> None:
    await services.tables.converge(
        jupiter_keys_cache_name(services.config.network, args.token_mint1, args.token_mint2)
    )


async def cmd_deactivate_lookup_tables(services: Services, args: argparse.Namespace) -> None:
    registry_name = args.cache_file or services.registry_name
    await services.tables.deactivate_all(services.store.load_table_registry(registry_name))


async def cmd_close_lookup_tables(services: Services, args: argparse.Namespace) -> None:
    registry_name = args.cache_file or services.registry_name
    await services.tables.close_eligible(services.store.load_table_registry(registry_name), registry_name)


async def cmd_extract_lookup_table_keys(services: Services, args: argparse.Namespace) -> None:
    keys = await services.tables.extract_table_keys(args.cache_file or services.registry_name)
    logger.info(f"Extracted {colors['GREEN']}{len(keys)}{colors['RESET']} distinct keys")


Command = Callable[[Services, argparse.Namespace], Awaitable[None]]

# name -> (handler, wrapped in the outer retry, help)
COMMANDS: Dict[str, Tuple[Command, bool, str]] = {
    "init-pool": (cmd_init_pool, False, "Initialize a flash loan mastery pool"),
    "deposit": (cmd_deposit, False, "Deposit into a flash loan mastery pool"),
    "withdraw": (cmd_withdraw, False, "Withdraw from a flash loan mastery pool"),
    "example-flash-loan": (cmd_example_flash_loan, False, "Borrow and immediately repay"),
    "seed-example-flash-loan-keys": (
        cmd_seed_example_flash_loan_keys, False, "Cache the accounts used by the example flash loan"
    ),
    "create-example-lookup-table": (
        cmd_create_example_lookup_table, True, "Create or extend the example flash loan lookup table"
    ),
    "example-flash-loan-with-lookup-table": (
        cmd_example_flash_loan_with_lookup_table, False, "Borrow and repay in a v0 transaction using the cached table"
    ),
    "create-token-accounts": (cmd_create_token_accounts, False, "Create token accounts for common mints"),
    "wrap-sol": (cmd_wrap_sol, False, "Wrap SOL into a wSOL token account"),
    "unwrap-sol": (cmd_unwrap_sol, False, "Unwrap a wSOL token account"),
    "simple-jupiter-arb": (
        cmd_simple_jupiter_arb, True, "Arbitrage via Jupiter with a fresh lookup table per opportunity"
    ),
    "seed-jupiter-arb-keys": (cmd_seed_jupiter_arb_keys, True, "Create a cache of accounts used for Jupiter arbs"),
    "create-lookup-table-from-cache": (
        cmd_create_lookup_table_from_cache, True, "Create or extend the lookup table of a Jupiter arb cache"
    ),
    "cached-jupiter-arb": (cmd_cached_jupiter_arb, True, "Arbitrage via Jupiter using the cached lookup table"),
    "deactivate-lookup-tables": (cmd_deactivate_lookup_tables, False, "Deactivate every registered lookup table"),
    "close-lookup-tables": (cmd_close_lookup_tables, False, "Close deactivated lookup tables past their cooldown"),
    "extract-lookup-table-keys": (
        cmd_extract_lookup_table_keys, False, "Count the keys held by every registered lookup table"
    ),
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-k', '--keypair', help='Path to a JSON secret key file (default: WALLET_PRIVATE_KEY)')
    common.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    common.add_argument('--simulate', action='store_true', help='Simulate transactions instead of sending them')

    parser = argparse.ArgumentParser(description='Flash loan arbitrage bot')
    subparsers = parser.add_subparsers(dest='command', required=True)
    sub = {
        name: subparsers.add_parser(name, parents=[common], help=help_text, description=help_text)
        for name, (_, _, help_text) in COMMANDS.items()
    }

    sub["init-pool"].add_argument('-tm', '--token-mint', type=parse_mint, required=True)
    sub["init-pool"].add_argument('-pm', '--pool-mint', type=parse_pubkey, required=True,
                                  help='New and empty mint to be used for pool share tokens')

    for name in ("deposit", "withdraw"):
        sub[name].add_argument('-tm', '--token-mint', type=parse_mint, required=True)
        sub[name].add_argument('-a', '--amount', type=float, required=True)
    sub["deposit"].add_argument('-tf', '--token-from', type=parse_pubkey, required=True,
                                help='Source token account of the deposit')
    sub["withdraw"].add_argument('-ptf', '--pool-share-token-from', type=parse_pubkey, required=True,
                                 help='Token account holding the pool share tokens being redeemed')

    for name in ("example-flash-loan", "seed-example-flash-loan-keys", "example-flash-loan-with-lookup-table"):
        sub[name].add_argument('-tm', '--token-mint', type=parse_mint, required=True)
        sub[name].add_argument('-a', '--amount', type=float, required=True)
        sub[name].add_argument('-r', '--referral-wallet', type=parse_pubkey)
    sub["create-example-lookup-table"].add_argument('-tm', '--token-mint', type=parse_mint, required=True)

    sub["wrap-sol"].add_argument('-a', '--amount', type=float, required=True, help='Amount of SOL to wrap')
    for name in ("wrap-sol", "unwrap-sol"):
        sub[name].add_argument('-ta', '--token-account', type=parse_pubkey,
                               help='wSOL token account (default: associated account)')
    sub["unwrap-sol"].add_argument('--close', action='store_true', help='Do not recreate the wSOL account')

    for name in ("simple-jupiter-arb", "cached-jupiter-arb", "seed-jupiter-arb-keys", "create-lookup-table-from-cache"):
        sub[name].add_argument('-m1', '--token-mint1', type=parse_mint, required=True)
        sub[name].add_argument('-m2', '--token-mint2', type=parse_mint, required=True)
    for name in ("simple-jupiter-arb", "cached-jupiter-arb"):
        sub[name].add_argument('-a', '--amount', type=float, required=True)
        sub[name].add_argument('-s', '--slippage-bps', type=int, default=DEFAULT_SLIPPAGE_BPS)
        sub[name].add_argument('--iterations', type=int, help='Stop after this many iterations')

    seed = sub["seed-jupiter-arb-keys"]
    seed.add_argument('-a', '--amount', type=float, default=SEED_AMOUNT)
    seed.add_argument('-r', '--seed-rounds', type=int, default=SEED_ROUNDS)
    seed.add_argument('-l', '--sleep-time', type=float, default=SEED_SLEEP_SECONDS,
                      help='Seconds to sleep between rounds')
    seed.add_argument('-s', '--slippage-bps', type=int, default=DEFAULT_SLIPPAGE_BPS)
    seed.add_argument('-t', '--take-routes', type=int, default=SEED_TAKE_ROUTES,
                      help='Routes to sample per direction')

    for name in ("deactivate-lookup-tables", "close-lookup-tables", "extract-lookup-table-keys"):
        sub[name].add_argument('-c', '--cache-file',
                               help='Lookup table registry document (default: <network>-lookupTables.json)')
    return parser


async def run_command(services: Services, args: argparse.Namespace) -> None:
    """Run one command, wrapping long-running ones in the outer retry."""
    handler, retried, _ = COMMANDS[args.command]
    if not retried:
        await handler(services, args)
        return
    await with_retry(
        lambda: handler(services, args),
        ceiling=MAX_DIE_RETRIES,
        interval=DIE_SLEEP_SECONDS,
        label=args.command
    )


async def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the command and return an exit code."""
    args = build_parser().parse_args(argv)
    config = load_config()
    setup_logging(config.log_file, args.verbose)
    logger.info(f"Running {colors['CYAN']}{args.command}{colors['RESET']} on {config.network} ({config.rpc_url})")

    services = build_services(config, args)
    try:
        await run_command(services, args)
    finally:
        await services.close()
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nBot stopped by user")
        sys.exit(0)
    except FlashArbError as e:
        logger.error(f"{colors['RED']}{e}{colors['RESET']}")
        sys.exit(1)


if __name__ == '__main__':
    run()
