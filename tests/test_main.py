"""
Tests for the command line interface
"""
import argparse
from unittest.mock import AsyncMock, MagicMock, patch
import pytest
from solders.pubkey import Pubkey

from flash_arb.cache_store import KeyFrequencyCache, example_flash_loan_cache_name
from flash_arb.constants import SEED_TAKE_ROUTES, USDC_MINT
from flash_arb.errors import RetryExhaustedError
from flash_arb.main import (
    COMMANDS,
    Services,
    build_parser,
    cmd_example_flash_loan,
    cmd_example_flash_loan_with_lookup_table,
    parse_mint,
    run_command,
)
from flash_arb.solana_client import LookupTableState
from flash_arb.submitter import SubmissionResult
from tests.helpers import make_instruction


class TestParser:

    def test_every_command_registered(self):
        parser = build_parser()
        choices = parser._subparsers._group_actions[0].choices
        assert set(choices) == set(COMMANDS)
        assert len(COMMANDS) == 17

    def test_mint_aliases(self, sol_mint):
        assert parse_mint("SOL") == Pubkey.from_string(sol_mint)
        assert parse_mint("usdc") == Pubkey.from_string(USDC_MINT)
        with pytest.raises(argparse.ArgumentTypeError):
            parse_mint("not-a-mint")

    def test_seed_defaults(self, sol_mint, usdc_mint):
        args = build_parser().parse_args(["seed-jupiter-arb-keys", "-m1", sol_mint, "-m2", usdc_mint])
        assert args.take_routes == SEED_TAKE_ROUTES
        assert args.token_mint2 == Pubkey.from_string(usdc_mint)
        assert args.simulate is False

    def test_arb_options(self, usdc_mint):
        args = build_parser().parse_args([
            "cached-jupiter-arb", "-m1", "usdc", "-m2", "sol", "-a", "10", "-s", "5",
            "--iterations", "3", "--simulate", "-k", "id.json"
        ])
        assert args.token_mint1 == Pubkey.from_string(usdc_mint)
        assert args.amount == 10.0
        assert args.slippage_bps == 5
        assert args.iterations == 3
        assert args.simulate and args.keypair == "id.json"

    def test_required_amount(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["example-flash-loan", "-tm", "usdc"])


class TestRunCommand:

    @pytest.mark.asyncio
    async def test_single_shot_command_not_retried(self):
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        args = argparse.Namespace(command="wrap-sol")
        with patch.dict(COMMANDS, {"wrap-sol": (handler, False, "")}):
            with pytest.raises(RuntimeError):
                await run_command(MagicMock(), args)
        assert handler.await_count == 1

    @pytest.mark.asyncio
    async def test_long_running_command_retried(self):
        handler = AsyncMock(side_effect=RuntimeError("rpc down"))
        args = argparse.Namespace(command="cached-jupiter-arb")
        with patch.dict(COMMANDS, {"cached-jupiter-arb": (handler, True, "")}), \
                patch('flash_arb.utils.asyncio.sleep', new=AsyncMock()):
            with pytest.raises(RetryExhaustedError):
                await run_command(MagicMock(), args)
        assert handler.await_count == 5


class TestServicesSend:

    def _services(self, submitter):
        return Services(
            config=MagicMock(), solana=MagicMock(), jupiter=MagicMock(), flash_loans=MagicMock(),
            submitter=submitter, store=MagicMock(), tables=MagicMock(), seeder=MagicMock()
        )

    @pytest.mark.asyncio
    async def test_sends(self, mock_submitter):
        await self._services(mock_submitter).send([make_instruction()], "wrap-sol")
        mock_submitter.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_simulates(self, mock_submitter):
        mock_submitter.simulate_only = True
        mock_submitter.submit.return_value = SubmissionResult(success=True, simulated=True)

        await self._services(mock_submitter).send([make_instruction()], "wrap-sol")

        mock_submitter.submit.assert_awaited_once()
        mock_submitter.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nothing_to_send(self, mock_submitter):
        await self._services(mock_submitter).send([], "create-token-accounts")
        mock_submitter.send.assert_not_awaited()


class TestExampleFlashLoan:

    @pytest.fixture
    def services(self, mock_submitter, loan_plan, store):
        flash_loans = AsyncMock()
        flash_loans.get_flash_loan_instructions.return_value = loan_plan
        return Services(
            config=MagicMock(network="devnet"), solana=MagicMock(), jupiter=MagicMock(), flash_loans=flash_loans,
            submitter=mock_submitter, store=store, tables=AsyncMock(), seeder=MagicMock()
        )

    @pytest.fixture
    def args(self, usdc_mint):
        return argparse.Namespace(token_mint=Pubkey.from_string(usdc_mint), amount=1.0, referral_wallet=None)

    @pytest.mark.asyncio
    async def test_sends_borrow_then_repay(self, services, args, mock_submitter, loan_plan):
        await cmd_example_flash_loan(services, args)

        instructions = mock_submitter.send.await_args.args[0]
        assert instructions == [loan_plan.borrow_instruction, loan_plan.repay_instruction]

    @pytest.mark.asyncio
    async def test_with_lookup_table(self, services, args, mock_submitter, loan_plan, store):
        table = LookupTableState(Pubkey.new_unique(), [loan_plan.borrow_instruction.accounts[0].pubkey])
        store.save_key_cache(
            example_flash_loan_cache_name("devnet", args.token_mint),
            KeyFrequencyCache(lookup_table_address=str(table.address))
        )
        services.tables.reload_table.return_value = table

        await cmd_example_flash_loan_with_lookup_table(services, args)

        instructions, lookup_tables = mock_submitter.send.await_args.args
        assert instructions == [loan_plan.borrow_instruction, loan_plan.repay_instruction]
        assert [t.key for t in lookup_tables] == [table.address]
