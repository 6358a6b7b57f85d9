"""
Instruction builders shared by the tests.
"""
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from flash_arb.constants import COMPUTE_BUDGET_PROGRAM_ID


def make_instruction(program_id=None, keys=None, data=b"\x01"):
    """Instruction touching the given account keys (one fresh key by default)."""
    program_id = program_id or Pubkey.new_unique()
    keys = keys if keys is not None else [Pubkey.new_unique()]
    return Instruction(
        program_id,
        data,
        [AccountMeta(k, is_signer=False, is_writable=True) for k in keys]
    )


def make_compute_budget_instruction(data=b"\x02\x40\x0d\x03\x00"):
    return Instruction(Pubkey.from_string(COMPUTE_BUDGET_PROGRAM_ID), data, [])
