"""
Instruction ordering for an atomic flash-loan arbitrage cycle.

The cycle is laid out as a fixed list of named slots:

    buy setup, loan setup, borrow, buy swap, sell setup, sell swap,
    repay, buy cleanup, sell cleanup

Leading compute-budget directives are stripped from both swap legs. One of
them (the buy leg's first, else the sell leg's first) is then placed at
index 0, so the sequence carries at most one compute-budget instruction.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .constants import COMPUTE_BUDGET_PROGRAM_ID
from .flash_loan import FlashLoanPlan
from .utils import dedupe_preserving_order

logger = logging.getLogger(__name__)

COMPUTE_BUDGET_PROGRAM = Pubkey.from_string(COMPUTE_BUDGET_PROGRAM_ID)

ARBITRAGE_SLOTS: Tuple[Tuple[str, str], ...] = (
    ("buy", "setup"),
    ("loan", "setup"),
    ("loan", "borrow"),
    ("buy", "swap"),
    ("sell", "setup"),
    ("sell", "swap"),
    ("loan", "repay"),
    ("buy", "cleanup"),
    ("sell", "cleanup"),
)


@dataclass
class InstructionBundle:
    """Instructions of one swap leg. swap may start with compute-budget directives."""
    setup: List[Instruction] = field(default_factory=list)
    swap: List[Instruction] = field(default_factory=list)
    cleanup: List[Instruction] = field(default_factory=list)


@dataclass
class SequencedTransaction:
    """Ordered instructions plus the distinct account keys they reference."""
    instructions: List[Instruction]
    account_keys: List[str]


def is_compute_budget(ix: Instruction) -> bool:
    return ix.program_id == COMPUTE_BUDGET_PROGRAM


def split_compute_budget(swap: List[Instruction]) -> Tuple[List[Instruction], List[Instruction]]:
    """Split a swap list into (leading compute-budget directives, the rest)."""
    index = 0
    while index < len(swap) and is_compute_budget(swap[index]):
        index += 1
    return swap[:index], swap[index:]


def collect_account_keys(instructions: List[Instruction]) -> List[str]:
    """Distinct account keys across instructions, in first-seen order."""
    return dedupe_preserving_order(str(meta.pubkey) for ix in instructions for meta in ix.accounts)


def sequence_arbitrage(
    loan: FlashLoanPlan,
    buy: InstructionBundle,
    sell: InstructionBundle
) -> SequencedTransaction:
    """
    Order a borrow -> buy -> sell -> repay cycle.

    Args:
        loan: Flash loan plan for the input mint
        buy: Bundle swapping the input mint to the intermediate mint
        sell: Bundle swapping the intermediate mint back

    Returns:
        SequencedTransaction with borrow before repay and at most one
        compute-budget instruction, at index 0
    """
    buy_budget, buy_swap = split_compute_budget(buy.swap)
    sell_budget, sell_swap = split_compute_budget(sell.swap)

    slots: Dict[Tuple[str, str], List[Instruction]] = {
        ("buy", "setup"): buy.setup,
        ("loan", "setup"): [loan.setup_instruction] if loan.setup_instruction else [],
        ("loan", "borrow"): [loan.borrow_instruction],
        ("buy", "swap"): buy_swap,
        ("sell", "setup"): sell.setup,
        ("sell", "swap"): sell_swap,
        ("loan", "repay"): [loan.repay_instruction],
        ("buy", "cleanup"): buy.cleanup,
        ("sell", "cleanup"): sell.cleanup,
    }
    instructions = [ix for slot in ARBITRAGE_SLOTS for ix in slots[slot]]

    hoisted: Optional[Instruction] = (buy_budget or sell_budget or [None])[0]
    if hoisted is not None:
        instructions.insert(0, hoisted)
    dropped = len(buy_budget) + len(sell_budget) - (1 if hoisted is not None else 0)
    if dropped:
        logger.debug(f"Dropped {dropped} extra compute budget instruction(s)")

    return SequencedTransaction(instructions=instructions, account_keys=collect_account_keys(instructions))


def sequence_flash_loan(loan: FlashLoanPlan) -> SequencedTransaction:
    """Borrow and immediately repay, with the optional setup first."""
    instructions = loan.instructions()
    return SequencedTransaction(instructions=instructions, account_keys=collect_account_keys(instructions))
