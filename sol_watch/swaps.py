from __future__ import annotations

from typing import Callable, Iterable, Sequence

from .records import SwapData, TokenBalance

InstructionClassifier = Callable[[Sequence[str]], "str | None"]

_INSTRUCTION_MARKER = "Instruction:"


def balance_deltas(
    pre: Iterable[TokenBalance],
    post: Iterable[TokenBalance],
) -> list[tuple[TokenBalance, int]]:
    pre_by_index: dict[int, TokenBalance] = {}
    for entry in pre:
        pre_by_index.setdefault(entry.account_index, entry)
    deltas: list[tuple[TokenBalance, int]] = []
    for entry in post:
        before = pre_by_index.get(entry.account_index)
        if before is None or before.mint != entry.mint:
            continue
        change = entry.amount - before.amount
        if change != 0:
            deltas.append((entry, change))
    return deltas


def extract_swap(
    pre: Iterable[TokenBalance],
    post: Iterable[TokenBalance],
) -> SwapData | None:
    """First decreasing balance is the input leg, first increasing one the output.

    Only meant for simple two-leg swaps; multi-hop routes are not decomposed.
    """
    try:
        deltas = balance_deltas(pre, post)
        leg_in = next(((b, c) for b, c in deltas if c < 0), None)
        leg_out = next(((b, c) for b, c in deltas if c > 0), None)
        if leg_in is None and leg_out is None:
            return None
        swap = SwapData()
        if leg_in is not None:
            balance, change = leg_in
            swap = SwapData(
                token_in=balance.mint,
                amount_in_raw=-change,
                decimals_in=balance.decimals,
            )
        if leg_out is not None:
            balance, change = leg_out
            swap = SwapData(
                token_in=swap.token_in,
                amount_in_raw=swap.amount_in_raw,
                decimals_in=swap.decimals_in,
                token_out=balance.mint,
                amount_out_raw=change,
                decimals_out=balance.decimals,
            )
        return swap
    except Exception:
        return None


def guess_instruction_label(lines: Sequence[str] | None) -> str | None:
    # Typical line: "Program log: Instruction: Swap"
    if not lines:
        return None
    for line in lines:
        if not isinstance(line, str) or _INSTRUCTION_MARKER not in line:
            continue
        idx = line.rfind(_INSTRUCTION_MARKER)
        label = line[idx + len(_INSTRUCTION_MARKER):].strip()
        return label or None
    return None


def match_pool(accounts: Iterable[str], pools: frozenset[str] | set[str]) -> str | None:
    if not pools:
        return None
    for account in accounts:
        if account in pools:
            return account
    return None


def match_program(accounts: Iterable[str], program_ids: Sequence[str]) -> str | None:
    touched = set(accounts)
    for program_id in program_ids:
        if program_id in touched:
            return program_id
    return None
