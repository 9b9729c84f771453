from sol_watch.records import SwapData, TokenBalance, compute_latency_ms, format_amount
from sol_watch.swaps import (
    balance_deltas,
    extract_swap,
    guess_instruction_label,
    match_pool,
    match_program,
)


def _bal(index, mint, amount, decimals=0):
    return TokenBalance(account_index=index, mint=mint, amount=amount, decimals=decimals)


def test_single_decrease_is_input_leg():
    swap = extract_swap([_bal(0, "X", 1000, 2)], [_bal(0, "X", 700, 2)])
    assert swap is not None
    assert swap.token_in == "X"
    assert swap.amount_in_raw == 300
    assert swap.amount_in == "3.00"
    assert swap.token_out is None
    assert swap.amount_out is None


def test_two_leg_swap():
    pre = [_bal(0, "X", 100), _bal(1, "Y", 50)]
    post = [_bal(0, "X", 95), _bal(1, "Y", 60)]
    swap = extract_swap(pre, post)
    assert swap == SwapData(
        token_in="X",
        token_out="Y",
        amount_in_raw=5,
        amount_out_raw=10,
        decimals_in=0,
        decimals_out=0,
    )
    assert swap.amount_in == "5"
    assert swap.amount_out == "10"


def test_first_leg_in_encounter_order_wins():
    pre = [_bal(0, "A", 10), _bal(1, "B", 10), _bal(2, "C", 10), _bal(3, "D", 10)]
    post = [_bal(0, "A", 9), _bal(1, "B", 8), _bal(2, "C", 11), _bal(3, "D", 12)]
    swap = extract_swap(pre, post)
    assert swap.token_in == "A"
    assert swap.token_out == "C"


def test_mint_mismatch_and_missing_pre_are_ignored():
    pre = [_bal(0, "X", 10)]
    post = [_bal(0, "Z", 5), _bal(1, "Y", 7)]
    assert balance_deltas(pre, post) == []
    assert extract_swap(pre, post) is None


def test_no_change_yields_empty():
    assert extract_swap([_bal(0, "X", 10)], [_bal(0, "X", 10)]) is None
    assert extract_swap([], []) is None


def test_bad_input_yields_empty_instead_of_raising():
    assert extract_swap([object()], [object()]) is None


def test_large_amounts_stay_exact():
    raw = 123456789012345678901234567890
    swap = extract_swap([_bal(0, "X", raw + 1, 9)], [_bal(0, "X", 1, 9)])
    assert swap.amount_in_raw == raw
    assert swap.amount_in == "123456789012345678901.234567890"


def test_format_amount():
    assert format_amount(5, 0) == "5"
    assert format_amount(1, 6) == "0.000001"
    assert format_amount(1500000, 6) == "1.500000"


def test_latency_is_clamped():
    assert compute_latency_ms(1300, 1000) == 300
    assert compute_latency_ms(900, 1000) == 0
    assert compute_latency_ms(1300, None) is None
    assert compute_latency_ms(None, 1000) is None


def test_guess_instruction_label():
    lines = [
        "Program whirL invoke [1]",
        "Program log: Instruction: Swap",
        "Program log: Instruction: Transfer",
    ]
    assert guess_instruction_label(lines) == "Swap"
    assert guess_instruction_label(["Program log: nothing"]) is None
    assert guess_instruction_label(None) is None


def test_match_pool_and_program():
    pools = frozenset({"A", "B"})
    assert match_pool(["C"], pools) is None
    assert match_pool(["C", "B"], pools) == "B"
    assert match_pool(["C"], frozenset()) is None
    assert match_program(["x", "prog2"], ("prog1", "prog2")) == "prog2"
    assert match_program(["x"], ("prog1",)) is None
