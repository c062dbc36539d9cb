"""Tests for execution error classification."""

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from liquidation_bot.errors import (
    ConfirmationTimeoutError,
    GasCeilingExceeded,
    InsufficientFundsError,
    LiquidationBotError,
    StaleEligibilityError,
    TransactionRevertedError,
    classify_execution_error,
    error_message,
    revert_reason,
)
from liquidation_bot.models import OutcomeKind


class TestClassify:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (ContractLogicError("execution reverted: Position not liquidatable"), StaleEligibilityError),
            (ContractLogicError("execution reverted: No position"), StaleEligibilityError),
            (ContractLogicError("execution reverted"), TransactionRevertedError),
            (TimeExhausted("not mined"), ConfirmationTimeoutError),
            (TimeoutError(), ConfirmationTimeoutError),
            (ValueError("Request timed out"), ConfirmationTimeoutError),
            (ValueError("insufficient funds for gas * price + value"), InsufficientFundsError),
            (RuntimeError("Position not liquidatable"), StaleEligibilityError),
            (RuntimeError("nonce too low"), LiquidationBotError),
        ],
    )
    def test_mapping(self, exc, expected):
        assert type(classify_execution_error(exc)) is expected

    def test_bot_errors_pass_through(self):
        err = GasCeilingExceeded(2, 1)
        assert classify_execution_error(err) is err

    def test_stale_removes_position(self):
        err = classify_execution_error(ContractLogicError("execution reverted: Position not liquidatable"))
        assert err.removes_position is True
        assert err.retryable is False
        assert err.kind is OutcomeKind.STALE

    def test_retained_kinds(self):
        assert InsufficientFundsError().removes_position is False
        assert TransactionRevertedError().kind is OutcomeKind.REVERTED
        assert ConfirmationTimeoutError().kind is OutcomeKind.TIMEOUT
        assert GasCeilingExceeded(2, 1).kind is OutcomeKind.GAS_CEILING


class TestMessages:
    def test_prefers_message_attribute(self):
        exc = ContractLogicError("execution reverted: boom", data="0x08c379a0")
        assert error_message(exc) == "execution reverted: boom"

    def test_empty_exception_uses_type_name(self):
        assert error_message(TimeoutError()) == "TimeoutError"

    def test_revert_reason_strips_prefix(self):
        assert revert_reason(ValueError("Execution reverted: Not allowed")) == "Not allowed"
        assert revert_reason(ValueError("plain")) == "plain"

    def test_gas_ceiling_message(self):
        assert str(GasCeilingExceeded(80, 50)) == "Gas price too high: 80 > 50"
