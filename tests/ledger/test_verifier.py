"""Tests for independent payout statement verification."""

import pytest

from epochledger.ledger.hashing import allocation_set_hash
from epochledger.ledger.models import Allocation, PayoutLine, PayoutStatement
from epochledger.ledger.payouts import compute_payouts
from epochledger.ledger.signer import SigningContext, sign_statement
from epochledger.ledger.verifier import StatementVerifier


ALLOCATIONS = [
    Allocation(id="a1", node_id="node-a", epoch_id=3, user_id="a", proposed_units=1, activity_count=1),
    Allocation(id="a2", node_id="node-a", epoch_id=3, user_id="b", proposed_units=1, activity_count=1),
    Allocation(id="a3", node_id="node-a", epoch_id=3, user_id="c", proposed_units=1, activity_count=1),
]


def _honest_statement(pool: int = 10) -> PayoutStatement:
    result = compute_payouts(ALLOCATIONS, pool)
    return PayoutStatement(
        id="stmt-1",
        node_id="node-a",
        epoch_id=3,
        allocation_set_hash=allocation_set_hash(ALLOCATIONS),
        pool_total_credits=pool,
        payouts=result.lines,
    )


@pytest.fixture
def mock_wallet():
    import bittensor as bt
    wallet = bt.Wallet(name="test_epochledger_verifier", hotkey="test_epochledger_hk")
    wallet.create_if_non_existent(coldkey_use_password=False, hotkey_use_password=False)
    return wallet


class TestStatementVerifier:

    def test_honest_statement_passes(self):
        result = StatementVerifier().verify(ALLOCATIONS, _honest_statement())
        assert result.valid, result.errors
        assert bool(result)

    def test_hash_mismatch_detected(self):
        statement = _honest_statement().model_copy(update={"allocation_set_hash": "0" * 64})
        result = StatementVerifier().verify(ALLOCATIONS, statement)
        assert not result.valid
        assert any("allocation_set_hash" in e for e in result.errors)

    def test_allocations_changed_after_close_detected(self):
        statement = _honest_statement()
        changed = ALLOCATIONS[:2] + [ALLOCATIONS[2].model_copy(update={"proposed_units": 2})]
        result = StatementVerifier().verify(changed, statement)
        assert not result.valid

    def test_conservation_violation_detected(self):
        statement = _honest_statement()
        lines = list(statement.payouts)
        lines[0] = lines[0].model_copy(update={"amount_credits": lines[0].amount_credits - 1})
        result = StatementVerifier().verify(ALLOCATIONS, statement.model_copy(update={"payouts": lines}))
        assert not result.valid
        assert any("conservation" in e for e in result.errors)

    def test_misassigned_residual_detected(self):
        # Residual credit moved from "a" to "c": totals still conserve
        statement = _honest_statement()
        amounts = {"a": 3, "b": 3, "c": 4}
        lines = [
            line.model_copy(update={"amount_credits": amounts[line.user_id]})
            for line in statement.payouts
        ]
        result = StatementVerifier().verify(ALLOCATIONS, statement.model_copy(update={"payouts": lines}))
        assert not result.valid
        assert any("payout mismatch for a" in e for e in result.errors)

    def test_missing_and_extra_lines_detected(self):
        statement = _honest_statement()
        lines = statement.payouts[:2] + [
            PayoutLine(user_id="mallory", total_units=1, share="0.333333", amount_credits=3),
        ]
        result = StatementVerifier().verify(ALLOCATIONS, statement.model_copy(update={"payouts": lines}))
        assert "missing payout line for c" in result.errors
        assert "unexpected payout line for mallory" in result.errors

    def test_plain_pairs_accepted(self):
        pairs = [(a.user_id, a.proposed_units) for a in ALLOCATIONS]
        assert StatementVerifier().verify(pairs, _honest_statement()).valid

    def test_quiet_epoch_leaves_pool_undistributed(self):
        statement = PayoutStatement(
            id="s", node_id="node-a", epoch_id=3,
            allocation_set_hash=allocation_set_hash([]),
            pool_total_credits=5, payouts=[],
        )
        assert StatementVerifier().verify([], statement).valid

    def test_quiet_epoch_cannot_pay_anyone(self):
        statement = PayoutStatement(
            id="s", node_id="node-a", epoch_id=3,
            allocation_set_hash=allocation_set_hash([]),
            pool_total_credits=5,
            payouts=[PayoutLine(user_id="mallory", total_units=0, share="0.000000", amount_credits=5)],
        )
        result = StatementVerifier().verify([], statement)
        assert not result.valid
        assert any("conservation" in e for e in result.errors)


class TestSignatureRequirement:

    def test_required_signature_present(self, mock_wallet):
        statement = _honest_statement()
        sig = sign_statement(statement, mock_wallet)
        verifier = StatementVerifier(signer_hotkey=mock_wallet.hotkey.ss58_address)
        assert verifier.verify(ALLOCATIONS, statement, [sig]).valid

    def test_required_signature_missing(self, mock_wallet):
        verifier = StatementVerifier(signer_hotkey=mock_wallet.hotkey.ss58_address)
        result = verifier.verify(ALLOCATIONS, _honest_statement(), [])
        assert not result.valid
        assert any("no valid signature" in e for e in result.errors)

    def test_signature_under_other_context_rejected(self, mock_wallet):
        statement = _honest_statement()
        sig = sign_statement(statement, mock_wallet, SigningContext(app_domain="elsewhere"))
        verifier = StatementVerifier(signer_hotkey=mock_wallet.hotkey.ss58_address)
        assert not verifier.verify(ALLOCATIONS, statement, [sig]).valid

    def test_signatures_ignored_when_not_required(self):
        assert StatementVerifier().verify(ALLOCATIONS, _honest_statement(), []).valid
