"""Test the proof ledger: balances, selection and state transitions."""

import pytest

from walnut.ledger import ProofLedger
from walnut.types import DuplicateProofError, ProofState, ValidationError

MINT = "https://mint.test"
OTHER = "https://other.mint.test"


class TestAddProofs:
    def test_add_and_balance(self, proof) -> None:
        ledger = ProofLedger()
        added, amount = ledger.add_proofs(MINT, [proof(1), proof(4)])

        assert amount == 5
        assert len(added) == 2
        balances = ledger.get_balances()
        assert balances.total_balance == 5
        assert balances.total_pending_balance == 0
        assert balances.mint_balances[0].mint_url == MINT
        assert balances.mint_balances[0].balance("sat") == 5

    def test_proofs_are_tagged_with_mint(self, proof) -> None:
        ledger = ProofLedger()
        added, _ = ledger.add_proofs(MINT, [proof(2, mint="https://elsewhere")])
        assert added[0]["mint"] == MINT

    def test_non_power_of_two_rejected(self, proof) -> None:
        ledger = ProofLedger()
        with pytest.raises(ValidationError, match="Invalid proof amount"):
            ledger.add_proofs(MINT, [proof(1), proof(3)])
        assert len(ledger) == 0

    def test_duplicates_skipped_in_mixed_batch(self, proof) -> None:
        ledger = ProofLedger()
        first = proof(1)
        ledger.add_proofs(MINT, [first])

        added, amount = ledger.add_proofs(MINT, [first, proof(2)])

        assert amount == 2
        assert len(added) == 1
        assert ledger.get_balances().total_balance == 3

    def test_all_duplicates_raise(self, proof) -> None:
        ledger = ProofLedger()
        p = proof(1)
        ledger.add_proofs(MINT, [p])
        with pytest.raises(DuplicateProofError):
            ledger.add_proofs(MINT, [p])

    def test_spent_secret_never_readded(self, proof) -> None:
        ledger = ProofLedger()
        p = proof(8)
        ledger.add_proofs(MINT, [p])
        ledger.mark_spent([p])

        with pytest.raises(DuplicateProofError):
            ledger.add_proofs(MINT, [p])
        assert ledger.get_state(p) == ProofState.SPENT


class TestSelection:
    def test_greedy_selection_may_overshoot(self, proof) -> None:
        ledger = ProofLedger()
        ledger.add_proofs(MINT, [proof(2), proof(2)])

        selected = ledger.select_proofs_to_cover(MINT, 1)

        assert [p["amount"] for p in selected] == [2]

    def test_selection_in_ledger_order(self, proof) -> None:
        ledger = ProofLedger()
        ledger.add_proofs(MINT, [proof(1), proof(8), proof(2)])

        selected = ledger.select_proofs_to_cover(MINT, 5)

        assert [p["amount"] for p in selected] == [1, 8]

    def test_insufficient_funds(self, proof) -> None:
        ledger = ProofLedger()
        ledger.add_proofs(MINT, [proof(4)])
        with pytest.raises(ValidationError, match="Not enough funds available"):
            ledger.select_proofs_to_cover(MINT, 5)

    def test_selection_ignores_other_mints_and_pending(self, proof) -> None:
        ledger = ProofLedger()
        ledger.add_proofs(MINT, [proof(4)])
        ledger.add_proofs(OTHER, [proof(16, mint=OTHER)])
        ledger.mark_pending(ledger.get_proofs(MINT), 1)

        with pytest.raises(ValidationError):
            ledger.select_proofs_to_cover(MINT, 1)

    def test_mint_balances_with_enough_balance(self, proof) -> None:
        ledger = ProofLedger()
        ledger.add_proofs(MINT, [proof(4)])
        ledger.add_proofs(OTHER, [proof(16, mint=OTHER)])
        ledger.add_proofs("https://third.test", [proof(4, mint="https://third.test")])

        eligible = ledger.get_mint_balances_with_enough_balance(4)

        assert [mb.mint_url for mb in eligible] == [OTHER, MINT, "https://third.test"]
        assert ledger.get_mint_balances_with_enough_balance(5)[0].mint_url == OTHER
        assert ledger.get_mint_balances_with_enough_balance(100) == []


class TestStateTransitions:
    def test_pending_excluded_from_balance(self, proof) -> None:
        ledger = ProofLedger()
        p1, p2 = proof(1), proof(2)
        ledger.add_proofs(MINT, [p1, p2])

        ledger.mark_pending([p2], transaction_id=7)

        balances = ledger.get_balances()
        assert balances.total_balance == 1
        assert balances.total_pending_balance == 2
        assert ledger.get_pending_by_transaction() == {7: [ledger.get_proofs(state=ProofState.PENDING)[0]]}
        assert ledger.get_transaction_id(p2) == 7

    def test_mark_pending_only_touches_held(self, proof) -> None:
        ledger = ProofLedger()
        p = proof(1)
        ledger.add_proofs(MINT, [p])
        ledger.mark_pending([p], 1)

        assert ledger.mark_pending([p], 2) == []
        assert ledger.get_transaction_id(p) == 1

    def test_restore_to_held(self, proof) -> None:
        ledger = ProofLedger()
        p = proof(4)
        ledger.add_proofs(MINT, [p])
        ledger.mark_pending([p], 3)
        ledger.set_pending_by_mint([p])

        restored = ledger.restore_to_held([p])

        assert len(restored) == 1
        assert ledger.get_state(p) == ProofState.HELD
        assert ledger.get_transaction_id(p) is None
        assert ledger.get_pending_by_mint() == []
        assert ledger.get_balances().total_balance == 4

    def test_mark_spent_removes(self, proof) -> None:
        ledger = ProofLedger()
        p = proof(4)
        ledger.add_proofs(MINT, [p])

        removed = ledger.mark_spent([p])

        assert removed[0]["secret"] == p["secret"]
        assert len(ledger) == 0
        assert not ledger.mark_spent([p])

    def test_round_trip(self, proof) -> None:
        ledger = ProofLedger()
        held, pending = proof(1), proof(2)
        ledger.add_proofs(MINT, [held, pending])
        ledger.mark_pending([pending], 5)
        ledger.set_pending_by_mint([pending])
        gone = proof(8)
        ledger.add_proofs(MINT, [gone])
        ledger.mark_spent([gone])

        restored = ProofLedger.from_dict(ledger.to_dict())

        assert restored.get_state(held) == ProofState.HELD
        assert restored.get_state(pending) == ProofState.PENDING
        assert restored.get_transaction_id(pending) == 5
        assert restored.get_pending_by_mint()[0]["secret"] == pending["secret"]
        assert restored.has_secret(gone["secret"])
