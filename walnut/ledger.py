"""Proof Ledger: the wallet's proofs with their held/pending/spent state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from loguru import logger

from .denominations import is_power_of_two
from .types import (
    CurrencyUnit,
    DuplicateProofError,
    Proof,
    ProofState,
    ValidationError,
)


@dataclass
class ProofRecord:
    proof: Proof
    state: ProofState = ProofState.HELD
    transaction_id: int | None = None
    # The mint itself reported the proof as PENDING (in-flight melt)
    pending_by_mint: bool = False


@dataclass
class MintBalance:
    """Held balance of one mint, per unit."""

    mint_url: str
    balances: dict[str, int] = field(default_factory=dict)

    def balance(self, unit: CurrencyUnit = "sat") -> int:
        return self.balances.get(unit, 0)


@dataclass
class Balances:
    total_balance: int
    total_pending_balance: int
    mint_balances: list[MintBalance]


class ProofLedger:
    """In-memory proof collection.

    Records are kept in insertion order, keyed by secret. A proof is in
    exactly one state; spent proofs are dropped from the collection but their
    secrets are remembered so they can never be added again.
    """

    def __init__(self) -> None:
        self._records: dict[str, ProofRecord] = {}
        self._spent_secrets: set[str] = set()
        self._mint_order: list[str] = []

    def __len__(self) -> int:
        return len(self._records)

    def has_secret(self, secret: str) -> bool:
        return secret in self._records or secret in self._spent_secrets

    def get_state(self, proof: Proof) -> ProofState | None:
        if proof["secret"] in self._spent_secrets:
            return ProofState.SPENT
        record = self._records.get(proof["secret"])
        return record.state if record else None

    # ───────────────────────── Queries ─────────────────────────────────

    def get_proofs(
        self,
        mint_url: str | None = None,
        unit: CurrencyUnit | None = None,
        state: ProofState = ProofState.HELD,
    ) -> list[Proof]:
        return [
            r.proof
            for r in self._records.values()
            if r.state == state
            and (mint_url is None or r.proof["mint"] == mint_url)
            and (unit is None or r.proof["unit"] == unit)
        ]

    def get_balances(self, unit: CurrencyUnit | None = None) -> Balances:
        """Sum held and pending amounts, grouped by mint and unit."""
        total = 0
        pending = 0
        per_mint: dict[str, MintBalance] = {
            url: MintBalance(mint_url=url) for url in self._mint_order
        }

        for record in self._records.values():
            proof = record.proof
            if unit is not None and proof["unit"] != unit:
                continue
            if record.state == ProofState.PENDING:
                pending += proof["amount"]
                continue
            total += proof["amount"]
            balances = per_mint.setdefault(
                proof["mint"], MintBalance(mint_url=proof["mint"])
            ).balances
            balances[proof["unit"]] = balances.get(proof["unit"], 0) + proof["amount"]

        return Balances(
            total_balance=total,
            total_pending_balance=pending,
            mint_balances=[mb for mb in per_mint.values() if mb.balances],
        )

    def get_mint_balances_with_enough_balance(
        self, amount: int, unit: CurrencyUnit = "sat"
    ) -> list[MintBalance]:
        """Mints whose held balance covers ``amount``, largest balance first.

        Ties keep the order in which mints first received proofs.
        """
        eligible = [
            mb
            for mb in self.get_balances(unit).mint_balances
            if mb.balance(unit) >= amount
        ]
        return sorted(eligible, key=lambda mb: -mb.balance(unit))

    def select_proofs_to_cover(
        self, mint_url: str, amount: int, unit: CurrencyUnit = "sat"
    ) -> list[Proof]:
        """Greedy selection in ledger order until the sum reaches ``amount``.

        The result may exceed ``amount``; the mint computes change on split.

        Raises:
            ValidationError: If the mint's held proofs do not cover the amount
        """
        selected: list[Proof] = []
        running = 0
        for proof in self.get_proofs(mint_url=mint_url, unit=unit):
            if running >= amount:
                break
            selected.append(proof)
            running += proof["amount"]

        if running < amount or not selected:
            raise ValidationError(
                "Not enough funds available",
                {"mintUrl": mint_url, "amount": amount, "available": running},
            )
        return selected

    def get_pending_by_transaction(self) -> dict[int | None, list[Proof]]:
        grouped: dict[int | None, list[Proof]] = {}
        for record in self._records.values():
            if record.state == ProofState.PENDING:
                grouped.setdefault(record.transaction_id, []).append(record.proof)
        return grouped

    def get_transaction_id(self, proof: Proof) -> int | None:
        record = self._records.get(proof["secret"])
        return record.transaction_id if record else None

    def get_pending_by_mint(self) -> list[Proof]:
        return [r.proof for r in self._records.values() if r.pending_by_mint]

    # ───────────────────────── Mutations ─────────────────────────────────

    def add_proofs(
        self,
        mint_url: str,
        proofs: Iterable[Proof],
        *,
        state: ProofState = ProofState.HELD,
        transaction_id: int | None = None,
    ) -> tuple[list[Proof], int]:
        """Insert new proofs for ``mint_url``.

        Duplicates inside an otherwise new batch are logged and skipped.

        Returns:
            Tuple of (added proofs, added amount)

        Raises:
            DuplicateProofError: If every proof of the batch is already known
            ValidationError: If a proof amount is not a power of two
        """
        proofs = list(proofs)
        added: list[Proof] = []
        duplicates: list[str] = []

        for proof in proofs:
            if not is_power_of_two(proof["amount"]):
                raise ValidationError(
                    f"Invalid proof amount {proof['amount']}",
                    {"mintUrl": mint_url, "keysetId": proof["id"]},
                )

        for proof in proofs:
            if self.has_secret(proof["secret"]):
                duplicates.append(proof["secret"])
                logger.warning(
                    f"Skipping duplicate proof {proof['secret'][:8]}... from {mint_url}"
                )
                continue
            proof = Proof(**{**proof, "mint": mint_url})
            self._records[proof["secret"]] = ProofRecord(
                proof=proof, state=state, transaction_id=transaction_id
            )
            added.append(proof)

        if proofs and not added:
            raise DuplicateProofError(
                "Proofs are already in the wallet",
                {"mintUrl": mint_url, "count": len(duplicates)},
            )

        if added and mint_url not in self._mint_order:
            self._mint_order.append(mint_url)

        return added, sum(p["amount"] for p in added)

    def mark_pending(
        self, proofs: Iterable[Proof], transaction_id: int | None = None
    ) -> list[Proof]:
        """Reserve held proofs. Already pending or unknown proofs are left alone."""
        changed: list[Proof] = []
        for proof in proofs:
            record = self._records.get(proof["secret"])
            if record is None or record.state != ProofState.HELD:
                continue
            record.state = ProofState.PENDING
            record.transaction_id = transaction_id
            changed.append(record.proof)
        return changed

    def mark_spent(self, proofs: Iterable[Proof]) -> list[Proof]:
        """Drop proofs confirmed spent. Returns the proofs actually removed."""
        removed: list[Proof] = []
        for proof in proofs:
            record = self._records.pop(proof["secret"], None)
            self._spent_secrets.add(proof["secret"])
            if record is not None:
                removed.append(record.proof)
        return removed

    def restore_to_held(self, proofs: Iterable[Proof]) -> list[Proof]:
        """Return pending proofs to the spendable balance."""
        changed: list[Proof] = []
        for proof in proofs:
            record = self._records.get(proof["secret"])
            if record is None or record.state != ProofState.PENDING:
                continue
            record.state = ProofState.HELD
            record.transaction_id = None
            record.pending_by_mint = False
            changed.append(record.proof)
        return changed

    def set_pending_by_mint(self, proofs: Iterable[Proof], value: bool = True) -> None:
        for proof in proofs:
            record = self._records.get(proof["secret"])
            if record is not None:
                record.pending_by_mint = value

    # ───────────────────────── Persistence ─────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "proofs": [
                {
                    "proof": dict(r.proof),
                    "state": r.state.value,
                    "transactionId": r.transaction_id,
                    "pendingByMint": r.pending_by_mint,
                }
                for r in self._records.values()
            ],
            "spentSecrets": sorted(self._spent_secrets),
            "mintOrder": list(self._mint_order),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProofLedger:
        ledger = cls()
        for item in data.get("proofs", []):
            proof = Proof(**item["proof"])
            ledger._records[proof["secret"]] = ProofRecord(
                proof=proof,
                state=ProofState(item.get("state", ProofState.HELD.value)),
                transaction_id=item.get("transactionId"),
                pending_by_mint=item.get("pendingByMint", False),
            )
        ledger._spent_secrets = set(data.get("spentSecrets", []))
        ledger._mint_order = list(data.get("mintOrder", []))
        return ledger
