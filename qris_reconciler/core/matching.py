"""
Amount/time matching of mutations against pending transactions.

Pure functions, no I/O. The engine feeds in pending transactions of one
gateway-account scope together with a freshly fetched mutation list (or a
single webhook event wrapped as a one-element list) and applies the returned
matches with a compare-and-set.

Rules:
1. Only credits can confirm a payment.
2. Transactions are served oldest first (created_at, then id), so among equal
   amounts the earliest order wins.
3. A mutation qualifies for a transaction when the amount is exactly equal,
   its timestamp (if any) is not earlier than ``created_at - tolerance`` and
   its external id is neither persisted on another transaction nor already
   assigned in this pass.
4. First qualifying mutation wins; it is then unavailable for the rest of
   the pass. Mutations without an external id are tracked by position.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Hashable, Iterable, List, Optional, Sequence, Set, Tuple

from qris_reconciler.integrations.mutation_feed import MutationRecord
from qris_reconciler.timeutils import as_utc


@dataclass
class Match:
    """A pending transaction paired with the mutation that pays it."""

    transaction: Any
    mutation: MutationRecord
    key: Hashable


def mutation_key(index: int, mutation: MutationRecord) -> Hashable:
    if mutation.external_id:
        return ("id", mutation.external_id)
    return ("position", index)


def fifo_order(transactions: Iterable[Any]) -> List[Any]:
    return sorted(transactions, key=lambda t: (as_utc(t.created_at), t.id))


def is_candidate(transaction: Any, mutation: MutationRecord, tolerance: timedelta) -> bool:
    """Amount equality plus the backward time window."""
    if not mutation.is_credit or int(mutation.amount) != int(transaction.amount):
        return False
    if mutation.occurred_at is None:
        return True
    return as_utc(mutation.occurred_at) >= as_utc(transaction.created_at) - tolerance


def find_match(
    transaction: Any,
    mutations: Sequence[MutationRecord],
    tolerance: timedelta,
    consumed_ids: Set[str],
    used_keys: Set[Hashable],
) -> Optional[Tuple[int, MutationRecord]]:
    """
    Return the first qualifying mutation for one transaction.

    Args:
        transaction: Pending transaction (needs ``amount`` and ``created_at``)
        mutations: Mutation list in feed order
        tolerance: Backward grace on mutation timestamps
        consumed_ids: External ids already persisted on some transaction
        used_keys: Mutations already assigned earlier in this pass

    Returns:
        Optional[Tuple[int, MutationRecord]]: Index and mutation, or None
    """
    for index, mutation in enumerate(mutations):
        if mutation_key(index, mutation) in used_keys:
            continue
        if mutation.external_id and mutation.external_id in consumed_ids:
            continue
        if is_candidate(transaction, mutation, tolerance):
            return index, mutation
    return None


def find_matches(
    transactions: Iterable[Any],
    mutations: Sequence[MutationRecord],
    tolerance: timedelta = timedelta(0),
    consumed_ids: Optional[Set[str]] = None,
) -> List[Match]:
    """
    Match pending transactions to mutations for one reconciliation pass.

    The per-pass assignment set lives only inside this call; cross-cycle
    protection comes from ``consumed_ids`` (persisted mutation ids).

    Returns:
        List[Match]: At most one match per transaction, in FIFO order
    """
    consumed = consumed_ids or set()
    credits = [m for m in mutations if m.is_credit]
    used_keys: Set[Hashable] = set()
    matches: List[Match] = []

    for transaction in fifo_order(transactions):
        found = find_match(transaction, credits, tolerance, consumed, used_keys)
        if found is None:
            continue
        index, mutation = found
        key = mutation_key(index, mutation)
        used_keys.add(key)
        matches.append(Match(transaction=transaction, mutation=mutation, key=key))

    return matches
