"""Order-preserving merge of declared and observed collections.

The remote system is authoritative for attribute values; the user's
declaration is authoritative for presentation order. Items are matched by
business key, never by position: a positional diff silently pairs the wrong
items as soon as the remote list is reordered or an element goes missing.

Algorithm:
1. Index observed items by business key (last write wins on duplicates).
2. Walk the declared list in order, emitting the observed counterpart of
   every declared key and consuming it. Declared keys with no counterpart
   are dropped: the result reflects remote reality, and deciding whether to
   recreate them is the caller's job.
3. Append whatever observed items were not consumed, in their original
   relative order. These are drift the user never asked to remove; dropping
   them would turn into deletions on the next mutation cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from .state import BusinessKey, DeclaredItem, ObservedItem, ReconciledItem

logger = logging.getLogger(__name__)


def reconcile(
    declared: Sequence[DeclaredItem],
    observed: Sequence[ObservedItem],
    *,
    ordered_fields: Iterable[str] = (),
) -> list[ReconciledItem]:
    """Merge a declared ordered collection with the observed remote collection.

    Pure and deterministic: no I/O, and identical inputs always give an
    identical output sequence.

    Args:
        declared: User's ordered list.
        observed: Collection as returned by the remote system.
        ordered_fields: Attribute names holding scalar lists whose element
            order should follow the matching declared item (see
            ``reconcile_values``).

    Returns:
        Matched items in declared order followed by unmatched observed items
        in observed order.
    """
    ordered_fields = tuple(ordered_fields)

    inventory: dict[BusinessKey, ObservedItem] = {}
    for item in observed:
        inventory[tuple(item.key)] = item

    result: list[ReconciledItem] = []
    consumed: set[BusinessKey] = set()

    for wanted in declared:
        key = tuple(wanted.key)
        if key in consumed:
            # Declared twice; the first position keeps it
            continue
        match = inventory.get(key)
        if match is None:
            logger.debug(
                "Declared item not found in observed collection",
                extra={"business_key": list(key)},
            )
            continue
        attributes = dict(match.attributes)
        for name in ordered_fields:
            if isinstance(attributes.get(name), list):
                attributes[name] = reconcile_values(
                    wanted.attributes.get(name) or [], attributes[name]
                )
        result.append(
            ReconciledItem(
                key=key,
                attributes=attributes,
                surrogate_id=match.surrogate_id,
                declared=True,
            )
        )
        consumed.add(key)

    leftovers = 0
    for item in observed:
        key = tuple(item.key)
        if key in consumed:
            continue
        # Last write wins: only the indexed instance of a duplicated key is kept
        if inventory[key] is not item:
            continue
        result.append(
            ReconciledItem(
                key=key,
                attributes=dict(item.attributes),
                surrogate_id=item.surrogate_id,
                declared=False,
            )
        )
        consumed.add(key)
        leftovers += 1

    if leftovers:
        logger.info(
            "Observed items not present in declaration appended",
            extra={"undeclared_count": leftovers},
        )

    return result


def reconcile_values(declared: Sequence[Any], observed: Sequence[Any]) -> list[Any]:
    """Reorder a scalar list so declared values keep their declared order.

    Values present in both lists come first, in declared order; values only
    present remotely follow in remote order. Values only present in the
    declaration are dropped. The result is always a permutation of
    ``observed``, duplicates included.
    """
    remaining = list(observed)
    result: list[Any] = []
    for value in declared:
        if value in remaining:
            remaining.remove(value)
            result.append(value)
    result.extend(remaining)
    return result
