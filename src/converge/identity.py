"""Business key to surrogate id resolution."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .state import BusinessKey, ObservedItem, SurrogateID

logger = logging.getLogger(__name__)


def resolve_identity(key: BusinessKey, observed: Iterable[ObservedItem]) -> SurrogateID | None:
    """Find the surrogate id of the observed item whose key equals ``key``.

    Matching is exact equality on every field of the business key. The first
    match in iteration order wins; duplicate keys are a data-quality problem
    of the remote system and are not reported as an error here.

    Args:
        key: Business key declared by the user.
        observed: Collection freshly fetched from the remote system.

    Returns:
        The matching surrogate id, or None when nothing matches. An item that
        matches but carries no surrogate id also counts as not found.
    """
    key = tuple(key)
    for item in observed:
        if tuple(item.key) == key:
            if item.surrogate_id is None:
                logger.warning(
                    "Observed item matches key but has no surrogate id",
                    extra={"business_key": list(key)},
                )
            return item.surrogate_id
    return None
