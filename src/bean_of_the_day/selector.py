"""
Bean of the Day selection.

choose_featured() is the pure algorithm; run_selection_cycle() applies it to a
store inside a single write transaction. Both the nightly scheduler and the
on-demand trigger go through run_selection_cycle().
"""

import logging
import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .models import BeanStore, CoffeeBean, PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionOutcome:
    """The transition produced by one selection cycle."""

    previous_featured_id: int | None
    featured_id: int | None
    selected_at: datetime
    featured_name: str | None = None
    changed: bool = False
    duplicate_featured_ids: tuple[int, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary."""
        return {
            "previous_featured_id": self.previous_featured_id,
            "featured_id": self.featured_id,
            "featured_name": self.featured_name,
            "selected_at": self.selected_at.isoformat(),
            "changed": self.changed,
            "duplicate_featured_ids": list(self.duplicate_featured_ids),
        }


def choose_featured(
    beans: Sequence[CoffeeBean],
    rng: random.Random,
    now: datetime,
) -> SelectionOutcome:
    """
    Decide the next Bean of the Day from a snapshot of the store.

    Only beans that are not currently featured are eligible, so the new pick
    always differs from the previous one. When nothing is eligible the
    outcome is a no-op that keeps whatever is featured now.
    """
    featured = [bean for bean in beans if bean.is_botd]
    previous = featured[0] if featured else None
    duplicates = tuple(bean.id for bean in featured[1:])

    if duplicates:
        logger.warning(
            f"Data integrity: {len(featured)} beans flagged as Bean of the Day "
            f"(ids {[bean.id for bean in featured]}); clearing all but the new pick"
        )

    eligible = [bean for bean in beans if not bean.is_botd]
    if not eligible:
        return SelectionOutcome(
            previous_featured_id=previous.id if previous else None,
            featured_id=previous.id if previous else None,
            featured_name=previous.name if previous else None,
            selected_at=now,
            changed=False,
            duplicate_featured_ids=duplicates,
        )

    chosen = rng.choice(eligible)
    return SelectionOutcome(
        previous_featured_id=previous.id if previous else None,
        featured_id=chosen.id,
        featured_name=chosen.name,
        selected_at=now,
        changed=True,
        duplicate_featured_ids=duplicates,
    )


def run_selection_cycle(
    store: BeanStore,
    rng: random.Random | None = None,
    clock: Callable[[], datetime] | None = None,
) -> SelectionOutcome:
    """
    Run one selection cycle against the store.

    The snapshot read, the flag reset and the new flag all happen inside one
    immediate transaction, so concurrent cycles are serialized by SQLite.
    Raises PersistenceError if the transaction fails; "nothing eligible" is
    not an error.
    """
    rng = rng or random.Random()
    now = clock() if clock else datetime.now(UTC)

    with store.transaction() as txn:
        beans = txn.list_all()
        outcome = choose_featured(beans, rng, now)

        if outcome.changed:
            if not txn.apply_featured_transition(
                clear_all=True,
                new_featured_id=outcome.featured_id,
            ):
                raise PersistenceError(f"Bean {outcome.featured_id} vanished during selection")
        elif outcome.duplicate_featured_ids:
            # Nothing eligible but several flagged: keep the first, clear the rest
            txn.apply_featured_transition(
                clear_all=True,
                new_featured_id=outcome.featured_id,
            )

    if outcome.changed:
        logger.info(
            f"Bean of the Day: {outcome.featured_name} (id {outcome.featured_id}), "
            f"previously {outcome.previous_featured_id}"
        )
    else:
        logger.info(f"No eligible beans ({len(beans)} in store); Bean of the Day unchanged")

    return outcome
