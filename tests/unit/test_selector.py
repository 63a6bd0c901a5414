"""Tests for Bean of the Day selection."""

import random
import sqlite3
from collections import Counter
from datetime import UTC, datetime

import pytest

from bean_of_the_day.models import BeanStore, BeanTransaction, CoffeeBean, PersistenceError
from bean_of_the_day.selector import SelectionOutcome, choose_featured, run_selection_cycle

NOW = datetime(2025, 3, 10, 0, 0, tzinfo=UTC)


def make_bean(bean_id: int, name: str, is_botd: bool = False) -> CoffeeBean:
    return CoffeeBean(id=bean_id, name=name, cost="£1.00", colour="Brown", is_botd=is_botd)


def featured_ids(store: BeanStore) -> list[int]:
    return [bean.id for bean in store.list_all() if bean.is_botd]


class TestChooseFeatured:
    """Tests for the pure selection algorithm."""

    def test_empty_snapshot_is_noop(self):
        """No beans means nothing to pick and no error."""
        outcome = choose_featured([], random.Random(0), NOW)

        assert outcome.changed is False
        assert outcome.featured_id is None
        assert outcome.previous_featured_id is None

    def test_single_featured_bean_is_noop(self):
        """A lone bean that is already featured stays featured."""
        outcome = choose_featured([make_bean(1, "Robusta", is_botd=True)], random.Random(0), NOW)

        assert outcome.changed is False
        assert outcome.featured_id == 1
        assert outcome.previous_featured_id == 1
        assert outcome.featured_name == "Robusta"

    def test_single_unfeatured_bean_is_picked(self):
        outcome = choose_featured([make_bean(1, "Arabica")], random.Random(0), NOW)

        assert outcome.changed is True
        assert outcome.featured_id == 1
        assert outcome.previous_featured_id is None

    def test_never_picks_the_current_bean(self):
        """The previously featured bean is excluded from the candidates."""
        beans = [make_bean(1, "A", is_botd=True), make_bean(2, "B"), make_bean(3, "C")]
        rng = random.Random(7)

        for _ in range(200):
            outcome = choose_featured(beans, rng, NOW)
            assert outcome.changed is True
            assert outcome.previous_featured_id == 1
            assert outcome.featured_id in (2, 3)

    def test_uniform_over_eligible_beans(self):
        """Each of three eligible beans is picked about a third of the time."""
        beans = [make_bean(1, "A"), make_bean(2, "B"), make_bean(3, "C")]
        rng = random.Random(1234)

        counts = Counter(choose_featured(beans, rng, NOW).featured_id for _ in range(3000))

        assert set(counts) == {1, 2, 3}
        for bean_id in (1, 2, 3):
            assert 850 <= counts[bean_id] <= 1150

    def test_seeded_rng_is_reproducible(self):
        beans = [make_bean(i, f"Bean {i}") for i in range(1, 11)]

        first = [choose_featured(beans, random.Random(99), NOW).featured_id for _ in range(5)]
        second = [choose_featured(beans, random.Random(99), NOW).featured_id for _ in range(5)]

        assert first == second

    def test_multiple_featured_reported_as_anomaly(self, caplog):
        """More than one flagged bean is logged and recorded, not fatal."""
        beans = [
            make_bean(1, "A", is_botd=True),
            make_bean(2, "B", is_botd=True),
            make_bean(3, "C"),
        ]

        outcome = choose_featured(beans, random.Random(0), NOW)

        assert outcome.changed is True
        assert outcome.featured_id == 3
        assert outcome.previous_featured_id == 1
        assert outcome.duplicate_featured_ids == (2,)
        assert "Data integrity" in caplog.text

    def test_outcome_to_dict(self):
        outcome = SelectionOutcome(
            previous_featured_id=1,
            featured_id=2,
            featured_name="Robusta",
            selected_at=NOW,
            changed=True,
        )

        data = outcome.to_dict()

        assert data["featured_id"] == 2
        assert data["selected_at"] == "2025-03-10T00:00:00+00:00"
        assert data["duplicate_featured_ids"] == []


class TestRunSelectionCycle:
    """Tests for selection applied to the store."""

    def test_sets_exactly_one_bean(self, store, seed_beans):
        """Three unfeatured beans -> exactly one featured afterwards."""
        seed_beans()

        outcome = run_selection_cycle(store, rng=random.Random(3))

        assert featured_ids(store) == [outcome.featured_id]
        assert outcome.changed is True

    def test_replaces_current_bean(self, store, seed_beans):
        beans = seed_beans(featured="Robusta")
        robusta_id = next(b.id for b in beans if b.name == "Robusta")

        outcome = run_selection_cycle(store, rng=random.Random(3))

        assert outcome.previous_featured_id == robusta_id
        assert outcome.featured_id != robusta_id
        assert featured_ids(store) == [outcome.featured_id]

    def test_consecutive_cycles_never_repeat(self, store, seed_beans):
        seed_beans()
        rng = random.Random(11)
        previous = None

        for _ in range(25):
            outcome = run_selection_cycle(store, rng=rng)
            assert outcome.featured_id != previous
            assert len(featured_ids(store)) == 1
            previous = outcome.featured_id

    def test_only_bean_already_featured_is_unchanged(self, store):
        """Store = {A} with A featured -> A stays featured, no-op outcome."""
        bean = store.insert_bean("Robusta", "£10.00", "Dark Brown", is_botd=True)

        outcome = run_selection_cycle(store, rng=random.Random(0))

        assert outcome.changed is False
        assert outcome.featured_id == bean.id
        assert store.get_bean(bean.id).is_botd is True
        assert store.get_bean(bean.id).updated_ts is None

    def test_empty_store_is_noop(self, store):
        outcome = run_selection_cycle(store, rng=random.Random(0))

        assert outcome.changed is False
        assert outcome.featured_id is None
        assert store.list_all() == []

    def test_repairs_multiple_featured_beans(self, store, seed_beans, db_path):
        seed_beans()
        conn = sqlite3.connect(db_path)
        conn.execute("UPDATE coffee_beans SET is_botd = 1 WHERE name IN ('Arabica', 'Robusta')")
        conn.commit()
        conn.close()

        outcome = run_selection_cycle(store, rng=random.Random(0))

        liberica = next(b for b in store.list_all() if b.name == "Liberica")
        assert outcome.featured_id == liberica.id
        assert len(outcome.duplicate_featured_ids) == 1
        assert featured_ids(store) == [liberica.id]

    def test_repairs_when_every_bean_is_featured(self, store, seed_beans, db_path):
        """Nothing eligible but several flagged: the first flag is kept."""
        beans = seed_beans()
        conn = sqlite3.connect(db_path)
        conn.execute("UPDATE coffee_beans SET is_botd = 1")
        conn.commit()
        conn.close()

        outcome = run_selection_cycle(store, rng=random.Random(0))

        assert outcome.changed is False
        assert outcome.featured_id == beans[0].id
        assert featured_ids(store) == [beans[0].id]

    def test_uses_injected_clock(self, store, seed_beans):
        seed_beans()

        outcome = run_selection_cycle(store, rng=random.Random(0), clock=lambda: NOW)

        assert outcome.selected_at == NOW

    def test_missing_schema_raises_persistence_error(self, tmp_path):
        store = BeanStore(tmp_path / "empty.db")

        with pytest.raises(PersistenceError):
            run_selection_cycle(store, rng=random.Random(0))

    def test_failed_write_rolls_back(self, store, seed_beans, monkeypatch):
        """A failure after the flags are cleared leaves the old bean featured."""
        beans = seed_beans(featured="Robusta")
        robusta_id = next(b.id for b in beans if b.name == "Robusta")
        real_transition = BeanTransaction.apply_featured_transition

        def failing(self, clear_all, new_featured_id):
            real_transition(self, clear_all, None)
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(BeanTransaction, "apply_featured_transition", failing)

        with pytest.raises(PersistenceError, match="disk I/O error"):
            run_selection_cycle(store, rng=random.Random(0))

        assert featured_ids(store) == [robusta_id]
