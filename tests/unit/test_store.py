"""Tests for BeanStore database operations."""

import sqlite3

import pytest

from bean_of_the_day.models import PLACEHOLDER_IMAGE, BeanStore, PersistenceError


class TestBeanStoreWrites:
    """Insert, update and delete."""

    def test_insert_assigns_id_and_placeholder_image(self, store):
        bean = store.insert_bean("Arabica", "$12.99", "Brown", "Smooth coffee bean")

        assert bean.id is not None
        assert bean.name == "Arabica"
        assert bean.image == PLACEHOLDER_IMAGE
        assert bean.is_botd is False
        assert bean.created_ts is not None

    def test_insert_keeps_supplied_image(self, store):
        bean = store.insert_bean("Arabica", "$12.99", "Brown", image="https://example.org/a.jpg")
        assert bean.image == "https://example.org/a.jpg"

    def test_insert_auto_increments_index(self, store):
        first = store.insert_bean("A", "£1.00", "Brown")
        second = store.insert_bean("B", "£2.00", "Brown")

        assert first.index == 0
        assert second.index == 1

    def test_update_changes_only_non_empty_fields(self, store):
        bean = store.insert_bean("Arabica", "$12.99", "Brown", "Smooth")

        updated = store.update_bean(bean.id, name="Arabica Gold", cost="", colour=None)

        assert updated.name == "Arabica Gold"
        assert updated.cost == "$12.99"
        assert updated.colour == "Brown"
        assert updated.description == "Smooth"
        assert updated.updated_ts is not None

    def test_update_missing_bean_returns_none(self, store):
        assert store.update_bean(999, name="Ghost") is None

    def test_update_cannot_touch_featured_flag(self, store):
        bean = store.insert_bean("Arabica", "$12.99", "Brown")

        with pytest.raises(ValueError):
            store.update_bean(bean.id, is_botd=True)

    def test_update_preserves_featured_flag(self, store):
        bean = store.insert_bean("Arabica", "$12.99", "Brown", is_botd=True)

        updated = store.update_bean(bean.id, description="Now with notes of cocoa")

        assert updated.is_botd is True

    def test_delete_bean(self, store):
        bean = store.insert_bean("Arabica", "$12.99", "Brown")

        assert store.delete_bean(bean.id) is True
        assert store.get_bean(bean.id) is None
        assert store.delete_bean(bean.id) is False

    def test_delete_all(self, store, seed_beans):
        seed_beans()

        assert store.delete_all() == 3
        assert store.count() == 0

    def test_insert_many(self, store):
        inserted = store.insert_many(
            [
                {"name": "A", "cost": "£1.00", "colour": "Brown"},
                {"name": "B", "cost": "£2.00", "colour": "Green", "index": 7, "is_botd": True},
            ]
        )

        beans = store.list_all()
        assert inserted == 2
        assert [b.index for b in beans] == [0, 7]
        assert store.get_featured().name == "B"


class TestBeanStoreReads:
    """Listing, lookup and search."""

    def test_list_all_ordered_by_id(self, store, seed_beans):
        beans = seed_beans()

        assert [b.name for b in beans] == ["Arabica", "Robusta", "Liberica"]
        assert [b.id for b in beans] == sorted(b.id for b in beans)

    def test_get_featured(self, store, seed_beans):
        assert store.get_featured() is None

        seed_beans(featured="Liberica")

        assert store.get_featured().name == "Liberica"

    def test_search_by_name_case_insensitive(self, store, seed_beans):
        seed_beans()

        results = store.search(name="rob")

        assert [b.name for b in results] == ["Robusta"]

    def test_search_combines_filters(self, store, seed_beans):
        seed_beans()

        results = store.search(colour="brown", cost="£")

        assert [b.name for b in results] == ["Robusta", "Liberica"]

    def test_search_without_filters_returns_everything(self, store, seed_beans):
        seed_beans()

        assert len(store.search()) == 3
        assert len(store.search(name="", colour=None)) == 3

    def test_to_dict(self, store):
        bean = store.insert_bean("Arabica", "$12.99", "Brown")

        data = bean.to_dict()

        assert data["name"] == "Arabica"
        assert data["is_botd"] is False
        assert "index" in data


class TestTransactions:
    """Tests for the write transaction used by selection."""

    def test_commits_on_success(self, store, seed_beans):
        beans = seed_beans()

        with store.transaction() as txn:
            assert txn.apply_featured_transition(clear_all=True, new_featured_id=beans[1].id)

        assert store.get_featured().id == beans[1].id

    def test_rolls_back_on_error(self, store, seed_beans):
        beans = seed_beans(featured="Arabica")

        with pytest.raises(RuntimeError):
            with store.transaction() as txn:
                txn.apply_featured_transition(clear_all=True, new_featured_id=beans[2].id)
                raise RuntimeError("boom")

        assert store.get_featured().name == "Arabica"

    def test_transition_to_missing_bean_returns_false(self, store, seed_beans):
        seed_beans()

        with store.transaction() as txn:
            assert txn.apply_featured_transition(clear_all=False, new_featured_id=999) is False

    def test_clear_only(self, store, seed_beans):
        seed_beans(featured="Robusta")

        with store.transaction() as txn:
            txn.apply_featured_transition(clear_all=True, new_featured_id=None)

        assert store.get_featured() is None

    def test_write_lock_is_exclusive(self, db_path, store, seed_beans):
        """A second writer cannot start while a selection transaction is open."""
        seed_beans()
        impatient = BeanStore(db_path, timeout=0.05)

        with store.transaction():
            with pytest.raises(PersistenceError, match="locked"):
                with impatient.transaction():
                    pass

    def test_sqlite_errors_become_persistence_errors(self, tmp_path):
        store = BeanStore(tmp_path / "no_schema.db")

        with pytest.raises(PersistenceError) as exc_info:
            with store.transaction() as txn:
                txn.list_all()

        assert isinstance(exc_info.value.__cause__, sqlite3.Error)
