"""Tests for the Base query engine."""

import pytest

from notebase.models.base import (Base, BaseView, ColumnConfig, Filter,
                                  FilterGroup, FilterLogic, FilterOperator,
                                  SortConfig)
from notebase.models.properties import PropertyType, PropertyValue
from notebase.services.query_engine import BaseQueryEngine, merge_property


@pytest.fixture
def engine(index_store):
    return BaseQueryEngine(index_store)


@pytest.fixture
def library(index_text):
    index_text("Dune", "[autor::Herbert] [paginas::600] [leido::true] #scifi")
    index_text("Hobbit", "[autor::Tolkien] [paginas::310] #fantasy")
    index_text("Neuromancer", "[autor::Gibson] [leido::false] #scifi #cyberpunk")
    index_text("Draft", "no properties", folder="drafts")


def _names(rows):
    return [row.metadata.name for row in rows]


class TestNoteProperties:
    """Tests for built-in and inline property loading."""

    def test_builtins_present(self, engine, index_store, index_text):
        index_text("note", "#a [k::v]", folder="f")
        note = index_store.get_note_by_name("note")
        props = engine.load_note_properties(note).properties
        assert props["title"].value == "note"
        assert props["folder"].value == "f"
        assert props["tags"].type == PropertyType.TAGS
        assert props["tags"].value == ["a"]
        assert props["created_at"].type == PropertyType.DATETIME
        assert props["k"].value == "v"

    def test_repeated_key_becomes_list(self, engine, index_store, index_text):
        index_text("note", "[color::red] and [color::blue] and [color::green]")
        note = index_store.get_note_by_name("note")
        value = engine.load_note_properties(note).properties["color"]
        assert value.type == PropertyType.LIST
        assert value.value == ["red", "blue", "green"]


class TestMergeProperty:
    """Tests for merge_property."""

    def test_two_scalars(self):
        merged = merge_property(PropertyValue.number(1), PropertyValue.text("x"))
        assert merged == PropertyValue.list(["1", "x"])

    def test_collection_replaces(self):
        new = PropertyValue.list(["a", "b"])
        assert merge_property(PropertyValue.text("x"), new) == new


class TestFiltering:
    """Tests for view filters."""

    def test_equals_text_is_case_insensitive(self, engine, library):
        view = BaseView(
            name="v", filter=FilterGroup(filters=[Filter.equals("autor", "tolkien")])
        )
        assert _names(engine.query_view(view)) == ["Hobbit"]

    def test_has_tag(self, engine, library):
        view = BaseView(
            name="v", filter=FilterGroup(filters=[Filter.has_tag("#scifi")]), sort=None
        )
        assert sorted(_names(engine.query_view(view))) == ["Dune", "Neuromancer"]

    def test_numeric_comparison(self, engine, library):
        flt = Filter(property="paginas", operator=FilterOperator.GREATER_THAN, value=400)
        view = BaseView(name="v", filter=FilterGroup(filters=[flt]))
        assert _names(engine.query_view(view)) == ["Dune"]

    def test_checkbox_equals(self, engine, library):
        view = BaseView(
            name="v", filter=FilterGroup(filters=[Filter.equals("leido", True)])
        )
        assert _names(engine.query_view(view)) == ["Dune"]

    def test_missing_property_only_matches_is_empty(self, engine, library):
        view = BaseView(
            name="v", filter=FilterGroup(filters=[Filter.is_empty("paginas")]), sort=None
        )
        assert sorted(_names(engine.query_view(view))) == ["Draft", "Neuromancer"]

    def test_or_logic(self, engine, library):
        group = FilterGroup(
            filters=[Filter.equals("autor", "Gibson"), Filter.equals("autor", "Herbert")],
            logic=FilterLogic.OR,
        )
        rows = engine.filter_notes(group, sort=SortConfig.asc("title"))
        assert _names(rows) == ["Dune", "Neuromancer"]

    def test_source_folder(self, engine, library):
        view = BaseView(name="v")
        assert _names(engine.query_view(view, source_folder="drafts")) == ["Draft"]


class TestSorting:
    """Tests for sort_results."""

    def test_numeric_sort_nulls_last(self, engine, library):
        rows = engine.filter_notes(FilterGroup(), sort=SortConfig.asc("paginas"))
        assert _names(rows)[:2] == ["Hobbit", "Dune"]
        assert sorted(_names(rows)[2:]) == ["Draft", "Neuromancer"]

    def test_descending_keeps_nulls_last(self, engine, library):
        rows = engine.filter_notes(FilterGroup(), sort=SortConfig.desc("paginas"))
        assert _names(rows)[:2] == ["Dune", "Hobbit"]

    def test_text_sort_ignores_case(self, engine, index_text):
        index_text("b", "[n::banana]")
        index_text("a", "[n::Apple]")
        index_text("c", "[n::cherry]")
        rows = engine.filter_notes(FilterGroup(), sort=SortConfig.asc("n"))
        assert _names(rows) == ["a", "b", "c"]

    def test_sort_by_alias(self, engine, index_text):
        index_text("zeta", "x")
        index_text("alpha", "y")
        rows = engine.filter_notes(FilterGroup(), sort=SortConfig.asc("name"))
        assert _names(rows) == ["alpha", "zeta"]


class TestGroupingAndAggregation:
    """Tests for group_by, count_by_property and aggregate_property."""

    def test_group_by(self, engine, library):
        rows = engine.filter_notes(FilterGroup())
        groups = engine.group_by(rows, "autor")
        assert set(groups) == {"Herbert", "Tolkien", "Gibson", "—"}
        assert _names(groups["—"]) == ["Draft"]

    def test_count_by_property(self, engine, library):
        rows = engine.filter_notes(FilterGroup())
        counts = engine.count_by_property(rows, "leido")
        assert counts == {"✓": 1, "✗": 1, "—": 2}

    def test_aggregate(self, engine, library):
        rows = engine.filter_notes(FilterGroup())
        agg = engine.aggregate_property(rows, "paginas")
        assert agg.sum == 910
        assert agg.avg == 455
        assert agg.min == 310
        assert agg.max == 600
        assert agg.count == 2
        assert agg.total == 4

    def test_aggregate_without_numbers(self, engine, library):
        agg = engine.aggregate_property(engine.filter_notes(FilterGroup()), "autor")
        assert agg.sum == 0
        assert agg.avg is None
        assert agg.count == 3


class TestRecordQueries:
    """Tests for record-sourced Bases."""

    def test_grouped_records_rows(self, engine, index_text):
        index_text("games", "[juego::Minecraft, precio::10]\n[juego::Terraria, precio::5]")
        base = Base.grouped_records("Games")
        base.views[0].sort = SortConfig.asc("precio")
        rows = engine.query(base)
        assert [r.get("juego").value for r in rows] == ["Terraria", "Minecraft"]
        assert rows[0].get("_note").value == "games"

    def test_property_records_filter(self, engine, index_text):
        index_text("mixed", "[juego::Minecraft, precio::10]\n[libro::Dune, autor::Herbert]")
        base = Base.property_records("Games", "juego")
        rows = engine.query(base)
        assert len(rows) == 1
        assert rows[0].record.note_name == "mixed"

    def test_record_view_filter(self, engine, index_text):
        index_text("games", "[juego::Minecraft, precio::10]\n[juego::Terraria, precio::5]")
        base = Base.grouped_records("Games")
        flt = Filter(property="precio", operator=FilterOperator.LESS_THAN, value=8)
        base.views[0].filter = FilterGroup(filters=[flt])
        assert [r.get("juego").value for r in engine.query(base)] == ["Terraria"]

    def test_suggest_columns(self, engine, index_text):
        index_text("games", "[juego::Minecraft, precio::10, horas::3]")
        base = Base.property_records("Games", "juego")
        assert engine.suggest_columns(base) == ["juego", "horas", "precio", "_note"]

    def test_discover_inline_properties(self, engine, index_text):
        index_text("a", "[b::1] [a::2]")
        assert engine.discover_inline_properties() == ["_note", "a", "b"]

    def test_discover_properties_lists_built_ins(self, engine, index_text):
        index_text("a", "[b::1]")
        assert engine.discover_properties() == [
            "created_at", "folder", "tags", "title", "updated_at"
        ]

    def test_active_view_columns(self):
        base = Base.property_records("Games", "juego")
        view = base.get_active_view()
        assert [c.property for c in view.columns] == ["juego", "_note"]
        assert isinstance(view.columns[0], ColumnConfig)
        assert view.is_editable(base.source_type)
