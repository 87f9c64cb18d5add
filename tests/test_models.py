"""Tests for property values and Base configuration models."""

import pytest
import yaml
from pydantic import ValidationError

from notebase.exceptions import BaseConfigError
from notebase.models.base import (Base, BaseView, CellFormat, ColumnConfig,
                                  Filter, FilterGroup, FilterOperator,
                                  SortConfig, SourceType, SpecialRow)
from notebase.models.properties import PropertyType, PropertyValue


class TestPropertyInference:
    """Tests for PropertyValue.infer."""

    @pytest.mark.parametrize(
        "raw,kind",
        [
            ("", PropertyType.NULL),
            ("  ", PropertyType.NULL),
            ("True", PropertyType.CHECKBOX),
            ("false", PropertyType.CHECKBOX),
            ("42", PropertyType.NUMBER),
            ("-3.5", PropertyType.NUMBER),
            ("2024-03-15", PropertyType.DATE),
            ("2024-03-15T10:30", PropertyType.DATETIME),
            ("2024-03-15T10:30:05Z", PropertyType.DATETIME),
            ("2024-03-15T10:30:05.250+02:00", PropertyType.DATETIME),
            ("2024-03-15T10:30garbage", PropertyType.TEXT),
            ("[[Target]]", PropertyType.LINK),
            ("[[A]], [[B]]", PropertyType.LINKS),
            ("a, b", PropertyType.LIST),
            ("10€", PropertyType.TEXT),
            ("1e5", PropertyType.TEXT),
        ],
    )
    def test_infer(self, raw, kind):
        assert PropertyValue.infer(raw).type == kind

    def test_link_alias_is_dropped(self):
        assert PropertyValue.infer("[[Target|shown]]").value == "Target"

    def test_mixed_list_is_plain_list(self):
        value = PropertyValue.infer("[[A]], plain")
        assert value.type == PropertyType.LIST
        assert value.value == ["[[A]]", "plain"]


class TestPropertyRendering:
    """Tests for raw and display strings."""

    def test_raw_strings(self):
        assert PropertyValue.number(12).raw_string() == "12"
        assert PropertyValue.number(2.5).raw_string() == "2.5"
        assert PropertyValue.checkbox(True).raw_string() == "true"
        assert PropertyValue.link("X").raw_string() == "[[X]]"
        assert PropertyValue.links(["A", "B"]).raw_string() == "[[A]], [[B]]"
        assert PropertyValue.null().raw_string() == ""

    def test_display_strings(self):
        assert PropertyValue.number(12).to_display_string() == "12"
        assert PropertyValue.number(2.5).to_display_string() == "2.50"
        assert PropertyValue.checkbox(False).to_display_string() == "✗"
        assert PropertyValue.link("X").to_display_string() == "@X"
        assert PropertyValue.tags(["a", "b"]).to_display_string() == "#a #b"
        assert PropertyValue.null().to_display_string() == "—"
        assert PropertyValue.date("2024-03-05").to_display_string() == "05 Mar 2024"

    def test_column_round_trip(self):
        for value in (
            PropertyValue.number(3),
            PropertyValue.checkbox(True),
            PropertyValue.list(["a", "b"]),
            PropertyValue.link("Note"),
            PropertyValue.null(),
        ):
            assert PropertyValue.from_columns(value.type.value, *value.to_columns()) == value

    def test_is_empty(self):
        assert PropertyValue.null().is_empty()
        assert PropertyValue.text("  ").is_empty()
        assert PropertyValue.list([]).is_empty()
        assert not PropertyValue.number(0).is_empty()


class TestFilters:
    """Tests for filter operators."""

    def test_tag_contains_is_exact_per_tag(self):
        props = {"tags": PropertyValue.tags(["rusty"])}
        assert not Filter.has_tag("rust").evaluate(props)
        assert Filter.has_tag("#Rusty").evaluate(props)

    def test_starts_with(self):
        flt = Filter(property="n", operator=FilterOperator.STARTS_WITH, value="ab")
        assert flt.evaluate({"n": PropertyValue.text("Abc")})

    def test_dates_compare(self):
        flt = Filter(
            property="d", operator=FilterOperator.LESS_THAN, value="2024-06-01"
        )
        assert flt.evaluate({"d": PropertyValue.date("2024-01-01")})
        assert not flt.evaluate({"d": PropertyValue.date("2024-12-01")})

    def test_mixed_kinds_do_not_compare(self):
        flt = Filter(property="n", operator=FilterOperator.GREATER_THAN, value=1)
        assert not flt.evaluate({"n": PropertyValue.text("abc")})

    def test_empty_group_matches_everything(self):
        assert FilterGroup().evaluate({})


class TestBaseConfig:
    """Tests for Base and view configuration."""

    def test_default_view(self):
        base = Base.new("Library")
        view = base.get_active_view()
        assert view.name == "Default"
        assert [c.display_title() for c in view.columns] == ["Title", "Tags", "Modified"]
        assert view.sort == SortConfig.desc("updated_at")
        assert not view.is_editable(SourceType.NOTES)

    def test_property_records_needs_property(self):
        with pytest.raises(BaseConfigError):
            Base.property_records("Games", " ")

    def test_property_records_source_requires_filter_property(self):
        with pytest.raises(ValidationError):
            Base(name="x", source_type="property_records")
        with pytest.raises(ValidationError):
            Base(name="x", source_type="property_records", filter_property="  ")
        base = Base.property_records("Games", "juego")
        with pytest.raises(ValidationError):
            base.filter_property = None

    def test_yaml_without_filter_property_is_rejected(self):
        data = Base.property_records("Games", "juego").to_dict()
        data["filter_property"] = None
        with pytest.raises(BaseConfigError):
            Base.from_yaml(yaml.safe_dump(data))

    def test_set_source_type(self):
        base = Base.new("Games")
        with pytest.raises(BaseConfigError):
            base.set_source_type(SourceType.PROPERTY_RECORDS)
        base.set_source_type(SourceType.PROPERTY_RECORDS, "juego")
        assert base.source_type is SourceType.PROPERTY_RECORDS
        assert base.filter_property == "juego"
        base.set_source_type("notes")
        assert base.source_type is SourceType.NOTES
        assert base.filter_property == "juego"

    def test_set_active_view(self):
        base = Base.new("B")
        base.add_view(BaseView.board("Board", group_by="estado"))
        assert base.set_active_view(1)
        assert not base.set_active_view(5)
        assert base.get_active_view().group_by == "estado"

    def test_yaml_round_trip(self):
        base = Base.grouped_records("Games")
        view = base.views[0]
        view.filter = FilterGroup(filters=[Filter.equals("precio", 10)])
        view.columns.append(ColumnConfig(property="precio", title="Price", width=80))
        view.special_rows.append(
            SpecialRow.totals().with_formula("precio", "SUM(B:B)").at_position(0)
        )
        restored = Base.from_yaml(base.to_yaml())
        assert restored == base
        assert restored.views[0].sort is None
        assert restored.views[0].special_rows[0].cells["precio"].content == "=SUM(B:B)"

    def test_yaml_keeps_unknown_keys(self):
        data = Base.new("B").to_dict()
        data["theme"] = "dark"
        data["views"][0]["layout"] = {"dense": True}
        restored = Base.from_yaml(yaml.safe_dump(data))
        dumped = yaml.safe_load(restored.to_yaml())
        assert dumped["theme"] == "dark"
        assert dumped["views"][0]["layout"] == {"dense": True}

    def test_invalid_yaml(self):
        with pytest.raises(BaseConfigError):
            Base.from_yaml("- just\n- a list")
        with pytest.raises(BaseConfigError):
            Base.from_yaml("name: [unclosed")


class TestCellFormat:
    """Tests for special-row cell formatting."""

    def test_format_number(self):
        assert CellFormat().format_number(60) == "60"
        assert CellFormat().format_number(2.5) == "2.50"
        assert CellFormat(decimals=1, prefix="$", suffix=" total").format_number(3) == (
            "$3.0 total"
        )

    def test_to_css(self):
        css = CellFormat(bold=True, color="red").to_css()
        assert css == "font-weight: bold; color: red"
