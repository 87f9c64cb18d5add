"""Tests for grouped records: assembly, coalescing and deduplication."""

from notebase.storage.record_repository import _Record, coalesce_records, record_hash


class TestRecordAssembly:
    """Tests for records built from the index."""

    def test_group_becomes_one_record(self, index_store, index_text):
        note_id = index_text("games", "[juego::Minecraft, precio::10€]")
        records = index_store.get_all_grouped_records()
        assert len(records) == 1
        record = records[0]
        assert record.note_id == note_id
        assert record.note_name == "games"
        assert record.group_id == 1
        assert record.properties == [("juego", "Minecraft"), ("precio", "10€")]

    def test_single_property_record_id_is_negative(self, index_store, index_text):
        note_id = index_text("solo", "[autor::Tolkien]")
        record = index_store.get_all_grouped_records()[0]
        prop = index_store.get_inline_properties(note_id)[0]
        assert record.group_id == -prop.row_id
        assert record.as_dict() == {"autor": "Tolkien"}

    def test_same_entity_groups_merge(self, index_store, index_text):
        index_text(
            "games",
            "[juego::Novalands, horas::12]\n[juego::Novalands, comprado::Si]",
        )
        records = index_store.get_all_grouped_records()
        assert len(records) == 1
        assert records[0].as_dict() == {
            "comprado": "Si",
            "horas": "12",
            "juego": "Novalands",
        }

    def test_groups_sharing_a_key_value_merge_despite_other_values(
        self, index_store, index_text
    ):
        index_text(
            "games",
            "[juego::Novalands, horas::12]\n[juego::Novalands, horas::30]",
        )
        records = index_store.get_all_grouped_records()
        assert len(records) == 1
        assert records[0].as_dict() == {"horas": "12", "juego": "Novalands"}

    def test_generic_keys_do_not_merge(self, index_store, index_text):
        index_text(
            "games",
            "[juego::Minecraft, comprado::Si]\n[juego::Terraria, comprado::Si]",
        )
        names = sorted(r.get("juego") for r in index_store.get_all_grouped_records())
        assert names == ["Minecraft", "Terraria"]

    def test_records_never_merge_across_notes(self, index_store, index_text):
        index_text("a", "[juego::Novalands, horas::12]")
        index_text("b", "[juego::Novalands, comprado::Si]")
        assert len(index_store.get_all_grouped_records()) == 2

    def test_identical_groups_are_deduplicated(self, index_store, index_text):
        index_text("a", "[x::1, y::2]\nagain [x::1, y::2]")
        assert len(index_store.get_all_grouped_records()) == 1

    def test_records_by_property(self, index_store, index_text):
        index_text("a", "[juego::Minecraft, precio::10]\n[libro::Dune, autor::Herbert]")
        records = index_store.get_records_by_property("juego")
        assert [r.get("juego") for r in records] == ["Minecraft"]

    def test_source_folder_restricts_records(self, index_store, index_text):
        index_text("a", "[k::1, v::x]", folder="inside")
        index_text("b", "[k::2, v::y]", folder="outside")
        records = index_store.get_all_grouped_records(source_folder="inside")
        assert [r.note_name for r in records] == ["a"]

    def test_hidden_notes_have_no_records(self, index_store, index_text):
        index_text("a", "[k::1, v::x]", folder=".trash")
        assert index_store.get_all_grouped_records() == []

    def test_discover_related_columns(self, index_store, index_text):
        index_text("a", "[juego::A, precio::1]\n[juego::B, horas::2]\n[otro::x, z::1]")
        assert index_store.discover_related_columns("juego") == ["horas", "precio"]


class TestCoalesce:
    """Tests for the pure coalescing helpers."""

    def test_merge_is_transitive(self):
        records = [
            _Record(1, "n", "/n.md", 1, {"juego": "A", "horas": "1"}),
            _Record(1, "n", "/n.md", 2, {"juego": "A", "precio": "5"}),
            _Record(1, "n", "/n.md", 3, {"precio": "5", "tienda": "Steam"}),
        ]
        merged = coalesce_records(records, generic_keys=[])
        assert len(merged) == 1
        assert merged[0].values == {
            "juego": "A", "horas": "1", "precio": "5", "tienda": "Steam"
        }

    def test_group_record_keeps_positive_id(self):
        records = [
            _Record(1, "n", "/n.md", -7, {"juego": "A"}),
            _Record(1, "n", "/n.md", 2, {"juego": "A", "horas": "3"}),
        ]
        merged = coalesce_records(records, generic_keys=[])
        assert merged[0].group_id == 2

    def test_first_record_wins_on_disagreement(self):
        records = [
            _Record(1, "n", "/n.md", 1, {"juego": "A", "horas": "1", "tienda": ""}),
            _Record(1, "n", "/n.md", 2, {"juego": "A", "horas": "9", "tienda": "GOG"}),
        ]
        merged = coalesce_records(records, generic_keys=[])
        assert len(merged) == 1
        assert merged[0].values == {"juego": "A", "horas": "1", "tienda": "GOG"}

    def test_only_generic_keys_in_common(self):
        records = [
            _Record(1, "n", "/n.md", 1, {"juego": "A", "estado": "listo"}),
            _Record(1, "n", "/n.md", 2, {"juego": "B", "estado": "listo"}),
        ]
        assert len(coalesce_records(records, generic_keys=["estado"])) == 2

    def test_record_hash_ignores_order(self):
        assert record_hash({"a": "1", "b": "2"}) == record_hash({"b": "2", "a": "1"})
        assert record_hash({"a": "1"}) != record_hash({"a": "2"})
