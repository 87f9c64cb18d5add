"""Tests for full-text and tag search."""

from notebase.storage.fts_index import FtsIndex


class TestQueryBuilding:
    """Tests for FTS query sanitizing."""

    def test_tokens_become_prefix_terms(self):
        assert FtsIndex.build_fts_query("rust async") == '"rust"* "async"*'

    def test_special_characters_are_stripped(self):
        assert FtsIndex.build_fts_query('c++ (fast) "x') == '"c"* "fast"* "x"*'

    def test_quoted_phrase_is_literal(self):
        assert FtsIndex.build_fts_query('"exact phrase"') == '"exact phrase"'

    def test_nothing_searchable(self):
        assert FtsIndex.build_fts_query("*** ()") is None


class TestTextSearch:
    """Tests for text queries."""

    def test_finds_by_content(self, index_store, index_text):
        index_text("borrow", "Notes about the borrow checker")
        index_text("other", "Unrelated text")
        results = index_store.search_notes("checker")
        assert [r.note_name for r in results] == ["borrow"]
        assert "<mark>" in results[0].snippet

    def test_prefix_matching(self, index_store, index_text):
        index_text("a", "programming languages")
        assert [r.note_name for r in index_store.search_notes("program")] == ["a"]

    def test_finds_by_name(self, index_store, index_text):
        index_text("Meeting Notes", "agenda")
        assert [r.note_name for r in index_store.search_notes("meeting")] == [
            "Meeting Notes"
        ]

    def test_accents_are_not_folded_away(self, index_store, index_text):
        index_text("cafe", "un café por favor")
        assert [r.note_name for r in index_store.search_notes("café")] == ["cafe"]

    def test_empty_query(self, index_store, index_text):
        index_text("a", "text")
        assert index_store.search_notes("") == []
        assert index_store.search_notes("   ") == []

    def test_query_with_symbols(self, index_store, index_text):
        index_text("math", "the value 100% is reached")
        results = index_store.search_notes("100%")
        assert [r.note_name for r in results] == ["math"]

    def test_limit(self, index_store, index_text):
        for i in range(5):
            index_text(f"n{i}", "common words")
        assert len(index_store.search_notes("common", limit=3)) == 3

    def test_hidden_folders_are_excluded(self, index_store, index_text):
        index_text("live", "secret plans")
        index_text("deleted", "secret plans", folder=".trash")
        assert [r.note_name for r in index_store.search_notes("secret")] == ["live"]


class TestTagSearch:
    """Tests for #tag queries."""

    def test_tag_search_is_exact(self, index_store, index_text):
        index_text("one", "about #Rust")
        index_text("two", "---\ntags: [rust]\n---\nbody")
        index_text("three", "about #rusty")
        results = index_store.search_notes("#rust")
        assert sorted(r.note_name for r in results) == ["one", "two"]
        assert all(r.matched_tags == ["rust"] for r in results)

    def test_tag_search_is_case_insensitive(self, index_store, index_text):
        index_text("one", "#Python")
        assert [r.note_name for r in index_store.search_notes("#PYTHON")] == ["one"]

    def test_bare_hash_returns_nothing(self, index_store, index_text):
        index_text("one", "#x")
        assert index_store.search_notes("#") == []
