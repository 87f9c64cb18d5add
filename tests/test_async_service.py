"""Tests for the anyio-based async façade."""

import anyio
import pytest

from notebase.exceptions import NoteNotFoundError
from notebase.models.base import Base
from notebase.services.async_service import AsyncNotesService


@pytest.fixture
def async_service(notes_service):
    return AsyncNotesService(service=notes_service, max_workers=4)


class TestAsyncNotesService:
    """Tests for AsyncNotesService."""

    @pytest.mark.anyio
    async def test_round_trip(self, async_service):
        await async_service.create_note("N", "[estado::todo] #async")
        doc = await async_service.read_note("N")
        assert doc.content == "[estado::todo] #async"
        props = await async_service.get_note_properties("N")
        assert props["estado"].value == "todo"
        hits = await async_service.search_notes("async")
        assert [h.note_name for h in hits] == ["N"]

    @pytest.mark.anyio
    async def test_errors_propagate(self, async_service):
        with pytest.raises(NoteNotFoundError):
            await async_service.read_note("missing")

    @pytest.mark.anyio
    async def test_concurrent_creates(self, async_service):
        async with anyio.create_task_group() as tg:
            for i in range(10):
                tg.start_soon(async_service.create_note, f"note-{i}", f"body {i}")
        notes = await async_service.list_notes()
        assert len(notes) == 10

    @pytest.mark.anyio
    async def test_bases_and_indexing(self, async_service, notes_root):
        (notes_root / "disk.md").write_text("[precio::5]", encoding="utf-8")
        report = await async_service.index_all_notes()
        assert report.indexed == 1
        await async_service.create_base(Base.new("All"))
        table = await async_service.render_base("All")
        assert [r.note_name for r in table.data_rows] == ["disk"]
        await async_service.delete_base("All")
        assert await async_service.list_bases() == []

    @pytest.mark.anyio
    async def test_folders_and_tags(self, async_service):
        await async_service.create_folder("inbox")
        await async_service.create_note("N", "x", folder="inbox")
        await async_service.add_tag("N", "later")
        assert [t.name for t in await async_service.get_all_tags()] == ["later"]
        assert await async_service.rename_folder("inbox", "done") == 1
        assert [n.folder for n in await async_service.list_notes()] == ["done"]
        assert await async_service.delete_folder("done") == 1
