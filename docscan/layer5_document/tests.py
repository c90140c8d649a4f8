"""
Tests for Layer 5: capture session, document assembly and the directory sink.
"""
import json
import os
import threading
from io import BytesIO

import cv2
import numpy as np
import pytest
from PyPDF2 import PdfReader

from docscan.config import MODE_COLOR, MODE_MONOCHROME
from docscan.error_handlers import EmptySessionError, InvalidPageIndexError, SessionClosedError
from docscan.layer4_enhancement import EnhancementSettings
from docscan.layer5_document import (
    MIXED_MODE,
    CapturedPage,
    CaptureSession,
    DirectorySink,
    DocumentAssembler,
)


def make_page(value=255, mode=MODE_MONOCHROME, size=(170, 220)):
    width, height = size
    if mode == MODE_MONOCHROME:
        image = np.full((height, width), value, dtype=np.uint8)
    else:
        image = np.full((height, width, 3), value, dtype=np.uint8)
    return CapturedPage.create(image, EnhancementSettings(mode=mode), preview_width=50)


def ids(pages):
    return [page.page_id for page in pages]


class TestCapturedPage:
    """Test page construction."""

    def test_preview_is_derived(self):
        """Test the preview is a smaller copy with the page's aspect ratio."""
        page = make_page()
        assert page.preview.shape == (65, 50)
        assert page.size == (170, 220)

    def test_buffers_are_read_only(self):
        """Test pages cannot be edited in place."""
        page = make_page()
        with pytest.raises(ValueError):
            page.image[0, 0] = 0
        with pytest.raises(ValueError):
            page.preview[0, 0] = 0

    def test_page_owns_its_buffer(self):
        """Test later changes to the source raster do not leak into the page."""
        image = np.full((20, 20), 200, dtype=np.uint8)
        page = CapturedPage.create(image, EnhancementSettings())
        image[:] = 0
        assert page.image.min() == 200


class TestCaptureSession:
    """Test ordered page collection semantics."""

    def test_append_returns_index(self):
        """Test append goes to the end and returns the new index."""
        session = CaptureSession()
        assert session.append(make_page()) == 0
        assert session.append(make_page()) == 1
        assert len(session) == 2

    def test_remove_preserves_survivor_order(self):
        """Test removal shifts later pages down without reordering."""
        session = CaptureSession()
        pages = [make_page() for _ in range(5)]
        for page in pages:
            session.append(page)

        removed = session.remove(1)
        assert removed is pages[1]
        session.remove(2)
        assert ids(session.pages()) == ids([pages[0], pages[2], pages[4]])

    @pytest.mark.parametrize("index", [-1, 3, 99])
    def test_invalid_index_leaves_session_unchanged(self, index):
        """Test out-of-range removal reports InvalidIndex and changes nothing."""
        session = CaptureSession()
        pages = [make_page() for _ in range(3)]
        for page in pages:
            session.append(page)

        with pytest.raises(InvalidPageIndexError) as exc:
            session.remove(index)
        assert exc.value.error_code == "INVALID_INDEX"
        assert ids(session.pages()) == ids(pages)

    def test_pages_is_a_snapshot(self):
        """Test pages() is not affected by later mutations."""
        session = CaptureSession()
        session.append(make_page())
        snapshot = session.pages()
        session.append(make_page())
        assert isinstance(snapshot, tuple)
        assert len(snapshot) == 1

    def test_reservations_keep_trigger_order(self):
        """Test a slow earlier capture still lands before a faster later one."""
        session = CaptureSession()
        first = session.reserve_slot()
        second = session.reserve_slot()
        assert (first.position, second.position) == (1, 2)

        late, early = make_page(), make_page()
        session.append(late, second)
        assert session.append(early, first) == 0
        assert ids(session.pages()) == ids([early, late])
        assert session.pending_count == 0

    def test_released_slot_does_not_hold_a_position(self):
        """Test abandoned reservations leave no gap."""
        session = CaptureSession()
        abandoned = session.reserve_slot()
        session.release_slot(abandoned)
        page = make_page()
        assert session.append(page) == 0
        assert session.reserve_slot().position == 2

    def test_concurrent_appends_are_serialized(self):
        """Test parallel appends neither lose nor duplicate pages."""
        session = CaptureSession()
        pages = [make_page() for _ in range(40)]

        threads = [threading.Thread(target=session.append, args=(page,)) for page in pages]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(ids(session.pages())) == sorted(ids(pages))

    def test_closed_session_rejects_writes(self):
        """Test a torn-down session cannot be written."""
        session = CaptureSession()
        session.append(make_page())
        session.close()

        assert session.closed
        with pytest.raises(SessionClosedError):
            session.append(make_page())
        with pytest.raises(SessionClosedError):
            session.remove(0)
        with pytest.raises(SessionClosedError):
            session.reserve_slot()


class TestDocumentAssembler:
    """Test paginated document generation."""

    def test_one_pdf_page_per_captured_page(self):
        """Test N pages produce an N-page letter PDF."""
        session = CaptureSession()
        for _ in range(3):
            session.append(make_page())

        document = DocumentAssembler().assemble(session)

        reader = PdfReader(BytesIO(document.pdf_bytes))
        assert len(reader.pages) == 3
        assert document.page_count == 3
        for page in reader.pages:
            assert float(page.mediabox.width) == pytest.approx(612)
            assert float(page.mediabox.height) == pytest.approx(792)

    def test_empty_session(self):
        """Test finalize on zero pages reports EmptySession."""
        with pytest.raises(EmptySessionError):
            DocumentAssembler().assemble(CaptureSession())

    def test_rasters_follow_capture_order(self):
        """Test page rasters are in capture order."""
        session = CaptureSession()
        session.append(make_page(value=20, mode=MODE_COLOR))
        session.append(make_page(value=240, mode=MODE_COLOR))

        document = DocumentAssembler().assemble(session)

        decoded = [cv2.imdecode(np.frombuffer(r, np.uint8), cv2.IMREAD_UNCHANGED) for r in document.page_rasters]
        assert decoded[0].mean() < 60
        assert decoded[1].mean() > 200

    def test_monochrome_rasters_stay_single_channel(self):
        """Test monochrome pages are encoded as grayscale JPEG."""
        session = CaptureSession()
        session.append(make_page())
        document = DocumentAssembler().assemble(session)
        decoded = cv2.imdecode(np.frombuffer(document.page_rasters[0], np.uint8), cv2.IMREAD_UNCHANGED)
        assert decoded.ndim == 2

    def test_metadata(self):
        """Test page count, mode and capture timestamp are reported."""
        session = CaptureSession()
        session.append(make_page(mode=MODE_COLOR))
        document = DocumentAssembler().assemble(session)
        assert document.metadata["page_count"] == 1
        assert document.metadata["enhancement_mode"] == MODE_COLOR
        assert "capture_timestamp" in document.metadata

    def test_metadata_is_read_only(self):
        """Test the finished document's metadata cannot be edited."""
        session = CaptureSession()
        session.append(make_page())
        document = DocumentAssembler().assemble(session)

        with pytest.raises(TypeError):
            document.metadata["page_count"] = 5
        with pytest.raises(AttributeError):
            document.metadata["pages"].append({})
        with pytest.raises(TypeError):
            document.metadata["pages"][0]["mode"] = MODE_COLOR

        copy = document.to_dict()
        copy["pages"].append({})
        assert isinstance(copy["pages"], list)
        assert len(document.metadata["pages"]) == 1
        assert json.loads(json.dumps(copy))["page_count"] == 1

    def test_mixed_modes(self):
        """Test sessions with both modes report 'mixed'."""
        session = CaptureSession()
        session.append(make_page(mode=MODE_COLOR))
        session.append(make_page(mode=MODE_MONOCHROME))
        document = DocumentAssembler().assemble(session)
        assert document.enhancement_mode == MIXED_MODE


class TestDirectorySink:
    """Test writing documents to disk."""

    def test_writes_pdf_pages_and_metadata(self, tmp_path):
        """Test every artifact is written under the base directory."""
        session = CaptureSession()
        session.append(make_page())
        session.append(make_page())
        document = DocumentAssembler().assemble(session)

        receipt = DirectorySink(str(tmp_path / "out")).deliver(document)

        assert os.path.isfile(receipt["document_path"])
        assert len(receipt["page_paths"]) == 2
        assert all(os.path.isfile(p) for p in receipt["page_paths"])
        with open(receipt["metadata_path"], encoding='utf-8') as f:
            record = json.load(f)
        assert record["page_count"] == 2
        assert record["enhancement_mode"] == MODE_MONOCHROME
        with open(receipt["document_path"], 'rb') as f:
            assert f.read(5) == b"%PDF-"
