"""
Layer 5 – Document Assembler
Responsibility: Lay captured pages out as one paginated PDF
Output: AssembledDocument (PDF bytes, per-page JPEG rasters, metadata)

Every page raster fills its page edge to edge; rectified pages already
have the page's aspect ratio, so no letterboxing is applied.
"""
import cv2
import logging
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from types import MappingProxyType
from typing import Dict, Mapping, Sequence, Tuple

from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ..config import POINTS_PER_INCH
from ..error_handlers import DocumentAssemblyError, EmptySessionError
from .session import CapturedPage, CaptureSession

logger = logging.getLogger(__name__)

MIXED_MODE = "mixed"


@dataclass(frozen=True)
class AssembledDocument:
    """Finished paginated document. Immutable once produced."""
    pdf_bytes: bytes
    page_count: int
    page_size: Tuple[float, float]          # PDF points
    page_rasters: Tuple[bytes, ...]         # JPEG per page, document order
    metadata: Mapping = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @property
    def enhancement_mode(self) -> str:
        return self.metadata.get("enhancement_mode", "")

    def to_dict(self) -> Dict:
        """Plain, JSON-serializable copy of the metadata."""
        return _thaw(self.metadata)


def _freeze(value):
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value):
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


def summarize_mode(pages: Sequence[CapturedPage]) -> str:
    """Shared enhancement mode of all pages, or 'mixed'."""
    modes = {page.mode for page in pages}
    return modes.pop() if len(modes) == 1 else MIXED_MODE


class DocumentAssembler:
    """Builds AssembledDocument objects with reportlab."""

    def __init__(self, page_size: Tuple[float, float] = (8.5 * POINTS_PER_INCH, 11.0 * POINTS_PER_INCH),
                 jpeg_quality: int = 95, title: str = "Scanned document"):
        """
        Initialize assembler

        Args:
            page_size: (width, height) in PDF points, letter by default
            jpeg_quality: Encoding quality of each page raster
            title: PDF document title
        """
        self.page_size = (float(page_size[0]), float(page_size[1]))
        self.jpeg_quality = int(jpeg_quality)
        self.title = title

        logger.info("DocumentAssembler initialized")
        logger.debug(f"  Page size: {self.page_size[0]:.0f}x{self.page_size[1]:.0f}pt")
        logger.debug(f"  JPEG quality: {self.jpeg_quality}")

    def encode_page(self, page: CapturedPage) -> bytes:
        """JPEG-encode one page raster (single-channel pages stay grayscale)."""
        ok, buffer = cv2.imencode('.jpg', page.image, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            raise DocumentAssemblyError(f"could not encode page {page.page_id}")
        return buffer.tobytes()

    def assemble(self, session: CaptureSession) -> AssembledDocument:
        """
        Produce the paginated document from a snapshot of the session.

        Args:
            session: CaptureSession with at least one page

        Returns:
            AssembledDocument: One PDF page per captured page, in capture order

        Raises:
            EmptySessionError: If the session has no pages (nothing is produced)
            DocumentAssemblyError: If encoding or PDF generation fails
        """
        pages = session.pages()
        if not pages:
            raise EmptySessionError()

        logger.info(f"Assembling document from {len(pages)} page(s)")

        rasters = tuple(self.encode_page(page) for page in pages)
        width, height = self.page_size

        try:
            output = BytesIO()
            c = canvas.Canvas(output, pagesize=(width, height))
            c.setTitle(self.title)
            c.setCreator("docscan")

            for number, raster in enumerate(rasters, start=1):
                c.drawImage(ImageReader(BytesIO(raster)), 0, 0, width=width, height=height)
                c.showPage()
                logger.debug(f"  Page {number} placed")

            c.save()
        except Exception as e:
            logger.error(f"PDF generation failed: {e}")
            raise DocumentAssemblyError(e)

        metadata = {
            "page_count": len(pages),
            "enhancement_mode": summarize_mode(pages),
            "capture_timestamp": datetime.fromtimestamp(min(p.captured_at for p in pages)).isoformat(),
            "assembled_at": datetime.now().isoformat(),
            "page_size_points": [width, height],
            "pages": [page.to_dict() for page in pages],
        }

        document = AssembledDocument(
            pdf_bytes=output.getvalue(),
            page_count=len(pages),
            page_size=(width, height),
            page_rasters=rasters,
            metadata=metadata,
        )
        logger.info(f"Document assembled: {document.page_count} page(s), {len(document.pdf_bytes)} bytes")
        return document
