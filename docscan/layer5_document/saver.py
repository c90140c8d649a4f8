"""
Layer 5 – Document Sink
Component: Persistence collaborator adapters
Responsibility: Hand the finished document and its metadata to storage
"""
import os
import json
import logging
from datetime import datetime
from typing import Dict

from ..error_handlers import DocumentSaveError
from .assembler import AssembledDocument

logger = logging.getLogger(__name__)


class DocumentSink:
    """Receives finished documents; how and where they are stored is up to the sink."""

    def deliver(self, document: AssembledDocument) -> Dict:
        """
        Store one document.

        Returns:
            dict: Sink-specific receipt (paths, ids, ...)
        """
        raise NotImplementedError


class DirectorySink(DocumentSink):
    """Writes documents, page rasters and metadata to a directory tree"""

    def __init__(self, base_dir="Logs/scanned_documents"):
        """
        Initialize sink with its directory structure

        Args:
            base_dir: Base directory (default: "Logs/scanned_documents")

        Directory structure:
            scanned_documents/
            ├── documents/   # PDF files
            ├── pages/       # Per-page JPG files
            └── metadata/    # JSON files
        """
        self.base_dir = base_dir
        self.documents_dir = os.path.join(base_dir, "documents")
        self.pages_dir = os.path.join(base_dir, "pages")
        self.metadata_dir = os.path.join(base_dir, "metadata")

        logger.info("DirectorySink initialized")
        logger.debug(f"  Base dir: {base_dir}")

    def _ensure_directories(self):
        """Create directory structure if it doesn't exist"""
        for directory in [self.base_dir, self.documents_dir, self.pages_dir, self.metadata_dir]:
            if not os.path.exists(directory):
                os.makedirs(directory)
                logger.info(f"Created directory: {directory}")

    def deliver(self, document: AssembledDocument) -> Dict:
        """
        Save the PDF, each page raster, and a JSON metadata record

        Args:
            document: AssembledDocument to store

        Returns:
            dict: Contains timestamp, document_path, page_paths, metadata_path

        Raises:
            DocumentSaveError: If any file cannot be written
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        stem = f"scan_{timestamp}"
        pdf_path = os.path.join(self.documents_dir, f"{stem}.pdf")
        json_path = os.path.join(self.metadata_dir, f"{stem}.json")

        try:
            self._ensure_directories()

            logger.info(f"Saving document to: {pdf_path}")
            with open(pdf_path, 'wb') as f:
                f.write(document.pdf_bytes)

            page_paths = []
            for number, raster in enumerate(document.page_rasters, start=1):
                page_path = os.path.join(self.pages_dir, f"{stem}_page{number:03d}.jpg")
                with open(page_path, 'wb') as f:
                    f.write(raster)
                page_paths.append(page_path)

            record = {
                **document.to_dict(),
                "document_path": pdf_path,
                "page_paths": page_paths,
                "saved_at": datetime.now().isoformat()
            }

            logger.info(f"Saving JSON to: {json_path}")
            with open(json_path, 'w', encoding='utf-8') as f:
                json.dump(record, f, indent=2, ensure_ascii=False)

        except OSError as e:
            logger.error(f"Failed to save document: {e}")
            raise DocumentSaveError(pdf_path, e)

        logger.info(f"Document saved with {len(page_paths)} page image(s)")
        return {
            "timestamp": timestamp,
            "document_path": pdf_path,
            "page_paths": page_paths,
            "metadata_path": json_path
        }
