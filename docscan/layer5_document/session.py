"""
Layer 5 – Capture Session
Ordered, lock-protected collection of captured pages.

Insertion order is document order. Captures reserve their slot when they
are triggered, so a slow enhancement never lets a later capture overtake it.
"""
import bisect
import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

import cv2
import numpy as np

from ..error_handlers import InvalidPageIndexError, SessionClosedError
from ..layer4_enhancement.enhancer import EnhancementSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CapturedPage:
    """One enhanced page plus its thumbnail. Never mutated after creation."""
    image: np.ndarray
    preview: np.ndarray
    settings: EnhancementSettings
    captured_at: float
    detected: bool = False
    confidence: Optional[float] = None
    page_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def create(cls, image: np.ndarray, settings: EnhancementSettings, preview_width: int = 200,
               detected: bool = False, confidence: Optional[float] = None,
               captured_at: Optional[float] = None) -> "CapturedPage":
        """
        Build a page, deriving its preview from the enhanced raster.

        The stored buffers are private read-only copies.
        """
        owned = np.array(image, dtype=np.uint8, copy=True)
        owned.setflags(write=False)

        preview = make_preview(owned, preview_width)
        preview.setflags(write=False)

        return cls(
            image=owned,
            preview=preview,
            settings=settings,
            captured_at=time.time() if captured_at is None else captured_at,
            detected=detected,
            confidence=confidence,
        )

    @property
    def mode(self) -> str:
        return self.settings.mode

    @property
    def size(self) -> Tuple[int, int]:
        return (int(self.image.shape[1]), int(self.image.shape[0]))

    def to_dict(self) -> dict:
        """Page summary for UI collaborators (no pixel data)."""
        return {
            "page_id": self.page_id,
            "width": self.size[0],
            "height": self.size[1],
            "mode": self.mode,
            "detected": self.detected,
            "confidence": None if self.confidence is None else round(self.confidence, 4),
            "captured_at": self.captured_at,
        }


def make_preview(image: np.ndarray, width: int = 200) -> np.ndarray:
    """Aspect-preserving thumbnail of the given width."""
    height, src_width = image.shape[:2]
    if src_width <= width:
        return image.copy()
    preview_height = max(1, int(round(height * width / float(src_width))))
    return cv2.resize(image, (width, preview_height), interpolation=cv2.INTER_AREA)


@dataclass(frozen=True)
class SlotReservation:
    """Place in capture order held by an in-flight capture."""
    ticket: int
    position: int      # 1-based page number at trigger time


class CaptureSession:
    """
    Ordered sequence of CapturedPage.

    append/remove and reservations are serialized by one lock; pages()
    returns an immutable snapshot.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tickets = itertools.count()
        self._order: List[int] = []
        self._pages: List[CapturedPage] = []
        self._pending: Set[int] = set()
        self._closed = False
        self.created_at = time.time()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pages)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def reserve_slot(self) -> SlotReservation:
        """
        Claim the next position in capture order.

        Raises:
            SessionClosedError: If the session has been torn down
        """
        with self._lock:
            self._check_open()
            ticket = next(self._tickets)
            self._pending.add(ticket)
            position = len(self._pages) + len(self._pending)
        logger.debug(f"Reserved capture slot {ticket} (page {position})")
        return SlotReservation(ticket=ticket, position=position)

    def release_slot(self, reservation: SlotReservation):
        """Give up a reservation whose capture did not produce a page."""
        with self._lock:
            self._pending.discard(reservation.ticket)
        logger.debug(f"Released capture slot {reservation.ticket}")

    def append(self, page: CapturedPage, reservation: Optional[SlotReservation] = None) -> int:
        """
        Add a page in capture order.

        Args:
            page: CapturedPage to add
            reservation: Slot claimed when the capture was triggered; without
                one the page goes to the end

        Returns:
            int: Index of the new page

        Raises:
            SessionClosedError: If the session has been torn down
        """
        with self._lock:
            self._check_open()
            if reservation is None:
                ticket = next(self._tickets)
            else:
                ticket = reservation.ticket
                self._pending.discard(ticket)

            index = bisect.bisect_right(self._order, ticket)
            self._order.insert(index, ticket)
            self._pages.insert(index, page)
            count = len(self._pages)

        logger.info(f"Page appended at index {index} ({count} page(s) in session)")
        return index

    def remove(self, index: int) -> CapturedPage:
        """
        Delete exactly one page; later pages shift down by one.

        Raises:
            InvalidPageIndexError: If index is outside [0, count); the session is unchanged
            SessionClosedError: If the session has been torn down
        """
        with self._lock:
            self._check_open()
            count = len(self._pages)
            if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < count:
                raise InvalidPageIndexError(index, count)
            del self._order[index]
            page = self._pages.pop(index)

        logger.info(f"Page {index} removed ({count - 1} page(s) remain)")
        return page

    def page(self, index: int) -> CapturedPage:
        """
        Read one page.

        Raises:
            InvalidPageIndexError: If index is outside [0, count)
        """
        with self._lock:
            count = len(self._pages)
            if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < count:
                raise InvalidPageIndexError(index, count)
            return self._pages[index]

    def pages(self) -> Tuple[CapturedPage, ...]:
        """Consistent snapshot of the ordered pages."""
        with self._lock:
            return tuple(self._pages)

    def clear(self):
        """Discard every page (the session stays open)."""
        with self._lock:
            self._check_open()
            self._order.clear()
            self._pages.clear()
        logger.info("Capture session cleared")

    def close(self):
        """Tear the session down; every later write raises SessionClosedError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._pending.clear()
            count = len(self._pages)
        logger.info(f"Capture session closed with {count} page(s)")

    def _check_open(self):
        if self._closed:
            raise SessionClosedError()
