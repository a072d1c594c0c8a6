"""Server-backed pricing preview for the checkout summary."""

import logging
import re
from typing import Iterable, Optional

from .errors import ServiceError
from .models import CartLineItem, PreviewLine, PreviewRequest, PricingPreview
from .sequencing import RequestSequencer
from .techstore_client import TechStoreClient

logger = logging.getLogger(__name__)

DISCOUNT_CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,32}$")


def normalize_discount_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    code = code.strip().upper()
    return code or None


def looks_like_discount_code(code: Optional[str]) -> bool:
    """Format check only; validity is decided by the server."""
    normalized = normalize_discount_code(code)
    return bool(normalized and DISCOUNT_CODE_PATTERN.match(normalized))


def clamp_points(points_requested: int, available_points: int) -> int:
    return max(0, min(int(points_requested), max(0, int(available_points))))


def build_preview_request(
    lines: Iterable[CartLineItem],
    discount_code: Optional[str],
    points_requested: int,
    available_points: int,
) -> PreviewRequest:
    """Turn the three watched inputs into a preview request."""
    return PreviewRequest(
        lines=tuple(
            PreviewLine(product_id=line.product_id, variant_id=line.variant_id, quantity=line.quantity)
            for line in lines
        ),
        discount_code=normalize_discount_code(discount_code),
        points_to_use=clamp_points(points_requested, available_points),
    )


class PricingPreviewEngine:
    """
    Keeps the latest server-computed preview for the checkout summary.

    Only the response to the most recently issued request is applied. When
    that request fails, the previous preview stays in place and is flagged
    as stale.
    """

    def __init__(self, client: TechStoreClient) -> None:
        self.client = client
        self._sequencer = RequestSequencer()
        self._preview: Optional[PricingPreview] = None
        self._request: Optional[PreviewRequest] = None
        self.is_stale = False
        self.last_error: Optional[ServiceError] = None

    @property
    def preview(self) -> Optional[PricingPreview]:
        return self._preview

    @property
    def request(self) -> Optional[PreviewRequest]:
        """Inputs of the preview currently shown."""
        return self._request

    async def refresh(
        self,
        lines: Iterable[CartLineItem],
        discount_code: Optional[str] = None,
        points_requested: int = 0,
        available_points: int = 0,
    ) -> Optional[PricingPreview]:
        """
        Request a new preview and apply it if no newer request was issued meanwhile.

        Returns:
            The applied preview, or None if the response was superseded or
            the cart is empty

        Raises:
            ServiceError: If the latest request failed; the last preview is kept
        """
        request = build_preview_request(lines, discount_code, points_requested, available_points)
        if not request.lines:
            self.cancel()
            return None

        ticket = self._sequencer.issue()
        try:
            preview = await self.client.preview_checkout(request)
        except ServiceError as e:
            if not self._sequencer.is_current(ticket):
                logger.debug(f"Ignoring failure of superseded preview #{ticket}: {e}")
                return None
            self.is_stale = True
            self.last_error = e
            logger.warning(f"Pricing preview failed, keeping previous totals: {e}")
            raise

        if not self._sequencer.is_current(ticket):
            logger.debug(f"Discarding stale preview #{ticket} (latest #{self._sequencer.latest})")
            return None

        self._preview = preview
        self._request = request
        self.is_stale = False
        self.last_error = None
        return preview

    def cancel(self) -> None:
        """Ignore every preview response still in flight."""
        self._sequencer.invalidate()

    def reset(self) -> None:
        self.cancel()
        self._preview = None
        self._request = None
        self.is_stale = False
        self.last_error = None
