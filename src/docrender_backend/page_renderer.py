"""
Turn one page layout into PDF bytes.

Layouts position image and text items on a fixed-size page. Positions and
sizes are in CSS pixels (96 DPI) unless the item or the page declares
millimetres; everything is emitted in millimetres so the exported page size
never depends on the browser viewport.
"""

from __future__ import annotations

import asyncio
import base64
import html
import logging
from typing import Dict, List, Optional, Sequence

from .blob_store import BlobStore
from .errors import EmptyRenderError
from .models import ImageItem, PageDimensions, PageLayout, TextItem
from .render_pool import RenderResourcePool

logger = logging.getLogger(__name__)

PX_TO_MM = 25.4 / 96
PT_TO_MM = 25.4 / 72


def to_mm(value: Optional[float], unit: str) -> float:
    number = float(value or 0)
    return number if unit == "mm" else number * PX_TO_MM


def _fmt(value: float) -> str:
    return f"{value:.4f}".rstrip("0").rstrip(".") + "mm"


def _item_unit(item_unit: Optional[str], page_unit: Optional[str]) -> str:
    return "mm" if item_unit == "mm" or page_unit == "mm" else "px"


def _image_html(item: ImageItem, page_unit: Optional[str]) -> str:
    unit = _item_unit(item.unit, page_unit)
    return (
        f'<img src="{html.escape(item.src, quote=True)}" '
        f'style="position:absolute; left:{_fmt(to_mm(item.x, unit))}; top:{_fmt(to_mm(item.y, unit))}; '
        f'width:{_fmt(to_mm(item.width, unit))}; height:{_fmt(to_mm(item.height, unit))};" />'
    )


def _letter_spans(item: TextItem, unit: str) -> str:
    sizes = item.letter_font_sizes or []
    offsets = item.letter_offsets or []
    deltas = item.spacing_deltas
    font_family = html.escape(item.font_family, quote=True)

    spans: List[str] = []
    cumulative = 0.0
    for index, char in enumerate(item.text):
        size = (sizes[index] if index < len(sizes) else None) or item.font_size
        offset_y = (offsets[index] if index < len(offsets) else None) or 0
        # Spacing arrives in mm, or in points from older clients.
        shift_mm = cumulative if unit == "mm" else cumulative * PT_TO_MM
        safe_char = "&nbsp;" if char == " " else html.escape(char)
        spans.append(
            f'<span style="font-size:{_fmt(to_mm(size, unit))}; font-family:{font_family}; white-space:pre; '
            f'display:inline-block; transform: translate({_fmt(shift_mm)}, {_fmt(to_mm(offset_y, unit))});">'
            f"{safe_char}</span>"
        )
        if deltas and index < len(deltas):
            cumulative += float(deltas[index] or 0)
    return "".join(spans)


def _text_html(item: TextItem, page_unit: Optional[str]) -> str:
    unit = _item_unit(item.unit, page_unit)
    body = _letter_spans(item, unit) if item.per_letter else html.escape(item.text)
    return (
        f'<div style="position:absolute; left:{_fmt(to_mm(item.x, unit))}; top:{_fmt(to_mm(item.y, unit))}; '
        f"font-size:{_fmt(to_mm(item.font_size, unit))}; font-family:{html.escape(item.font_family, quote=True)}; "
        f'color:{html.escape(item.color, quote=True)}; white-space:pre;">{body}</div>'
    )


def build_page_html(pages: Sequence[PageLayout], dimensions: Optional[PageDimensions] = None) -> str:
    """
    Build a printable HTML document with one fixed-size box per layout.

    Args:
        pages: Layouts in output order
        dimensions: Physical page size

    Returns:
        Complete HTML document
    """
    dims = dimensions or PageDimensions()
    width = _fmt(dims.width_mm)
    height = _fmt(dims.height_mm)

    page_divs = []
    for page in pages:
        items = []
        for item in page.items:
            if isinstance(item, ImageItem):
                items.append(_image_html(item, page.unit))
            elif isinstance(item, TextItem):
                items.append(_text_html(item, page.unit))
        page_divs.append('<div class="page">\n' + "\n".join(items) + "\n</div>")

    return f"""<html>
  <head>
    <meta charset="utf-8" />
    <style>
      @page {{ size: {width} {height}; margin: 0; }}
      html, body {{ margin: 0; padding: 0; width: {width}; height: {height}; }}
      body {{ background: white; }}
      .page {{
        position: relative;
        width: {width};
        height: {height};
        page-break-after: always;
        overflow: hidden;
      }}
      .page:last-child {{ page-break-after: auto; }}
      img {{ -webkit-print-color-adjust: exact; print-color-adjust: exact; }}
    </style>
  </head>
  <body>
{chr(10).join(page_divs)}
  </body>
</html>"""


class PageRenderer:
    """Renders single pages through the shared render pool."""

    def __init__(
        self,
        pool: RenderResourcePool,
        blob_store: BlobStore,
        remote_image_scheme: str = "s3://",
    ) -> None:
        self.pool = pool
        self.blob_store = blob_store
        self.remote_image_scheme = remote_image_scheme

    async def resolve_remote_images(self, layout: PageLayout) -> PageLayout:
        """
        Replace remote image sources with inline data URIs.

        Each distinct key is fetched once per call even when several items
        (or concurrent lookups) reference it. Layouts without remote images
        are returned untouched.
        """
        scheme = self.remote_image_scheme
        if not any(isinstance(item, ImageItem) and item.src.startswith(scheme) for item in layout.items):
            return layout

        fetches: Dict[str, asyncio.Task] = {}

        def fetch(key: str) -> asyncio.Task:
            if key not in fetches:
                fetches[key] = asyncio.ensure_future(self._fetch_data_uri(key))
            return fetches[key]

        async def resolve(item):
            if isinstance(item, ImageItem) and item.src.startswith(scheme):
                data_uri = await fetch(item.src[len(scheme):])
                return item.model_copy(update={"src": data_uri})
            return item

        items = await asyncio.gather(*(resolve(item) for item in layout.items))
        logger.debug(f"Resolved {len(fetches)} remote image(s)")
        return layout.model_copy(update={"items": list(items)})

    async def _fetch_data_uri(self, key: str) -> str:
        blob = await asyncio.to_thread(self.blob_store.get, key)
        content_type = blob.content_type
        if not content_type.startswith("image/"):
            content_type = "image/png"
        encoded = base64.b64encode(blob.data).decode("ascii")
        return f"data:{content_type};base64,{encoded}"

    async def render(self, layout: PageLayout) -> bytes:
        """
        Render one page layout to PDF bytes.

        Raises:
            EmptyRenderError: If the engine produced no bytes
            RenderTimeout: If loading or exporting timed out
        """
        resolved = await self.resolve_remote_images(layout)
        markup = build_page_html([resolved], self.pool.dimensions)
        async with self.pool.context() as ctx:
            pdf = await self.pool.render(ctx, markup)
        if not pdf:
            raise EmptyRenderError("Renderer produced an empty PDF")
        return bytes(pdf)
