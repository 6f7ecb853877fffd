import io
import os
import re
from dataclasses import dataclass, field
from PIL import Image, ImageDraw, ImageFont
import config_master as config
from utils_notation import (
    Quadrant, QUADRANT_ORDER, sort_quadrant_teeth,
    findings_from_quadrants, generate_combined_description
)


@dataclass(frozen=True)
class TextAnchor:
    """One text run. align is 'left'/'right', baseline is 'top'/'bottom'."""
    quadrant: Quadrant
    text: str
    align: str
    baseline: str
    x: float
    y: float


@dataclass(frozen=True)
class ChartGeometry:
    center: tuple
    top: float
    bottom: float
    left: float
    right: float
    texts: tuple = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "center": list(self.center),
            "rays": {"top": self.top, "bottom": self.bottom, "left": self.left, "right": self.right},
            "texts": [
                {"quadrant": t.quadrant.code, "text": t.text, "align": t.align,
                 "baseline": t.baseline, "x": t.x, "y": t.y}
                for t in self.texts
            ],
        }


#  Layout

def _text_anchor(quadrant: Quadrant, text: str, cx: float, cy: float) -> TextAnchor:
    # Text hugs the intersection: aligned toward the vertical axis, away from the horizontal one
    if quadrant.side == 'right':
        align, x = 'right', cx - config.PADDING
    else:
        align, x = 'left', cx + config.PADDING
    if quadrant.level == 'upper':
        baseline, y = 'bottom', cy - config.PADDING + config.TEXT_NUDGE
    else:
        baseline, y = 'top', cy + config.PADDING - config.TEXT_NUDGE
    return TextAnchor(quadrant, text, align, baseline, x, y)

def layout_chart(ur: str, ul: str, lr: str, ll: str, measure,
                 width: int = config.CANVAS_WIDTH, height: int = config.CANVAS_HEIGHT) -> ChartGeometry:
    """
    Computes the cross for four already-sorted quadrant strings.

    `measure(text) -> float` returns the rendered width of a string in the chart
    font. Horizontal rays grow with the widest text on their side; vertical rays
    have a fixed height when either quadrant above/below has text. A chart with
    no text at all still shows a cross of DEFAULT_RAY arms.
    """
    cx, cy = width / 2, height / 2
    widths = {quad: (measure(text) if text else 0) for quad, text in
              zip(QUADRANT_ORDER, (ur, ul, lr, ll))}

    fallback = 0 if (ur or ul or lr or ll) else config.DEFAULT_RAY
    overhang = config.PADDING + config.LINE_OVERHANG

    # Patient's right is drawn on the viewer's left
    left = fallback
    if ur or lr:
        left = max(widths[Quadrant.UPPER_RIGHT], widths[Quadrant.LOWER_RIGHT]) + overhang
    right = fallback
    if ul or ll:
        right = max(widths[Quadrant.UPPER_LEFT], widths[Quadrant.LOWER_LEFT]) + overhang
    top = config.VERTICAL_RAY if (ur or ul) else fallback
    bottom = config.VERTICAL_RAY if (lr or ll) else fallback

    texts = tuple(
        _text_anchor(quad, text, cx, cy)
        for quad, text in zip(QUADRANT_ORDER, (ur, ul, lr, ll)) if text
    )
    return ChartGeometry((cx, cy), top, bottom, left, right, texts)

def build_chart_geometry(quadrants: dict, measure) -> ChartGeometry:
    """Sorts the raw {UR, UL, LR, LL} strings for display, then lays them out."""
    return layout_chart(*sorted_quadrants(quadrants).values(), measure)

def sorted_quadrants(quadrants: dict) -> dict:
    return {
        quad.code: sort_quadrant_teeth(quadrants.get(quad.code) or "", quad)
        for quad in QUADRANT_ORDER
    }

def chart_segments(geometry: ChartGeometry) -> list:
    """Line segments ((x1, y1), (x2, y2)) from the center, zero-length rays dropped."""
    cx, cy = geometry.center
    rays = (
        (geometry.top, (cx, cy - geometry.top)),
        (geometry.bottom, (cx, cy + geometry.bottom)),
        (geometry.left, (cx - geometry.left, cy)),
        (geometry.right, (cx + geometry.right, cy)),
    )
    return [((cx, cy), end) for length, end in rays if length > 0]


#  Rendering

_PIL_ANCHORS = {
    ('right', 'bottom'): 'rd',
    ('left', 'bottom'): 'ld',
    ('right', 'top'): 'ra',
    ('left', 'top'): 'la',
}

def load_chart_font(size: int = config.FONT_SIZE):
    """Chart font: CHART_FONT_PATH, then a serif candidate, then Pillow's default."""
    candidates = [config.FONT_PATH] if config.FONT_PATH else []
    candidates.extend(config.FONT_CANDIDATES)
    for path in candidates:
        try:
            return ImageFont.truetype(path, size)
        except OSError:
            continue
    print(f"WARNING: No serif font found, using Pillow default font at {size}px.")
    return ImageFont.load_default(size=size)

def pil_measurer(font):
    """Text measurer bound to a Pillow font."""
    def measure(text: str) -> float:
        return font.getlength(text)
    return measure

def _square_cap(start, end, half_width):
    (x1, y1), (x2, y2) = start, end
    dx = (x2 > x1) - (x2 < x1)
    dy = (y2 > y1) - (y2 < y1)
    return (x1 - dx * half_width, y1 - dy * half_width), (x2 + dx * half_width, y2 + dy * half_width)

def render_chart(geometry: ChartGeometry, font) -> Image.Image:
    """Draws the geometry on a fresh canvas."""
    image = Image.new('RGB', (config.CANVAS_WIDTH, config.CANVAS_HEIGHT), config.CANVAS_BACKGROUND)
    draw = ImageDraw.Draw(image)

    half = config.LINE_WIDTH / 2
    for start, end in chart_segments(geometry):
        draw.line(_square_cap(start, end, half), fill=config.CHART_COLOR, width=config.LINE_WIDTH)

    for run in geometry.texts:
        draw.text(
            (run.x, run.y), run.text, font=font, fill=config.CHART_COLOR,
            anchor=_PIL_ANCHORS[(run.align, run.baseline)]
        )
    return image

def chart_png_bytes(quadrants: dict, font=None) -> bytes:
    font = font or load_chart_font()
    geometry = build_chart_geometry(quadrants, pil_measurer(font))
    buffer = io.BytesIO()
    render_chart(geometry, font).save(buffer, format='PNG')
    return buffer.getvalue()

def save_chart(quadrants: dict, output_dir: str = config.RESULTS_DIR, font=None) -> str:
    """Renders and writes the chart PNG under its export name. Returns the path."""
    path = os.path.join(output_dir, chart_filename(quadrants))
    with open(path, 'wb') as f:
        f.write(chart_png_bytes(quadrants, font))
    return path


#  Export naming

def chart_filename(quadrants: dict) -> str:
    """'右上第一磨牙_第二磨牙.png' style name; '空牙位图.png' when nothing is charted."""
    findings = findings_from_quadrants(quadrants)
    if not findings:
        return f"{config.EMPTY_CHART_NAME}.png"
    description = generate_combined_description(findings)
    name = re.sub(r'[^\w\u2160-\u217F]+', '_', re.sub(r'\s+', '', description)).strip('_')
    return f"{name[:config.EXPORT_NAME_LIMIT]}.png"
