"""
Problem Input Capture

Turns the three input surfaces (uploaded + cropped image, freehand canvas
drawing, typed text) into a single ProblemInput. Image work is done with Pillow.
"""

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional

from PIL import Image, ImageDraw, UnidentifiedImageError

from errors import InvalidInputError, NothingToSolveError
from schemas import ImageInput, TextInput

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = ("image/png", "image/jpeg", "image/jpg")
CANVAS_MARGIN = 20
BLANK_TOLERANCE = 8

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.*)$", re.DOTALL)

EMPTY_CANVAS_MESSAGE = "The canvas is empty. Please draw an equation."
EMPTY_CROP_MESSAGE = "Could not find any text in the selected area."


# ============================================================================
# DATA URIS & IMAGE HELPERS
# ============================================================================

def parse_data_uri(uri: str) -> tuple[str, bytes]:
    """Split 'data:<mime>;base64,<payload>' into (mime, raw bytes)."""
    match = _DATA_URI.match(uri.strip()) if uri else None
    if not match:
        raise InvalidInputError("Expected a base64 data URI with a MIME type.", title="Invalid Image")
    try:
        data = base64.b64decode(match.group("payload"), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidInputError("Invalid base64 encoding", title="Invalid Image")
    return match.group("mime").lower(), data


def to_data_uri(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def ensure_supported_image(mime: str) -> None:
    if mime.lower() not in SUPPORTED_IMAGE_TYPES:
        raise InvalidInputError("Please upload a PNG or JPG file.", title="Invalid File Type")


def _open(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except Image.DecompressionBombError:
        raise InvalidInputError("The image is too large.", title="Invalid Image")
    except (UnidentifiedImageError, OSError):
        raise InvalidInputError("The image could not be decoded.", title="Invalid Image")
    return img


def _flatten(img: Image.Image) -> Image.Image:
    """Composite transparent pixels onto white, like the drawing canvas does."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, "white")
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    return img.convert("RGB")


def _png_bytes(img: Image.Image) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


@dataclass
class CropBox:
    """Crop rectangle, in pixels of the natural image size or in percent."""
    x: float
    y: float
    width: float
    height: float
    unit: Literal["px", "%"] = "px"

    def to_pixels(self, image_width: int, image_height: int) -> tuple[int, int, int, int]:
        x, y, w, h = self.x, self.y, self.width, self.height
        if self.unit == "%":
            x, w = x * image_width / 100, w * image_width / 100
            y, h = y * image_height / 100, h * image_height / 100
        left = max(0, min(image_width, round(x)))
        top = max(0, min(image_height, round(y)))
        right = max(left, min(image_width, round(x + w)))
        bottom = max(top, min(image_height, round(y + h)))
        return left, top, right, bottom


def crop_image(data: bytes, box: CropBox) -> bytes:
    """Crop to the selected sub-rectangle and re-encode as PNG."""
    img = _open(data)
    left, top, right, bottom = box.to_pixels(*img.size)
    if right - left <= 0 or bottom - top <= 0:
        raise InvalidInputError("The selected crop area is empty.", title="Invalid Crop")
    return _png_bytes(_flatten(img.crop((left, top, right, bottom))))


def pad_image(data: bytes, margin: int = CANVAS_MARGIN) -> bytes:
    """Add a white margin around the content; helps recognition of edge strokes."""
    img = _flatten(_open(data))
    padded = Image.new("RGB", (img.width + margin * 2, img.height + margin * 2), "white")
    padded.paste(img, (margin, margin))
    return _png_bytes(padded)


def is_blank(data: bytes) -> bool:
    lo, hi = _flatten(_open(data)).convert("L").getextrema()
    return hi - lo <= BLANK_TOLERANCE


def ensure_not_blank(problem_input) -> None:
    """Reject an empty canvas / empty crop before anything is sent to the model."""
    if isinstance(problem_input, ImageInput) and is_blank(problem_input.image_data):
        message = EMPTY_CANVAS_MESSAGE if problem_input.source == "draw" else EMPTY_CROP_MESSAGE
        raise NothingToSolveError(message)


# ============================================================================
# DRAWING CANVAS
# ============================================================================

@dataclass
class Stroke:
    points: list[tuple[float, float]]
    mode: Literal["draw", "erase"] = "draw"
    width: Optional[int] = None
    color: str = "black"


@dataclass
class Canvas:
    """Freehand drawing surface; strokes are rasterised on demand."""
    width: int = 800
    height: int = 400
    stroke_width: int = 5
    erase_width: int = 25
    color: str = "black"
    show_grid: bool = True
    grid_size: int = 20
    strokes: list[Stroke] = field(default_factory=list)

    def add_stroke(self, stroke: Stroke) -> None:
        self.strokes.append(stroke)

    def clear(self) -> None:
        self.strokes = []

    @property
    def is_empty(self) -> bool:
        return not any(s.mode == "draw" and s.points for s in self.strokes)

    def render(self, include_grid: bool = False) -> Image.Image:
        img = Image.new("RGB", (self.width, self.height), "white")
        draw = ImageDraw.Draw(img)
        if include_grid and self.show_grid:
            for gx in range(0, self.width, self.grid_size):
                draw.line([(gx, 0), (gx, self.height)], fill="#e5e7eb")
            for gy in range(0, self.height, self.grid_size):
                draw.line([(0, gy), (self.width, gy)], fill="#e5e7eb")

        for stroke in self.strokes:
            if not stroke.points:
                continue
            erase = stroke.mode == "erase"
            width = stroke.width or (self.erase_width if erase else self.stroke_width)
            fill = "white" if erase else (stroke.color or self.color)
            if len(stroke.points) > 1:
                draw.line(stroke.points, fill=fill, width=width, joint="curve")
            # round caps
            r = width / 2
            for px, py in (stroke.points[0], stroke.points[-1]):
                draw.ellipse([px - r, py - r, px + r, py + r], fill=fill)
        return img

    def to_png(self, margin: int = CANVAS_MARGIN) -> bytes:
        """Rasterise the visible strokes (grid excluded) with a white margin."""
        img = self.render(include_grid=False)
        padded = Image.new("RGB", (img.width + margin * 2, img.height + margin * 2), "white")
        padded.paste(img, (margin, margin))
        return _png_bytes(padded)


# ============================================================================
# INPUT MODE STATE MACHINE
# ============================================================================

class InputMode(str, Enum):
    EMPTY = "empty"
    UPLOADING = "uploading"
    DRAWING = "drawing"
    TYPING = "typing"


class InputSelector:
    """
    Exactly one input form is active at a time. Entering a mode clears the
    state held by the other two and any previous result.
    """

    def __init__(self):
        self.mode = InputMode.EMPTY
        self.image_data: Optional[bytes] = None
        self.image_mime: Optional[str] = None
        self.crop: Optional[CropBox] = None
        self.canvas: Optional[Canvas] = None
        self.drawing_png: Optional[bytes] = None
        self.text = ""
        self.result = None

    def _enter(self, mode: InputMode) -> None:
        if mode != InputMode.UPLOADING:
            self.image_data = self.image_mime = self.crop = None
        if mode != InputMode.DRAWING:
            self.canvas = self.drawing_png = None
        if mode != InputMode.TYPING:
            self.text = ""
        self.result = None
        if mode != self.mode:
            logger.debug(f"[Input] {self.mode.value} -> {mode.value}")
        self.mode = mode

    def upload(self, data_uri: str, crop: Optional[CropBox] = None) -> None:
        mime, data = parse_data_uri(data_uri)
        ensure_supported_image(mime)
        self._enter(InputMode.UPLOADING)
        self.image_data, self.image_mime, self.crop = data, mime, crop

    def set_crop(self, crop: Optional[CropBox]) -> None:
        if self.mode == InputMode.UPLOADING:
            self.crop = crop
            self.result = None

    def draw(self, canvas: Optional[Canvas] = None, data_uri: Optional[str] = None) -> None:
        png = None
        if data_uri:
            mime, png = parse_data_uri(data_uri)
            ensure_supported_image(mime)
        self._enter(InputMode.DRAWING)
        self.canvas = canvas
        self.drawing_png = png

    def type_text(self, text: str) -> None:
        # Typing only takes over once there is something typed
        if text:
            self._enter(InputMode.TYPING)
            self.text = text
        elif self.mode == InputMode.TYPING:
            self._enter(InputMode.EMPTY)

    def set_result(self, result) -> None:
        self.result = result

    def clear(self) -> None:
        self._enter(InputMode.EMPTY)

    def to_problem_input(self):
        if self.mode == InputMode.TYPING and self.text.strip():
            return TextInput(statement=self.text.strip())

        if self.mode == InputMode.UPLOADING and self.image_data:
            data = crop_image(self.image_data, self.crop) if self.crop else self.image_data
            mime = "image/png" if self.crop else self.image_mime
            if mime == "image/jpg":
                mime = "image/jpeg"
            return ImageInput(image_data=data, mime_type=mime, source="upload")

        if self.mode == InputMode.DRAWING:
            if self.drawing_png is not None:
                return ImageInput(image_data=pad_image(self.drawing_png), source="draw")
            if self.canvas is not None:
                return ImageInput(image_data=self.canvas.to_png(), source="draw")

        raise InvalidInputError()
