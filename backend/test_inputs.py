"""
Tests for problem input capture: data URIs, cropping, canvas rasterisation
and the single-choice input mode state machine.
"""

import io

import pytest
from PIL import Image

from conftest import make_data_uri, make_png
from errors import InvalidInputError, NothingToSolveError
from inputs import (
    CANVAS_MARGIN,
    Canvas,
    CropBox,
    InputMode,
    InputSelector,
    Stroke,
    crop_image,
    ensure_not_blank,
    ensure_supported_image,
    is_blank,
    pad_image,
    parse_data_uri,
)
from schemas import ImageInput, TextInput


def _size(data: bytes):
    return Image.open(io.BytesIO(data)).size


def test_parse_data_uri():
    png = make_png()
    mime, data = parse_data_uri(make_data_uri(png))
    assert mime == "image/png"
    assert data == png


@pytest.mark.parametrize("uri", ["", "not a data uri", "data:image/png;base64,***"])
def test_parse_data_uri_rejects_malformed(uri):
    with pytest.raises(InvalidInputError):
        parse_data_uri(uri)


def test_only_png_and_jpeg_are_supported():
    for mime in ("image/png", "image/jpeg", "image/jpg"):
        ensure_supported_image(mime)
    with pytest.raises(InvalidInputError) as exc:
        ensure_supported_image("image/gif")
    assert exc.value.title == "Invalid File Type"


def test_crop_in_pixels_and_percent():
    png = make_png(size=(200, 100))
    assert _size(crop_image(png, CropBox(x=10, y=10, width=50, height=40))) == (50, 40)
    assert _size(crop_image(png, CropBox(x=0, y=0, width=50, height=50, unit="%"))) == (100, 50)


def test_crop_is_clamped_to_image():
    png = make_png(size=(200, 100))
    assert _size(crop_image(png, CropBox(x=150, y=50, width=500, height=500))) == (50, 50)


def test_zero_area_crop_is_rejected():
    with pytest.raises(InvalidInputError):
        crop_image(make_png(), CropBox(x=300, y=0, width=10, height=10))


def test_pad_adds_margin_and_flattens_transparency():
    padded = pad_image(make_png(size=(200, 100), mode="RGBA"))
    assert _size(padded) == (200 + 2 * CANVAS_MARGIN, 100 + 2 * CANVAS_MARGIN)
    assert Image.open(io.BytesIO(padded)).getpixel((0, 0)) == (255, 255, 255)


def test_decompression_bomb_is_invalid_input(monkeypatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

    with pytest.raises(InvalidInputError) as exc:
        is_blank(make_png(size=(200, 100)))
    assert exc.value.title == "Invalid Image"

    with pytest.raises(InvalidInputError):
        pad_image(make_png(size=(200, 100)))


def test_blank_detection():
    assert is_blank(make_png(blank=True))
    assert is_blank(make_png(blank=True, mode="RGBA"))
    assert not is_blank(make_png())


def test_canvas_render_with_margin():
    canvas = Canvas(width=300, height=150)
    assert canvas.is_empty
    assert is_blank(canvas.to_png())

    canvas.add_stroke(Stroke(points=[(10, 10), (100, 100), (200, 50)]))
    png = canvas.to_png()
    assert _size(png) == (300 + 2 * CANVAS_MARGIN, 150 + 2 * CANVAS_MARGIN)
    assert not is_blank(png)


def test_canvas_erase_and_grid():
    canvas = Canvas(width=100, height=100)
    canvas.add_stroke(Stroke(points=[(50, 50)]))
    assert not is_blank(canvas.to_png())

    canvas.add_stroke(Stroke(points=[(50, 50)], mode="erase"))
    assert is_blank(canvas.to_png())

    # grid is only a visual aid and never part of the submitted image
    assert not is_blank(_png(canvas.render(include_grid=True)))
    canvas.clear()
    assert canvas.strokes == []


def _png(img) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def test_ensure_not_blank_messages():
    with pytest.raises(NothingToSolveError, match="canvas is empty"):
        ensure_not_blank(ImageInput(image_data=make_png(blank=True), source="draw"))
    with pytest.raises(NothingToSolveError, match="selected area"):
        ensure_not_blank(ImageInput(image_data=make_png(blank=True), source="upload"))
    ensure_not_blank(TextInput(statement="1 + 1"))


class TestInputSelector:

    def test_starts_empty_and_rejects_submit(self):
        selector = InputSelector()
        assert selector.mode == InputMode.EMPTY
        with pytest.raises(InvalidInputError) as exc:
            selector.to_problem_input()
        assert exc.value.title == "No Input Provided"

    def test_typing_clears_upload_and_result(self):
        selector = InputSelector()
        selector.upload(make_data_uri(make_png()))
        selector.set_result("previous result")

        selector.type_text("  2 + 2  ")
        assert selector.mode == InputMode.TYPING
        assert selector.image_data is None
        assert selector.result is None
        assert selector.to_problem_input() == TextInput(statement="2 + 2")

    def test_drawing_clears_text(self):
        selector = InputSelector()
        selector.type_text("x + 1")
        selector.draw(canvas=Canvas())
        assert selector.mode == InputMode.DRAWING
        assert selector.text == ""

    def test_upload_clears_drawing(self):
        selector = InputSelector()
        selector.draw(canvas=Canvas())
        selector.upload(make_data_uri(make_png()), crop=CropBox(x=0, y=0, width=50, height=50))
        assert selector.mode == InputMode.UPLOADING
        assert selector.canvas is None

        problem = selector.to_problem_input()
        assert problem.source == "upload"
        assert _size(problem.image_data) == (50, 50)

    def test_rejected_upload_keeps_previous_state(self):
        selector = InputSelector()
        selector.type_text("x + 1")
        with pytest.raises(InvalidInputError):
            selector.upload(make_data_uri(b"GIF89a", mime="image/gif"))
        assert selector.mode == InputMode.TYPING
        assert selector.text == "x + 1"

    def test_whitespace_only_text_is_absent(self):
        selector = InputSelector()
        selector.type_text("   ")
        with pytest.raises(InvalidInputError):
            selector.to_problem_input()

    def test_erasing_typed_text_returns_to_empty(self):
        selector = InputSelector()
        selector.type_text("x")
        selector.type_text("")
        assert selector.mode == InputMode.EMPTY

    def test_drawing_data_uri_is_padded(self):
        selector = InputSelector()
        selector.draw(data_uri=make_data_uri(make_png(size=(200, 100))))
        problem = selector.to_problem_input()
        assert problem.source == "draw"
        assert _size(problem.image_data) == (200 + 2 * CANVAS_MARGIN, 100 + 2 * CANVAS_MARGIN)

    def test_clear(self):
        selector = InputSelector()
        selector.type_text("x")
        selector.clear()
        assert selector.mode == InputMode.EMPTY
        assert selector.text == ""
