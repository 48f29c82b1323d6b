import asyncio
import io
import threading
import time

import pytest
from PIL import Image

from conftest import make_image, oversized_png
from verimark.exceptions import QrEmbeddingError
from verimark.models import CompositeJob, OverlayOptions, Placement, PlacementMethod
from verimark.services.qr_embedder import QrEmbedder, parse_color, sanitize_placement
from verimark.services.qr_generator import render_qr_png

BLUE = (0, 0, 255)
PLACEMENT = {"x": 400, "y": 400, "width": 200, "height": 200}


def open_image(data):
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def make_jobs(count, corrupt=()):
    qr = render_qr_png("https://example.com/verify?hash=x", width=200)
    return [
        CompositeJob(
            product_id=f"P-{i}",
            serial_number=f"SN-{i}",
            qr_image=b"corrupt" if i in corrupt else qr,
            qr_hash=f"hash-{i}",
            batch_number="B-7",
        )
        for i in range(count)
    ]


class TestEmbedQrOnDesign:
    def setup_method(self):
        self.embedder = QrEmbedder()
        self.design = make_image(color=BLUE)
        self.qr = render_qr_png("https://example.com/verify?hash=abc", width=600)

    def test_qr_lands_inside_placement(self):
        result = open_image(self.embedder.embed_qr_on_design(self.design, self.qr, PLACEMENT))

        assert result.size == (1000, 1000)
        assert result.format == "PNG"
        rgb = result.convert("RGB")
        # Outside the box the design is untouched
        assert rgb.getpixel((10, 10)) == BLUE
        assert rgb.getpixel((399, 500)) == BLUE
        assert rgb.getpixel((600, 500)) == BLUE
        # Inside the box every pixel comes from the grayscale QR
        box = rgb.crop((400, 400, 600, 600))
        assert all(r == g == b for _, (r, g, b) in box.getcolors(maxcolors=200 * 200))
        # Quiet zone corner
        assert rgb.getpixel((401, 401)) == (255, 255, 255)

    def test_non_square_qr_is_padded_not_stretched(self):
        wide = make_image(size=(300, 100), color=(0, 0, 0))

        result = open_image(self.embedder.embed_qr_on_design(self.design, wide, PLACEMENT)).convert("RGB")

        assert result.getpixel((500, 405)) == (255, 255, 255)
        assert result.getpixel((500, 500)) == (0, 0, 0)
        assert result.getpixel((500, 595)) == (255, 255, 255)

    def test_idempotent(self):
        first = self.embedder.embed_qr_on_design(self.design, self.qr, PLACEMENT)
        second = self.embedder.embed_qr_on_design(self.design, self.qr, PLACEMENT)

        assert first == second

    def test_fractional_placement_is_rounded(self):
        placement = {"x": 399.6, "y": 400.4, "width": 200.2, "height": 199.5}

        assert self.embedder.embed_qr_on_design(
            self.design, self.qr, placement
        ) == self.embedder.embed_qr_on_design(self.design, self.qr, PLACEMENT)

    def test_keeps_jpeg_format(self):
        design = make_image(color=BLUE, fmt="JPEG")

        result = open_image(self.embedder.embed_qr_on_design(design, self.qr, PLACEMENT))

        assert result.format == "JPEG"

    def test_out_of_bounds_placement(self):
        placement = Placement(x=900, y=900, width=200, height=200)

        with pytest.raises(QrEmbeddingError) as exc_info:
            self.embedder.embed_qr_on_design(self.design, self.qr, placement, "P-9")

        assert exc_info.value.product_id == "P-9"
        assert "exceeds image bounds" in str(exc_info.value)

    def test_corrupt_qr(self):
        with pytest.raises(QrEmbeddingError) as exc_info:
            self.embedder.embed_qr_on_design(self.design, b"junk", PLACEMENT, "P-1")

        assert exc_info.value.product_id == "P-1"

    def test_corrupt_design(self):
        with pytest.raises(QrEmbeddingError):
            self.embedder.embed_qr_on_design(b"junk", self.qr, PLACEMENT)

    def test_oversized_qr_header(self):
        with pytest.raises(QrEmbeddingError) as exc_info:
            self.embedder.embed_qr_on_design(self.design, oversized_png(), PLACEMENT, "P-3")

        assert exc_info.value.product_id == "P-3"


class TestMetadataOverlay:
    def setup_method(self):
        self.embedder = QrEmbedder()
        self.image = make_image(size=(600, 400), color=(0, 0, 0))

    def test_draws_label_box_at_bottom(self):
        result = open_image(
            self.embedder.add_metadata_overlay(self.image, serial_number="SN-1", batch_number="B-2")
        ).convert("RGB")

        # Left of the text inside the translucent white box
        r, g, b = result.getpixel((12, 385))
        assert abs(r - 204) <= 2 and r == g == b
        assert result.getpixel((5, 5)) == (0, 0, 0)
        assert result.getpixel((300, 100)) == (0, 0, 0)

    def test_custom_background(self):
        options = OverlayOptions(background_color="#FF0000")

        result = open_image(
            self.embedder.add_metadata_overlay(self.image, serial_number="SN-1", options=options)
        ).convert("RGB")

        assert result.getpixel((12, 385)) == (255, 0, 0)

    def test_failure_returns_original(self):
        assert self.embedder.add_metadata_overlay(b"junk", serial_number="SN-1") == b"junk"


class TestParseColor:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("rgba(255,255,255,0.8)", (255, 255, 255, 204)),
            ("rgb(1, 2, 3)", (1, 2, 3, 255)),
            ("#000", (0, 0, 0, 255)),
            ("#11223344", (17, 34, 51, 68)),
            ("white", (255, 255, 255, 255)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_color(value, (9, 9, 9, 9)) == expected

    @pytest.mark.parametrize("value", [None, "nonsense", "rgba(a,b,c)", 42])
    def test_fallback(self, value):
        assert parse_color(value, (9, 9, 9, 9)) == (9, 9, 9, 9)


class TestSanitizePlacement:
    def test_rounds_and_floors(self):
        placement = sanitize_placement({"x": 10.6, "y": -5, "width": "abc", "height": 0})

        assert placement.box() == {"x": 11, "y": 0, "width": 100, "height": 1}

    def test_missing_values(self):
        assert sanitize_placement({}).box() == {"x": 0, "y": 0, "width": 100, "height": 100}

    def test_keeps_method(self):
        placement = sanitize_placement(
            Placement(x=1, y=2, width=60, height=60, method=PlacementMethod.COLOR, confidence=87.5)
        )

        assert placement.method == PlacementMethod.COLOR
        assert placement.confidence == 87.5

    def test_rejects_non_mapping(self):
        with pytest.raises(ValueError):
            sanitize_placement([1, 2, 3, 4])


class TestValidateDesign:
    def setup_method(self):
        self.embedder = QrEmbedder()

    def test_print_quality_design(self):
        result = self.embedder.validate_design(make_image(size=(1500, 1500)))

        assert result["valid"] is True
        assert result["warnings"] == []
        assert result["metadata"] == {
            "width": 1500,
            "height": 1500,
            "format": "png",
            "mode": "RGB",
            "has_alpha": False,
        }

    def test_low_resolution_warning(self):
        result = self.embedder.validate_design(make_image(size=(500, 500), fmt="JPEG"))

        assert result["valid"] is True
        assert len(result["warnings"]) == 1
        assert result["metadata"]["format"] == "jpeg"

    def test_too_small(self):
        result = self.embedder.validate_design(make_image(size=(200, 200)))

        assert result["valid"] is False
        assert "too small" in result["errors"][0]

    def test_transparency(self):
        data = make_image(size=(400, 400), color=(0, 0, 0, 0), mode="RGBA")

        assert self.embedder.validate_design(data)["metadata"]["has_alpha"] is True

    def test_not_an_image(self):
        result = self.embedder.validate_design(b"%PDF-1.4")

        assert result["valid"] is False
        assert "metadata" not in result

    def test_oversized_header(self):
        result = self.embedder.validate_design(oversized_png())

        assert result["valid"] is False
        assert "Invalid image file" in result["errors"][0]


class TestOptimizeImage:
    def test_to_jpeg(self):
        data = make_image(size=(300, 300), color=(0, 0, 0, 128), mode="RGBA")

        result = open_image(QrEmbedder().optimize_image(data, fmt="jpeg", quality=70))

        assert result.format == "JPEG"
        assert result.mode == "RGB"

    def test_png_compression(self):
        data = make_image(size=(300, 300), fmt="JPEG")

        result = open_image(QrEmbedder().optimize_image(data, compression_level=12))

        assert result.format == "PNG"


@pytest.mark.asyncio
class TestGenerateBatchDesigns:
    async def test_partial_failure_keeps_order(self):
        embedder = QrEmbedder()
        jobs = make_jobs(7, corrupt={2, 5})
        progress = []

        results = await embedder.generate_batch_designs(
            make_image(size=(600, 600)),
            jobs,
            {"x": 200, "y": 200, "width": 200, "height": 200},
            chunk_size=3,
            on_progress=lambda done, total: progress.append((done, total)),
        )

        assert [r.product_id for r in results] == [job.product_id for job in jobs]
        assert [r.success for r in results] == [True, True, False, True, True, False, True]
        assert results[2].serial_number == "SN-2"
        assert results[2].qr_hash == "hash-2"
        assert results[0].batch_number == "B-7"
        assert progress == [(3, 7), (6, 7), (7, 7)]
        assert open_image(results[0].buffer).size == (600, 600)

    async def test_async_progress_callback(self):
        seen = []

        async def on_progress(done, total):
            await asyncio.sleep(0)
            seen.append(done)

        await QrEmbedder().generate_batch_designs(
            make_image(size=(600, 600)), make_jobs(4), PLACEMENT | {"x": 100, "y": 100}, chunk_size=2,
            on_progress=on_progress,
        )

        assert seen == [2, 4]

    async def test_out_of_bounds_fails_every_item(self):
        results = await QrEmbedder().generate_batch_designs(
            make_image(size=(300, 300)), make_jobs(3), PLACEMENT
        )

        assert len(results) == 3
        assert not any(r.success for r in results)
        assert all("exceeds image bounds" in r.error for r in results)

    async def test_metadata_changes_output(self):
        embedder = QrEmbedder()
        design = make_image(size=(600, 600))
        placement = {"x": 200, "y": 100, "width": 200, "height": 200}

        plain = await embedder.generate_batch_designs(design, make_jobs(1), placement)
        labelled = await embedder.generate_batch_designs(
            design, make_jobs(1), placement, include_metadata=True
        )

        assert plain[0].buffer != labelled[0].buffer

    async def test_chunk_bounds_concurrency(self):
        class TrackingEmbedder(QrEmbedder):
            def __init__(self):
                super().__init__(chunk_size=3)
                self.lock = threading.Lock()
                self.active = 0
                self.peak = 0

            def compose(self, *args, **kwargs):
                with self.lock:
                    self.active += 1
                    self.peak = max(self.peak, self.active)
                time.sleep(0.05)
                with self.lock:
                    self.active -= 1
                return b"ok"

        embedder = TrackingEmbedder()

        results = await embedder.generate_batch_designs(b"design", make_jobs(8), PLACEMENT)

        assert all(r.success for r in results)
        assert 1 <= embedder.peak <= 3

    async def test_item_timeout(self):
        class SlowEmbedder(QrEmbedder):
            def compose(self, *args, **kwargs):
                time.sleep(0.3)
                return b"late"

        results = await SlowEmbedder(item_timeout=0.05).generate_batch_designs(
            b"design", make_jobs(2), PLACEMENT
        )

        assert [r.success for r in results] == [False, False]
        assert "timed out" in results[0].error

    async def test_oversized_qr_fails_only_its_item(self):
        jobs = make_jobs(3)
        jobs[1].qr_image = oversized_png()

        results = await QrEmbedder().generate_batch_designs(
            make_image(size=(600, 600)), jobs, {"x": 200, "y": 200, "width": 200, "height": 200}
        )

        assert [r.success for r in results] == [True, False, True]
        assert results[1].product_id == "P-1"

    async def test_unexpected_error_fails_only_its_item(self):
        class FlakyEmbedder(QrEmbedder):
            def compose(self, design_bytes, job, *args, **kwargs):
                if job.product_id == "P-1":
                    raise RuntimeError("font cache corrupted")
                return b"ok"

        results = await FlakyEmbedder().generate_batch_designs(b"design", make_jobs(3), PLACEMENT)

        assert [r.success for r in results] == [True, False, True]
        assert "font cache corrupted" in results[1].error
