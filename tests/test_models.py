import math

import pytest
from pydantic import ValidationError

from verimark.models import (
    CompositeFailure,
    CompositeSuccess,
    DownloadRequest,
    ExportStats,
    Placement,
    PlacementMethod,
    PlacementSchema,
    ProductRegisterRequest,
    ResolutionResult,
)


class TestPlacement:
    def test_from_dict_rounds(self):
        placement = Placement.from_dict({"x": "10.5", "y": 11.5, "width": 99.7, "height": 100})

        assert placement.box() == {"x": 10, "y": 12, "width": 100, "height": 100}
        assert placement.method == PlacementMethod.TEMPLATE
        assert placement.confidence == 100.0

    def test_from_dict_keeps_stored_method(self):
        placement = Placement.from_dict(
            {"x": 1, "y": 1, "width": 60, "height": 60, "method": "color", "confidence": 72.5}
        )

        assert placement.method == PlacementMethod.COLOR
        assert placement.confidence == 72.5

    @pytest.mark.parametrize(
        "data",
        [
            {"x": 1, "y": 1, "width": 60},
            {"x": 1, "y": None, "width": 60, "height": 60},
            {"x": math.inf, "y": 1, "width": 60, "height": 60},
            [1, 1, 60, 60],
        ],
    )
    def test_from_dict_invalid(self, data):
        with pytest.raises(ValueError):
            Placement.from_dict(data)

    def test_fits_within(self):
        placement = Placement(x=800, y=800, width=200, height=200)

        assert placement.fits_within(1000, 1000) is True
        assert placement.fits_within(999, 1000) is False
        assert Placement(x=-1, y=0, width=10, height=10).fits_within(100, 100) is False

    def test_is_printable(self):
        assert Placement(0, 0, 50, 50).is_printable() is True
        assert Placement(0, 0, 49, 200).is_printable() is False

    def test_to_dict(self):
        assert Placement(1, 2, 3, 4, PlacementMethod.CSV, 100.0).to_dict() == {
            "x": 1,
            "y": 2,
            "width": 3,
            "height": 4,
            "method": "csv",
            "confidence": 100.0,
        }


def test_composite_results_are_tagged():
    ok = CompositeSuccess(product_id="P-1", serial_number=None, buffer=b"png")
    failed = CompositeFailure(product_id="P-2", serial_number="SN-2", error="boom")

    assert ok.success is True
    assert failed.success is False


def test_export_stats_to_dict():
    stats = ExportStats(total=2, successful=1, failed=1, success_rate="50.00")

    assert stats.to_dict()["successRate"] == "50.00"
    assert stats.to_dict()["failedItems"] == []


def test_resolution_result_error_only_when_set():
    assert "error" not in ResolutionResult(success=True).to_dict()
    assert ResolutionResult(success=False, error="bad").to_dict()["error"] == "bad"


class TestDownloadRequest:
    def test_defaults(self):
        request = DownloadRequest(productIds=[1, 2], format="embedded")

        assert request.outputType == "zip"
        assert request.pdfLayout == "fit"
        assert (request.columns, request.rows) == (2, 2)
        assert request.includeMetadata is False

    @pytest.mark.parametrize(
        "data",
        [
            {"productIds": [], "format": "qr-only"},
            {"productIds": [1], "format": "png"},
            {"productIds": [1], "format": "embedded", "outputType": "docx"},
            {"productIds": [1], "format": "embedded", "pdfLayout": "poster"},
            {"productIds": [1], "format": "embedded", "columns": 0},
            {"productIds": [1], "format": "embedded", "rows": 11},
        ],
    )
    def test_invalid(self, data):
        with pytest.raises(ValidationError):
            DownloadRequest(**data)


class TestPlacementSchema:
    def test_zero_origin_allowed(self):
        placement = PlacementSchema(x=0, y=0, width=50, height=50).to_placement()

        assert placement.box() == {"x": 0, "y": 0, "width": 50, "height": 50}
        assert placement.method == PlacementMethod.TEMPLATE

    @pytest.mark.parametrize(
        "data",
        [
            {"x": -1, "y": 0, "width": 100, "height": 100},
            {"x": 0, "y": 0, "width": 49, "height": 100},
        ],
    )
    def test_invalid(self, data):
        with pytest.raises(ValidationError):
            PlacementSchema(**data)


def test_register_request_strips_whitespace():
    request = ProductRegisterRequest(productId="  SKU-1 ", batchNumber=" B-1 ")

    assert request.productId == "SKU-1"
    assert request.batchNumber == "B-1"

    with pytest.raises(ValidationError):
        ProductRegisterRequest(productId="   ")
