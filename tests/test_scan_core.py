import logging

import cv2
import numpy as np
import pytest
from PIL import Image

from blank_scanner import scan_core
from blank_scanner.errors import InvalidTransitionError
from blank_scanner.pixel_buffer import PixelBuffer
from blank_scanner.scan_core import (
    METHOD_HOMOGRAPHY,
    METHOD_RATIO,
    ScanAttempt,
    ScanState,
    resolve_homography,
    scan_blank,
)
from blank_scanner.tools.bubble_score import AMBIGUOUS, BLANK, MARKED
from blank_scanner.tools.sheet_layout import GridBoundsRatio, LayoutParams, Markers

from synthetic import MARKERS, add_noise, encode_png, render_sheet

COLLINEAR = Markers.from_flat([0.1, 0.1, 0.5, 0.5, 0.9, 0.9, 0.9, 0.1])


class TestScanBlank:
    def test_exact_recovery_on_flat_sheet(self, flat_sheet, markers, params10, key10):
        result = scan_blank(flat_sheet, markers, params10)
        assert result.success
        assert list(result.answers) == key10
        assert result.method == METHOD_HOMOGRAPHY
        assert result.geometry_quality == pytest.approx(1.0)
        assert result.confidence > 0.95
        assert not result.low_confidence

    def test_tilted_twenty_question_sheet(self, tilted_sheet, key20):
        image, markers = tilted_sheet
        result = scan_blank(image, markers, LayoutParams(20))
        assert result.success
        assert list(result.answers) == key20
        assert all(s == MARKED for s in result.statuses)
        assert result.confidence >= 0.8
        assert result.geometry_quality < 1.0

    def test_accepts_encoded_bytes_and_paths(self, tmp_path, markers, params10, key10):
        png = encode_png(render_sheet(key10))
        assert list(scan_blank(png, markers, params10).answers) == key10
        path = tmp_path / "sheet.png"
        path.write_bytes(png)
        assert list(scan_blank(str(path), markers, params10).answers) == key10

    def test_two_marks_in_one_question_are_ambiguous(self, markers, params10, key10):
        image = PixelBuffer(render_sheet(key10, extra_marks=[(3, 1)]))
        result = scan_blank(image, markers, params10)
        assert result.answers[3] is None
        assert result.statuses[3] == AMBIGUOUS
        assert [a for i, a in enumerate(result.answers) if i != 3] == [a for i, a in enumerate(key10) if i != 3]

    def test_skip_is_not_ambiguity(self, markers, params10):
        skipped = scan_blank(PixelBuffer(render_sheet([None] * 10)), markers, params10)
        assert skipped.answers == (None,) * 10
        assert all(s == BLANK for s in skipped.statuses)
        assert max(max(row) for row in skipped.fill_ratios) < 0.05
        # every question at skip confidence 0.8, geometry perfect
        assert skipped.confidence == pytest.approx(0.8 * 0.8 + 0.2, abs=0.02)
        assert not skipped.low_confidence

        doubled = render_sheet([0] * 10, extra_marks=[(q, 1) for q in range(10)])
        ambiguous = scan_blank(PixelBuffer(doubled), markers, params10)
        assert ambiguous.answers == (None,) * 10
        assert ambiguous.confidence < skipped.confidence
        assert ambiguous.low_confidence

    def test_noise_never_raises_confidence(self, markers, params10, key10):
        clean = render_sheet(key10)
        confidences = []
        for sigma in (0, 15, 30, 45):
            result = scan_blank(PixelBuffer(add_noise(clean, sigma)), markers, params10)
            assert list(result.answers) == key10
            confidences.append(result.confidence)
        assert all(b <= a + 1e-9 for a, b in zip(confidences, confidences[1:]))

    def test_legacy_ratio_fallback(self, key10):
        image = PixelBuffer(render_sheet(key10, frame=None))
        result = scan_blank(image, None, LayoutParams(10, GridBoundsRatio()))
        assert result.success
        assert result.method == METHOD_RATIO
        assert list(result.answers) == key10

    def test_markers_from_grid_bounds(self, flat_sheet, key10):
        params = LayoutParams(10, GridBoundsRatio(markers=MARKERS))
        result = scan_blank(flat_sheet, None, params)
        assert result.method == METHOD_HOMOGRAPHY
        assert list(result.answers) == key10

    def test_explicit_markers_win_over_configured(self, flat_sheet, key10):
        params = LayoutParams(10, GridBoundsRatio(markers=COLLINEAR))
        result = scan_blank(flat_sheet, MARKERS, params)
        assert result.success
        assert list(result.answers) == key10

    def test_undecodable_image_fails(self, markers, params10):
        result = scan_blank(b"definitely not an image", markers, params10)
        assert not result.success
        assert result.answers == ()
        assert "decoded" in result.error

    def test_missing_file_fails(self, tmp_path, markers, params10):
        result = scan_blank(tmp_path / "nope.jpg", markers, params10)
        assert not result.success
        assert result.error

    def test_collinear_markers_fail(self, flat_sheet, params10):
        result = scan_blank(flat_sheet, COLLINEAR, params10)
        assert not result.success
        assert "Calibration" in result.error
        assert result.confidence == 0.0

    def test_input_buffer_is_untouched(self, flat_sheet, markers, params10):
        before = flat_sheet.data.copy()
        scan_blank(flat_sheet, markers, params10)
        np.testing.assert_array_equal(flat_sheet.data, before)

    def test_low_confidence_is_logged(self, markers, params10, caplog):
        doubled = render_sheet([0] * 10, extra_marks=[(q, 1) for q in range(10)])
        with caplog.at_level(logging.WARNING, logger="blank_scanner"):
            result = scan_blank(PixelBuffer(doubled), markers, params10)
        assert result.success
        assert any("low-confidence" in r.getMessage() for r in caplog.records)

    def test_oversized_image_fails_cleanly(self, monkeypatch, markers, params10):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
        result = scan_blank(encode_png(render_sheet([0])), markers, params10)
        assert not result.success
        assert "decoded" in result.error

    def test_sixteen_bit_scan_reads_the_marks(self, markers, params10, key10):
        gray = render_sheet(key10)[..., 0]
        ok, enc = cv2.imencode(".png", gray.astype(np.uint16) * 257)
        assert ok
        result = scan_blank(enc.tobytes(), markers, params10)
        assert result.success
        assert list(result.answers) == key10

    def test_sheet_code_is_attached_when_requested(self, monkeypatch, flat_sheet, markers, params10, key10):
        seen = []

        def fake_reader(buf):
            seen.append(buf)
            return "T-42"

        monkeypatch.setattr(scan_core, "read_sheet_code", fake_reader)
        result = scan_blank(flat_sheet, markers, params10, read_code=True)
        assert result.sheet_code == "T-42"
        assert result.to_dict()["sheet_code"] == "T-42"
        assert list(result.answers) == key10
        assert seen == [flat_sheet]

    def test_sheet_code_is_not_read_by_default(self, monkeypatch, flat_sheet, markers, params10):
        def fail_reader(buf):
            raise AssertionError("sheet code read without read_code")

        monkeypatch.setattr(scan_core, "read_sheet_code", fail_reader)
        result = scan_blank(flat_sheet, markers, params10)
        assert result.sheet_code is None
        assert result.to_dict()["sheet_code"] is None

    def test_sheet_without_code(self, flat_sheet, markers, params10):
        result = scan_blank(flat_sheet, markers, params10, read_code=True)
        assert result.success
        assert result.sheet_code is None


class TestResolveHomography:
    def test_ratio_fallback_spans_the_photo(self):
        H, method, quality = resolve_homography(None, 800, 600)
        assert method == METHOD_RATIO
        assert quality == 1.0
        np.testing.assert_allclose(H, np.diag([800.0, 600.0, 1.0]), atol=1e-9)

    def test_markers_give_homography(self):
        H, method, quality = resolve_homography(MARKERS, 1000, 1400)
        assert method == METHOD_HOMOGRAPHY
        assert quality == pytest.approx(1.0)
        np.testing.assert_allclose(H @ [0.0, 0.0, 1.0], [60.0, 70.0, 1.0], atol=1e-9)


class TestScanAttempt:
    def test_happy_path(self, flat_sheet, markers, params10, key10):
        idle = ScanAttempt()
        assert idle.state is ScanState.IDLE
        calibrated = idle.calibrate(markers)
        assert calibrated.state is ScanState.CALIBRATED
        done = calibrated.scan(flat_sheet, params10)
        assert done.state is ScanState.SUCCEEDED
        assert done.is_terminal
        assert list(done.result.answers) == key10
        # previous values are untouched
        assert idle.state is ScanState.IDLE
        assert calibrated.result is None

    def test_failed_scan_is_terminal(self, flat_sheet, params10):
        done = ScanAttempt().calibrate(COLLINEAR).scan(flat_sheet, params10)
        assert done.state is ScanState.FAILED
        assert done.is_terminal
        assert not done.result.success

    def test_low_confidence_still_succeeds(self, markers, params10):
        doubled = render_sheet([0] * 10, extra_marks=[(q, 1) for q in range(10)])
        done = ScanAttempt().calibrate(markers).scan(PixelBuffer(doubled), params10)
        assert done.state is ScanState.SUCCEEDED
        assert done.result.low_confidence

    def test_recalibration_discards_result(self, flat_sheet, markers, params10):
        done = ScanAttempt().calibrate(markers).scan(flat_sheet, params10)
        retry = done.calibrate(markers)
        assert retry.state is ScanState.CALIBRATED
        assert retry.result is None
        assert done.state is ScanState.SUCCEEDED

    def test_cannot_scan_without_calibration(self, flat_sheet, params10):
        with pytest.raises(InvalidTransitionError):
            ScanAttempt().scan(flat_sheet, params10)

    def test_cannot_resume_terminal_attempt(self, flat_sheet, markers, params10):
        done = ScanAttempt().calibrate(markers).scan(flat_sheet, params10)
        with pytest.raises(InvalidTransitionError):
            done.start()
        with pytest.raises(InvalidTransitionError):
            done.complete(done.result)

    def test_complete_only_while_scanning(self, markers):
        calibrated = ScanAttempt().calibrate(markers)
        with pytest.raises(InvalidTransitionError):
            calibrated.complete(None)

    def test_calibrate_needs_markers(self):
        with pytest.raises(InvalidTransitionError):
            ScanAttempt().calibrate(None)

    def test_scan_passes_read_code_through(self, monkeypatch, flat_sheet, markers, params10):
        monkeypatch.setattr(scan_core, "read_sheet_code", lambda buf: "FORM-7")
        done = ScanAttempt().calibrate(markers).scan(flat_sheet, params10, read_code=True)
        assert done.state is ScanState.SUCCEEDED
        assert done.result.sheet_code == "FORM-7"
