import cv2
import numpy as np
import pytest

from blank_scanner.scoring_defaults import DEFAULTS, apply_overrides
from blank_scanner.tools.bubble_score import (
    AMBIGUOUS,
    BLANK,
    MARKED,
    CellScore,
    QuestionResolution,
    ScanResult,
    aggregate,
    cell_radius_px,
    classify_cell,
    resolve_question,
)
from blank_scanner.tools.sheet_layout import GridBoundsRatio, build_layout


def _scores(*fills):
    return [CellScore(0, i, f) for i, f in enumerate(fills)]


def _page(paper=245):
    return np.full((200, 300), paper, dtype=np.uint8)


class TestClassifyCell:
    def test_filled_bubble(self):
        gray = _page()
        cv2.circle(gray, (100, 100), 18, 30, -1)
        assert classify_cell(gray, (100, 100), 20) > 0.95

    def test_printed_ring_only(self):
        gray = _page()
        cv2.circle(gray, (100, 100), 20, 110, 2)
        assert classify_cell(gray, (100, 100), 20) == 0.0

    def test_half_filled(self):
        gray = _page()
        cv2.rectangle(gray, (80, 80), (99, 120), 30, -1)
        assert 0.35 < classify_cell(gray, (100, 100), 20) < 0.65

    def test_shadow_does_not_fill_blank_bubbles(self):
        # a global threshold at 0.7 * 245 would call this whole region dark
        gray = _page(paper=150)
        assert classify_cell(gray, (100, 100), 20) == 0.0
        cv2.circle(gray, (100, 100), 18, 20, -1)
        assert classify_cell(gray, (100, 100), 20) > 0.95

    def test_window_outside_image(self):
        assert classify_cell(_page(), (1000, 1000), 20) == 0.0

    def test_edge_bubble_uses_fallback_background(self):
        # annulus almost entirely off-image, so the page background decides
        gray = np.full((12, 12), 200, dtype=np.uint8)
        assert classify_cell(gray, (6, 6), 6, fallback_background=245.0) == 0.0
        assert classify_cell(gray, (6, 6), 6, fallback_background=400.0) == 1.0

    def test_radius_follows_perspective_scale(self):
        layout = build_layout(20, GridBoundsRatio())
        near = np.diag([1000.0, 1400.0, 1.0])
        far = np.diag([500.0, 700.0, 1.0])
        r_near = cell_radius_px(near, (0.5, 0.5), layout)
        r_far = cell_radius_px(far, (0.5, 0.5), layout)
        assert r_near == pytest.approx(2 * r_far)
        assert r_near == pytest.approx(layout.bubble_ratio * min(1000 * layout.option_pitch, 1400 * layout.row_pitch))


class TestResolveQuestion:
    def test_single_mark(self):
        res = resolve_question(_scores(0.02, 0.91, 0.04, 0.0, 0.01))
        assert res.answer == 1
        assert res.status == MARKED
        assert res.confidence == pytest.approx(1.0)

    def test_weak_margin_mark_is_less_confident(self):
        res = resolve_question(_scores(0.55, 0.25, 0.0, 0.0, 0.0))
        assert res.answer == 0
        assert res.confidence == pytest.approx(0.7 + 0.3 * 0.30 / 0.60)

    def test_blank_is_moderate(self):
        res = resolve_question(_scores(0.02, 0.0, 0.01, 0.0, 0.03))
        assert res.answer is None
        assert res.status == BLANK
        assert res.confidence == pytest.approx(0.6 + 0.2 * (1 - 0.03 / 0.35))
        assert res.confidence > DEFAULTS.ambiguous_confidence

    def test_two_close_marks_are_ambiguous(self):
        res = resolve_question(_scores(0.0, 0.62, 0.0, 0.58, 0.0))
        assert res.answer is None
        assert res.status == AMBIGUOUS
        assert res.confidence == pytest.approx(0.3 * 0.04 / 0.20)

    def test_exact_tie_is_ambiguous_with_zero_confidence(self):
        res = resolve_question(_scores(0.8, 0.0, 0.8, 0.0, 0.0))
        assert res.answer is None
        assert res.confidence == 0.0

    def test_scores_may_arrive_unordered(self):
        scores = list(reversed(_scores(0.0, 0.0, 0.0, 0.9, 0.0)))
        res = resolve_question(scores)
        assert res.answer == 3
        assert res.fills == (0.0, 0.0, 0.0, 0.9, 0.0)

    def test_overrides_change_the_floor(self):
        lenient = apply_overrides(min_fill=0.2)
        assert resolve_question(_scores(0.3, 0.0, 0.0, 0.0, 0.0)).status == BLANK
        assert resolve_question(_scores(0.3, 0.0, 0.0, 0.0, 0.0), lenient).answer == 0

    def test_empty_input(self):
        with pytest.raises(ValueError):
            resolve_question([])


class TestAggregate:
    def _res(self, answer, conf, status=MARKED):
        return QuestionResolution(answer, conf, status, (0.0,) * 5)

    def test_weighted_confidence(self):
        result = aggregate([self._res(0, 1.0), self._res(None, 0.8, BLANK)], geometry_quality=0.5)
        assert result.success
        assert result.answers == (0, None)
        assert result.confidence == pytest.approx(0.8 * 0.9 + 0.2 * 0.5)
        assert not result.low_confidence

    def test_low_confidence_is_still_success(self):
        result = aggregate([self._res(None, 0.0, AMBIGUOUS)] * 3, geometry_quality=1.0)
        assert result.success
        assert result.low_confidence
        assert result.confidence == pytest.approx(0.2)


class TestScanResult:
    def test_failed_result_has_no_answers(self):
        r = ScanResult.failed("bad markers")
        assert r.answers == ()
        assert r.error == "bad markers"
        assert r.to_dict()["success"] is False

    def test_failed_result_needs_error(self):
        with pytest.raises(ValueError):
            ScanResult(success=False)
        with pytest.raises(ValueError):
            ScanResult(success=False, answers=(1,), error="x")

    def test_confidence_range(self):
        with pytest.raises(ValueError, match="outside"):
            ScanResult(success=True, confidence=1.5)

    def test_to_dict_letters(self):
        r = ScanResult(success=True, answers=(0, None, 4), confidence=0.9,
                       statuses=(MARKED, BLANK, MARKED), method="homography")
        d = r.to_dict()
        assert d["letters"] == ["A", "", "E"]
        assert d["answers"] == [0, None, 4]


class TestScoringDefaults:
    def test_overrides_do_not_touch_defaults(self):
        s = apply_overrides(min_fill=0.5, dark_ratio=None)
        assert s.min_fill == 0.5
        assert s.dark_ratio == DEFAULTS.dark_ratio
        assert DEFAULTS.min_fill == 0.35

    def test_unknown_override(self):
        with pytest.raises(ValueError, match="top2_ratio"):
            apply_overrides(top2_ratio=0.8)
