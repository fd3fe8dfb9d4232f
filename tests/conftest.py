import pytest

from blank_scanner.pixel_buffer import PixelBuffer
from blank_scanner.tools.sheet_layout import GridBoundsRatio, LayoutParams

from synthetic import MARKERS, render_sheet, warp_sheet

KEY_10 = [0, 1, 2, 3, 4, None, 2, 0, 4, 1]
KEY_20 = [0, 1, 2, 3, 4, 4, 3, 2, 1, 0, 2, 2, 0, 4, 1, 3, 0, 1, 4, 2]


@pytest.fixture
def key10():
    return list(KEY_10)


@pytest.fixture
def key20():
    return list(KEY_20)


@pytest.fixture
def params10():
    return LayoutParams(10, GridBoundsRatio())


@pytest.fixture
def flat_sheet():
    return PixelBuffer(render_sheet(KEY_10))


@pytest.fixture
def tilted_sheet():
    img, markers = warp_sheet(render_sheet(KEY_20))
    return PixelBuffer(img), markers


@pytest.fixture
def markers():
    return MARKERS
