"""
Tests for Layer 4: enhancement engine and settings.
"""
import numpy as np
import pytest

from docscan.config import MODE_COLOR, MODE_MONOCHROME, PipelineConfig
from docscan.layer4_enhancement import EnhancementEngine, EnhancementSettings, draw_page_badge

ALL_SETTINGS = [
    EnhancementSettings(mode=MODE_MONOCHROME),
    EnhancementSettings(mode=MODE_COLOR),
    EnhancementSettings(mode=MODE_COLOR, shadow_removal=False, sharpen=False),
    EnhancementSettings(mode=MODE_MONOCHROME, brightness_normalize=False, contrast_boost=1.0),
    EnhancementSettings(mode=MODE_COLOR, shadow_removal=False, brightness_normalize=False,
                        contrast_boost=2.0, sharpen=False),
]


class TestEnhancementSettings:
    """Test settings validation and construction."""

    def test_defaults_match_config(self):
        """Test settings built from the default config."""
        settings = EnhancementSettings.from_config(PipelineConfig())
        assert settings.mode == MODE_MONOCHROME
        assert settings.contrast_boost == 1.3
        assert settings.shadow_removal and settings.brightness_normalize and settings.sharpen

    def test_invalid_mode(self):
        """Test unknown modes are rejected."""
        with pytest.raises(ValueError):
            EnhancementSettings(mode="sepia")

    def test_invalid_contrast(self):
        """Test non-positive contrast factors are rejected."""
        with pytest.raises(ValueError):
            EnhancementSettings(contrast_boost=0)

    @pytest.mark.parametrize("changes", [
        {"sharpen": "false"},
        {"shadow_removal": "no"},
        {"brightness_normalize": 1},
        {"sharpen": None},
    ])
    def test_flags_must_be_booleans(self, changes):
        """Test truthy strings and numbers are not accepted as flags."""
        with pytest.raises(ValueError):
            EnhancementSettings(**changes)

    @pytest.mark.parametrize("boost", [float("nan"), float("inf"), "1.5", True, None])
    def test_contrast_must_be_finite_number(self, boost):
        """Test non-numeric and non-finite contrast factors are rejected."""
        with pytest.raises(ValueError):
            EnhancementSettings(contrast_boost=boost)

    def test_integer_contrast_accepted(self):
        """Test whole-number contrast factors are valid."""
        assert EnhancementSettings(contrast_boost=2).contrast_boost == 2

    def test_updated_returns_new_value(self):
        """Test settings are replaced, never edited."""
        settings = EnhancementSettings()
        color = settings.updated(mode=MODE_COLOR)
        assert settings.mode == MODE_MONOCHROME
        assert color.mode == MODE_COLOR
        assert color.to_dict()["contrast_boost"] == 1.3


class TestEnhancementEngine:
    """Test the fixed-order enhancement pipeline."""

    @pytest.mark.parametrize("settings", ALL_SETTINGS)
    def test_deterministic(self, textured_page, settings):
        """Test repeated runs are byte-identical."""
        engine = EnhancementEngine()
        first = engine.enhance(textured_page, settings)
        second = EnhancementEngine().enhance(textured_page.copy(), settings)
        assert first.tobytes() == second.tobytes()

    @pytest.mark.parametrize("settings", ALL_SETTINGS)
    def test_dimensions_preserved(self, textured_page, settings):
        """Test output width and height equal the input's."""
        out = EnhancementEngine().enhance(textured_page, settings)
        assert out.shape[:2] == textured_page.shape[:2]
        assert out.dtype == np.uint8

    def test_input_not_mutated(self, textured_page):
        """Test enhancement has no side effects on the input buffer."""
        original = textured_page.copy()
        EnhancementEngine().enhance(textured_page, EnhancementSettings())
        assert np.array_equal(textured_page, original)

    def test_monochrome_is_binary_single_channel(self, textured_page):
        """Test monochrome output is one channel of 0/255 values."""
        out = EnhancementEngine().enhance(textured_page, EnhancementSettings(mode=MODE_MONOCHROME))
        assert out.ndim == 2
        assert set(np.unique(out).tolist()) <= {0, 255}
        # Text strokes survive as black, paper as white
        assert (out == 0).any() and (out == 255).mean() > 0.5

    def test_color_keeps_three_channels(self, textured_page):
        """Test color mode returns BGR, also for gray input."""
        engine = EnhancementEngine()
        assert engine.enhance(textured_page, EnhancementSettings(mode=MODE_COLOR)).shape[2] == 3
        gray = textured_page[:, :, 0].copy()
        assert engine.enhance(gray, EnhancementSettings(mode=MODE_COLOR)).shape == textured_page.shape

    def test_contrast_around_mid_gray(self):
        """Test contrast scales distances from 128."""
        engine = EnhancementEngine()
        image = np.array([[100, 128, 200]], dtype=np.uint8)
        out = engine.boost_contrast(image, 1.3)
        assert out.tolist() == [[92, 128, 222]]

    def test_brightness_skips_flat_images(self):
        """Test a narrow intensity range is left untouched."""
        image = np.full((20, 20, 3), 120, dtype=np.uint8)
        assert np.array_equal(EnhancementEngine().normalize_brightness(image), image)

    def test_brightness_stretches_range(self):
        """Test the upper percentile reaches the target brightness."""
        image = np.tile(np.linspace(60, 180, 100).astype(np.uint8), (10, 1))
        out = EnhancementEngine().normalize_brightness(image)
        assert out.min() == 0
        assert np.percentile(out, 98) >= 245

    def test_shadow_removal_flattens_background(self):
        """Test a lighting gradient becomes an even background."""
        gradient = np.tile(np.linspace(120, 220, 400), (300, 1)).astype(np.uint8)
        out = EnhancementEngine().remove_shadows(gradient)
        interior = out[:, 40:-40].astype(np.float64)
        assert interior.std() < 5
        assert 215 < interior.mean() < 245

    def test_despeckle_removes_isolated_pixels(self):
        """Test lone black dots on white paper are removed."""
        page = np.full((60, 60), 230, dtype=np.uint8)
        page[30, 30] = 0
        engine = EnhancementEngine(sauvola_window=25)
        out = engine.to_monochrome(page)
        assert out[30, 30] == 255


class TestPageBadge:
    """Test the optional page-number badge."""

    def test_badge_in_top_right(self):
        """Test the badge only touches the top-right region and keeps the shape."""
        page = np.full((220, 170, 3), 255, dtype=np.uint8)
        out = draw_page_badge(page, 3)
        assert out.shape == page.shape
        assert not np.array_equal(out[:40, 85:], page[:40, 85:])
        assert np.array_equal(out[60:, :], page[60:, :])
        assert page.min() == 255

    def test_badge_on_monochrome(self):
        """Test single-channel pages can be badged."""
        page = np.full((220, 170), 255, dtype=np.uint8)
        out = draw_page_badge(page, 12)
        assert out.ndim == 2
        assert (out == 0).any()
