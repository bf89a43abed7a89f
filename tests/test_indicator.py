"""Tests for the tray indicator renderer."""

from unittest.mock import Mock

from PIL import Image

from indicator import ACCENT_RGB, ChipSurface, IndicatorRenderer


class TestIndicatorRenderer:
    """Tests for IndicatorRenderer."""

    def test_renders_icon_size(self):
        """Test output is the tray icon size."""
        image = IndicatorRenderer().render_label("5m")

        assert image.size == (64, 64)
        assert image.mode == 'RGBA'

    def test_surface_is_lazy(self):
        """Test the surface is created on first render and kept."""
        renderer = IndicatorRenderer()
        assert renderer._surface is None

        renderer.render_label("1h")
        surface = renderer._surface
        renderer.render_label("2h")

        assert isinstance(surface, ChipSurface)
        assert renderer._surface is surface

    def test_draws_at_native_size(self):
        """Test the surface is asked for the larger native bitmap."""
        surface = Mock()
        surface.capture.return_value = Image.new('RGBA', (128, 128))

        image = IndicatorRenderer(surface=surface).render_label("2h")

        surface.capture.assert_called_once_with("2h", 128)
        assert image.size == (64, 64)

    def test_busy_renderer_rejects(self):
        """Test a render while another is in flight is a no-op."""
        surface = Mock()
        renderer = IndicatorRenderer(surface=surface)

        renderer._busy.acquire()
        try:
            assert renderer.render_label("5m") is None
        finally:
            renderer._busy.release()

        surface.capture.assert_not_called()
        assert renderer.render_label("5m") is not None

    def test_surface_failure_gives_placeholder(self):
        """Test drawing errors degrade to a plain chip."""
        surface = Mock()
        surface.capture.side_effect = RuntimeError("no surface")

        image = IndicatorRenderer(surface=surface).render_label("5m")

        assert image.size == (64, 64)
        assert image.getpixel((32, 32)) == ACCENT_RGB + (255,)

    def test_empty_bitmap_gives_placeholder(self):
        """Test an empty capture is treated as a failure."""
        surface = Mock()
        surface.capture.return_value = Image.new('RGBA', (0, 0))

        image = IndicatorRenderer(surface=surface).render_label("5m")

        assert image.size == (64, 64)

    def test_lock_released_after_failure(self):
        """Test a failed render does not leave the renderer busy."""
        surface = Mock()
        surface.capture.side_effect = RuntimeError("boom")
        renderer = IndicatorRenderer(surface=surface)

        renderer.render_label("5m")

        assert renderer._busy.acquire(blocking=False) is True
        renderer._busy.release()


class TestChipSurface:
    """Tests for the Pillow chip surface."""

    def test_background_and_corners(self):
        """Test the rounded accent chip."""
        image = ChipSurface().capture("12m", 128)

        assert image.size == (128, 128)
        assert image.getpixel((0, 0))[3] == 0
        assert image.getpixel((64, 2)) == ACCENT_RGB + (255,)

    def test_text_is_drawn(self):
        """Test the label changes pixels on the chip."""
        blank = ChipSurface().capture("", 128)
        labelled = ChipSurface().capture("8h", 128)

        assert blank.tobytes() != labelled.tobytes()
