import base64
import io
import tempfile
import unittest
from pathlib import Path

from PIL import Image

from map_view import (
    VIEWER_CAPABILITIES,
    MapSnapshot,
    MapView,
    PilSurface,
    decode_image_data,
    encode_image_file,
)


def _png_data_url(size=(20, 10), color=(255, 0, 0, 255)):
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class MapViewTests(unittest.TestCase):
    def _view(self, width=100, height=80):
        self.events = []
        view = MapView(surface=PilSurface(width, height, background="#000000"))
        view.add_listener(lambda _v, what: self.events.append(what))
        return view

    def test_fresh_image_is_centred_and_drawn(self):
        view = self._view()
        view.set_grid_visible(False)
        self.assertTrue(view.load_image_data(_png_data_url()))

        self.assertEqual((view.transform.x, view.transform.y), (40.0, 35.0))
        self.assertEqual(view.surface.image.getpixel((50, 40))[:3], (255, 0, 0))
        self.assertEqual(view.surface.image.getpixel((5, 5))[:3], (0, 0, 0))
        self.assertIn("image", self.events)

    def test_render_is_idempotent(self):
        view = self._view()
        view.load_image_data(_png_data_url())
        view.set_rotation_degrees(30)
        view.set_scale_percent(150)
        first = view.surface.image.tobytes()
        view.render()
        view.render()
        self.assertEqual(view.surface.image.tobytes(), first)

    def test_undecodable_image_is_skipped_but_grid_still_draws(self):
        view = self._view()
        view.set_grid_color("#00ff00")
        view.set_grid_opacity(100)
        self.assertFalse(view.load_image_data("data:image/png;base64,not-really-an-image"))
        self.assertIsNone(view.image)
        self.assertIsNone(view.image_data)
        self.assertEqual(view.surface.image.getpixel((50, 10))[:3], (0, 255, 0))

    def test_invalid_control_values_keep_last_valid(self):
        view = self._view()
        view.set_grid_size(64)
        view.set_grid_size("abc")
        view.set_grid_size(-3)
        view.set_grid_opacity("x")
        view.set_grid_color("no such colour")
        view.set_grid_line_width(0)
        view.set_grid_offset_x("?")
        view.set_distance_square_size("far")
        view.set_distance_unit("parsecs")

        self.assertEqual(view.grid.size, 64)
        self.assertEqual(view.grid.opacity, 0.5)
        self.assertEqual(view.grid.color, "#ffffff")
        self.assertEqual(view.grid.line_width, 1)
        self.assertEqual(view.grid.offset_x, 0)
        self.assertEqual(view.distance.square_size, 5.0)
        self.assertEqual(view.distance.unit, "feet")
        self.assertIn("grid", self.events)
        self.assertIn("distance", self.events)

    def test_setters_update_state(self):
        view = self._view()
        view.set_grid_opacity(25)
        view.set_grid_offset_y(-7)
        view.set_grid_visible("off")
        view.set_distance_square_size("1.5")
        view.set_distance_unit("Meters")
        self.assertEqual(view.grid.opacity, 0.25)
        self.assertEqual(view.grid.offset_y, -7)
        self.assertFalse(view.grid.visible)
        self.assertEqual(view.distance.square_size, 1.5)
        self.assertEqual(view.distance.unit, "meters")

    def test_snapshot_round_trip_does_not_recentre(self):
        editor = self._view()
        editor.load_image_data(_png_data_url())
        editor.controller.pointer_down(0, 0)
        editor.controller.pointer_move(-13, 9)
        editor.controller.pointer_up()
        editor.set_grid_size(33)
        editor.set_distance_unit("miles")
        saved = editor.snapshot().to_dict()

        viewer = MapView(surface=PilSurface(300, 300), capabilities=VIEWER_CAPABILITIES, snapshot=saved)

        self.assertEqual(viewer.transform.x, 27.0)
        self.assertEqual(viewer.transform.y, 44.0)
        self.assertEqual(viewer.grid.size, 33)
        self.assertEqual(viewer.distance.unit, "miles")
        self.assertIsNotNone(viewer.image)
        self.assertEqual(viewer.snapshot().to_dict(), saved)

    def test_snapshot_merge_keeps_or_clears_image(self):
        view = self._view()
        view.load_image_data(_png_data_url())
        view.load_snapshot({"gridConfig": {"size": 20}})
        self.assertIsNotNone(view.image)
        self.assertEqual(view.grid.size, 20)

        view.load_snapshot({"imageData": None})
        self.assertIsNone(view.image)
        self.assertEqual(view.grid.size, 20)

    def test_reset_image_recentres(self):
        view = self._view()
        view.load_image_data(_png_data_url())
        view.controller.wheel(0, 0, -1)
        view.set_rotation_degrees(90)
        view.reset_image()
        self.assertEqual(view.transform.scale, 1.0)
        self.assertEqual(view.transform.rotation, 0.0)
        self.assertEqual((view.transform.x, view.transform.y), (40.0, 35.0))

    def test_listener_errors_do_not_break_rendering(self):
        view = self._view()

        def boom(_view, _what):
            raise RuntimeError("listener failure")

        view.add_listener(boom)
        with self.assertLogs("map_view", level="ERROR"):
            view.set_grid_size(10)
        self.assertEqual(view.grid.size, 10)
        view.remove_listener(boom)
        view.remove_listener(boom)

    def test_resize_updates_model_and_surface(self):
        view = self._view()
        view.resize(640, 480)
        self.assertEqual((view.model.canvas_width, view.model.canvas_height), (640, 480))
        self.assertEqual(view.surface.image.size, (640, 480))

    def test_drawn_image_is_bounded_by_the_surface(self):
        drawn = []

        class _RecordingSurface(PilSurface):
            def draw_image(self, image, origin):
                drawn.append((image.size, origin))
                super().draw_image(image, origin)

        view = MapView(surface=_RecordingSurface(80, 60, background="#000000"))
        view.load_image_data(_png_data_url((3000, 3000)))
        view.set_scale_percent(300)
        self.assertEqual(view.transform.scale, 3.0)
        self.assertTrue(drawn)
        self.assertTrue(all(size == (80, 60) and origin == (0, 0) for size, origin in drawn))
        self.assertEqual(view.surface.image.getpixel((40, 30))[:3], (255, 0, 0))

    def test_rotation_turns_the_image_about_its_centre(self):
        view = self._view()
        view.set_grid_visible(False)
        view.load_image_data(_png_data_url())
        view.set_rotation_degrees(90)
        self.assertEqual(view.surface.image.getpixel((50, 32))[:3], (255, 0, 0))
        self.assertEqual(view.surface.image.getpixel((35, 40))[:3], (0, 0, 0))

    def test_zoomed_out_view_samples_a_reduced_source(self):
        view = self._view()
        view.set_grid_visible(False)
        view.load_image_data(_png_data_url((200, 100)))
        view.set_scale_percent(20)
        self.assertAlmostEqual(view.transform.x, 30.0)
        self.assertAlmostEqual(view.transform.y, 30.0)
        self.assertEqual(view._reduced[0], 5)
        self.assertEqual(view.surface.image.getpixel((50, 40))[:3], (255, 0, 0))
        self.assertEqual(view.surface.image.getpixel((10, 10))[:3], (0, 0, 0))


class ImagePayloadTests(unittest.TestCase):
    def test_decode_accepts_data_url_and_bare_base64(self):
        url = _png_data_url((3, 4))
        self.assertEqual(decode_image_data(url).size, (3, 4))
        self.assertEqual(decode_image_data(url.split(",", 1)[1]).mode, "RGBA")
        self.assertIsNone(decode_image_data(None))
        self.assertIsNone(decode_image_data(""))

    def test_encode_image_file_uses_real_mime(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "map.jpg"
            Image.new("RGB", (8, 8), (0, 0, 255)).save(path, format="JPEG")
            url = encode_image_file(path)
        self.assertTrue(url.startswith("data:image/jpeg;base64,"))
        self.assertEqual(decode_image_data(url).size, (8, 8))

    def test_snapshot_dict_shape(self):
        self.assertEqual(
            set(MapSnapshot().to_dict()),
            {"imageData", "imageTransform", "gridConfig", "distanceConfig"},
        )


if __name__ == "__main__":
    unittest.main()
