import io
import json
import queue
import tempfile
import unittest
import urllib.error
from pathlib import Path
from unittest import mock

import map_client
from map_client import ApiError, ClientIdentity, MapSync, MapWindow, RoomApiClient, ws_url_for
from map_view import EDITOR_CAPABILITIES, VIEWER_CAPABILITIES, MapSnapshot, MapView, PilSurface


class _Var:
    def __init__(self, value=""):
        self.value = value

    def get(self):
        return self.value

    def set(self, value):
        self.value = value


def _response(payload):
    resp = mock.MagicMock()
    resp.read.return_value = json.dumps(payload).encode("utf-8")
    resp.__enter__.return_value = resp
    return resp


class RoomApiClientTests(unittest.TestCase):
    def setUp(self):
        self.api = RoomApiClient("http://host:8787/")

    def test_post_sends_json_and_returns_payload(self):
        with mock.patch("map_client.urllib.request.urlopen", return_value=_response({"success": True, "room": {"code": "ABCD1234"}})) as urlopen:
            room = self.api.create_room("Dungeon", "pw")

        self.assertEqual(room, {"code": "ABCD1234"})
        req = urlopen.call_args[0][0]
        self.assertEqual(req.full_url, "http://host:8787/api/rooms")
        self.assertEqual(req.get_method(), "POST")
        self.assertEqual(json.loads(req.data), {"name": "Dungeon", "adminPassword": "pw"})
        self.assertEqual(req.get_header("Content-type"), "application/json")

    def test_room_code_is_upper_cased_in_paths(self):
        with mock.patch("map_client.urllib.request.urlopen", return_value=_response({"success": True, "map": None})) as urlopen:
            self.assertIsNone(self.api.get_active_map(" abcd1234 "))
        self.assertEqual(urlopen.call_args[0][0].full_url, "http://host:8787/api/rooms/ABCD1234/maps/active")

    def test_http_error_uses_server_message(self):
        err = urllib.error.HTTPError(
            "http://host:8787/api/rooms/X/maps", 403, "Forbidden", {}, io.BytesIO(b'{"success": false, "error": "Access denied."}')
        )
        with mock.patch("map_client.urllib.request.urlopen", side_effect=err):
            with self.assertRaises(ApiError) as ctx:
                self.api.create_map("X", "bad", "Map", {})
        self.assertEqual(str(ctx.exception), "Access denied.")
        self.assertEqual(ctx.exception.status, 403)

    def test_http_error_without_json_body(self):
        err = urllib.error.HTTPError("http://host:8787/api/rooms/X", 502, "Bad Gateway", {}, io.BytesIO(b"<html>"))
        with mock.patch("map_client.urllib.request.urlopen", side_effect=err):
            with self.assertRaises(ApiError) as ctx:
                self.api.get_room("X")
        self.assertEqual(str(ctx.exception), "HTTP 502")

    def test_unreachable_server(self):
        with mock.patch("map_client.urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with self.assertRaises(ApiError) as ctx:
                self.api.list_maps("X")
        self.assertIn("unreachable", str(ctx.exception))
        self.assertIsNone(ctx.exception.status)

    def test_ws_url_for(self):
        self.assertEqual(ws_url_for("http://host:8787"), "ws://host:8787/ws")
        self.assertEqual(ws_url_for("https://maps.example.org/rooms/"), "wss://maps.example.org/rooms/ws")


class _FakeApi:
    base_url = "http://host:8787"

    def __init__(self):
        self.calls = []
        self.active = None
        self.maps = []
        self.room = {"code": "ROOM0001", "image_data": None, "image_transform": None, "grid_config": None}
        self.fail = None

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail == name:
            raise ApiError("Access denied.", status=403)

    def get_active_map(self, room_code):
        self._call("get_active_map", room_code)
        return self.active

    def list_maps(self, room_code):
        self._call("list_maps", room_code)
        return self.maps

    def get_room(self, room_code):
        self._call("get_room", room_code)
        return self.room

    def create_map(self, room_code, admin_password, name, snapshot):
        self._call("create_map", room_code, admin_password, name, snapshot)
        return {"id": "new-map"}

    def update_map(self, room_code, map_id, admin_password, snapshot):
        self._call("update_map", room_code, map_id, admin_password, snapshot)
        return {"id": map_id}

    def activate_map(self, room_code, map_id, admin_password):
        self._call("activate_map", room_code, map_id, admin_password)
        return {"id": map_id, "isActive": True}


class _FakeListener:
    def __init__(self, url, join, events):
        self.url = url
        self.join = join
        self.events = events
        self.started = False
        self.notified = 0
        self.closed = False

    def start(self):
        self.started = True

    def notify_map_updated(self):
        self.notified += 1
        return True

    def close(self):
        self.closed = True


class MapSyncTests(unittest.TestCase):
    def setUp(self):
        self.api = _FakeApi()
        self.listeners = []

        def factory(url, join, events):
            listener = _FakeListener(url, join, events)
            self.listeners.append(listener)
            return listener

        self.sync = MapSync(self.api, listener_factory=factory)

    def test_load_prefers_active_map(self):
        self.api.active = {"id": "m1", "name": "One", "gridConfig": {"size": 30}, "imageTransform": {"x": 4}}
        snap = self.sync.load("room0001")
        self.assertEqual(self.sync.current_map_id, "m1")
        self.assertEqual(snap.grid.size, 30)
        self.assertEqual(snap.transform.x, 4)

    def test_load_falls_back_to_room_columns(self):
        self.api.room["grid_config"] = {"size": 25}
        self.sync.current_map_id = "stale"
        snap = self.sync.load("ROOM0001")
        self.assertIsNone(self.sync.current_map_id)
        self.assertEqual(snap.grid.size, 25)
        self.assertEqual([c[0] for c in self.api.calls], ["get_active_map", "get_room"])

    def test_load_specific_map_and_failures(self):
        self.api.maps = [{"id": "m1"}, {"id": "m2", "distanceConfig": {"unit": "miles"}}]
        self.assertEqual(self.sync.load("ROOM0001", "m2").distance.unit, "miles")
        self.assertIsNone(self.sync.load("ROOM0001", "missing"))
        self.api.fail = "get_active_map"
        with self.assertLogs("map_client", level="WARNING"):
            self.assertIsNone(self.sync.load("ROOM0001"))

    def test_save_creates_activates_and_notifies(self):
        self.sync.connect("room0001", "admin", user_name="GM")
        listener = self.listeners[0]
        self.assertTrue(listener.started)
        self.assertEqual(listener.url, "ws://host:8787/ws")
        self.assertEqual(listener.join["roomCode"], "ROOM0001")

        ok, message = self.sync.save("ROOM0001", None, MapSnapshot(), "pw", name="Cave")
        self.assertTrue(ok, message)
        self.assertEqual([c[0] for c in self.api.calls], ["create_map", "activate_map"])
        created = self.api.calls[0]
        self.assertEqual(created[3], "Cave")
        self.assertNotIn("imageData", created[4])
        self.assertEqual(self.sync.current_map_id, "new-map")
        self.assertEqual(listener.notified, 1)

        ok, _ = self.sync.save("ROOM0001", "new-map", MapSnapshot(image_data="data:image/png;base64,AA=="), "pw")
        self.assertTrue(ok)
        self.assertEqual(self.api.calls[2][0], "update_map")
        self.assertEqual(self.api.calls[2][4]["imageData"], "data:image/png;base64,AA==")

        self.sync.disconnect()
        self.assertTrue(listener.closed)

    def test_save_failure_reports_message(self):
        self.api.fail = "activate_map"
        with self.assertLogs("map_client", level="WARNING"):
            ok, message = self.sync.save("ROOM0001", "m1", MapSnapshot(), "pw")
        self.assertFalse(ok)
        self.assertEqual(message, "Access denied.")

    def test_pump_dispatches_queued_events(self):
        self.sync.connect("ROOM0001", "player")
        changes = []
        users = []
        self.sync.on_remote_change("room0001", lambda: changes.append(1))
        self.sync.on_remote_change("OTHER", lambda: changes.append(2))
        self.sync.on_users_updated(users.append)

        self.sync.events.put({"type": "map_changed"})
        self.sync.events.put({"type": "users_updated", "total": 1})
        self.sync.events.put({"type": "pong"})
        self.assertEqual(self.sync.pump(), 3)
        self.assertEqual(changes, [1])
        self.assertEqual(users, [{"type": "users_updated", "total": 1}])
        self.assertEqual(self.sync.pump(), 0)

    def test_failing_callback_is_logged(self):
        self.sync.connect("ROOM0001", "player")

        def boom():
            raise RuntimeError("boom")

        self.sync.on_remote_change("ROOM0001", boom)
        self.sync.events.put({"type": "map_changed"})
        with self.assertLogs("map_client", level="ERROR"):
            self.sync.pump()


class RemoteChangeListenerTests(unittest.TestCase):
    def test_connection_failure_is_queued(self):
        events = queue.Queue()
        listener = map_client.RemoteChangeListener("ws://127.0.0.1:1/ws", {"roomCode": "R"}, events)
        self.assertEqual(listener.join["type"], "join_room")
        with mock.patch("map_client.ws_connect", side_effect=OSError("refused")):
            with self.assertLogs("map_client", level="WARNING"):
                listener._run()
        self.assertEqual(events.get_nowait()["type"], "presence_error")
        self.assertFalse(listener.send({"type": "ping"}))


class ClientIdentityTests(unittest.TestCase):
    def test_identity_is_created_and_persisted(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "identity.json"
            first = ClientIdentity(path)
            self.assertTrue(first.user_hash)
            first.set_player_name("Alice")

            again = ClientIdentity(path)
            self.assertEqual(again.user_hash, first.user_hash)
            self.assertEqual(again.player_name, "Alice")

    def test_corrupt_file_gets_new_hash(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "identity.json"
            path.write_text("[1, 2", encoding="utf-8")
            ident = ClientIdentity(path)
            self.assertTrue(ident.user_hash)
            self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["user_hash"], ident.user_hash)


class BlendTests(unittest.TestCase):
    def test_blend(self):
        self.assertEqual(map_client._blend("#ffffff", "#000000", 1.0), "#ffffff")
        self.assertEqual(map_client._blend("#ffffff", "#000000", 0.0), "#000000")
        self.assertEqual(map_client._blend("#ff0000", "#000000", 0.5), "#800000")
        self.assertEqual(map_client._blend("junk", "#000000", 2), "#ffffff")


class MapWindowLogicTests(unittest.TestCase):
    def _window(self, capabilities):
        win = object.__new__(MapWindow)
        win.capabilities = capabilities
        win.room_code = "ROOM0001"
        win.admin_password = None
        win.view = MapView(surface=PilSurface(200, 100), capabilities=capabilities)
        for name in (
            "scale_var", "rotation_var", "grid_size_var", "grid_opacity_var", "grid_color_var",
            "grid_line_width_var", "grid_visible_var", "grid_offset_x_var", "grid_offset_y_var",
            "square_size_var", "unit_var", "status_var", "users_var",
        ):
            setattr(win, name, _Var())
        win.map_name_var = _Var("Main Map")
        win.sync = mock.Mock()
        return win

    def test_sync_controls_projects_view_state(self):
        win = self._window(EDITOR_CAPABILITIES)
        win.view.set_scale_percent(150)
        win.view.set_grid_opacity(30)
        win.view.set_distance_unit("meters")
        win._sync_controls()
        self.assertEqual(win.scale_var.get(), "150")
        self.assertEqual(win.grid_opacity_var.get(), "30")
        self.assertEqual(win.unit_var.get(), "meters")
        self.assertEqual(win.square_size_var.get(), "5")
        self.assertIs(win.grid_visible_var.get(), True)

    def test_apply_control_routes_through_view(self):
        win = self._window(EDITOR_CAPABILITIES)
        win.grid_size_var.set("abc")
        win._apply_control(win.view.set_grid_size, win.grid_size_var)
        self.assertEqual(win.grid_size_var.get(), "50")
        win.grid_size_var.set("64")
        win._apply_control(win.view.set_grid_size, win.grid_size_var)
        self.assertEqual(win.view.grid.size, 64)

    def test_users_updated_lists_admins_and_players(self):
        win = self._window(VIEWER_CAPABILITIES)
        win._on_users_updated(
            {"admins": ["GM"], "players": [{"name": "Alice", "characterName": "Lyra"}, {"name": "Bob", "characterName": None}], "total": 3}
        )
        self.assertEqual(win.users_var.get(), "Admin: GM\nAlice (Lyra)\nBob\nTotal: 3")

    def test_remote_change_reloads_viewer_only(self):
        editor = self._window(EDITOR_CAPABILITIES)
        editor._handle_remote_change()
        editor.sync.load.assert_not_called()
        self.assertIn("Another session", editor.status_var.get())

        viewer = self._window(VIEWER_CAPABILITIES)
        viewer.sync.load.return_value = MapSnapshot.from_dict({"gridConfig": {"size": 33}})
        viewer._handle_remote_change()
        viewer.sync.load.assert_called_once_with("ROOM0001")
        self.assertEqual(viewer.view.grid.size, 33)
        self.assertEqual(viewer.status_var.get(), "Map updated.")

    def test_save_needs_admin_password(self):
        win = self._window(EDITOR_CAPABILITIES)
        win._save()
        win.sync.save.assert_not_called()
        self.assertIn("password", win.status_var.get())

        win.admin_password = "pw"
        win.sync.current_map_id = "m1"
        win.sync.save.return_value = (True, "Map saved.")
        win._save()
        args, kwargs = win.sync.save.call_args
        self.assertEqual(args[:2], ("ROOM0001", "m1"))
        self.assertEqual(args[3], "pw")
        self.assertEqual(kwargs["name"], "Main Map")
        self.assertEqual(win.status_var.get(), "Map saved.")


class ClientArgParserTests(unittest.TestCase):
    def test_parser(self):
        args = map_client.build_arg_parser().parse_args(["--room", "abc", "--viewer", "--admin-password", "pw"])
        self.assertEqual(args.room, "abc")
        self.assertTrue(args.viewer)
        self.assertEqual(args.server, map_client.DEFAULT_SERVER)

    def test_main_reports_unreachable_server(self):
        with mock.patch.object(RoomApiClient, "verify_admin", side_effect=ApiError("Server unreachable: refused")):
            with self.assertLogs("map_client", level="ERROR"):
                self.assertEqual(map_client.main(["--room", "ABC", "--admin-password", "pw"]), 1)


if __name__ == "__main__":
    unittest.main()
