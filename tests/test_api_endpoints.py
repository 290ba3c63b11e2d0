import unittest
from unittest.mock import patch

try:
    import app as app_module
    from balloon_data import FeedIngestionError
except ModuleNotFoundError:
    app_module = None
    FeedIngestionError = RuntimeError


class _FakeStore:
    enrich_enabled = False

    def __init__(self) -> None:
        self.data_calls = []

    def start_background_warm(self):
        return None

    def stop_background_warm(self):
        return None

    def get_health(self):
        return {"ok": True, "enrich_enabled": False, "cached": True, "cached_age_ms": 1200}

    def get_data(self, debug=False, skip_enrich=False):
        self.data_calls.append({"debug": debug, "skip_enrich": skip_enrich})
        payload = {
            "cached": False,
            "points": [{"id": "03-0", "ts": 1, "iso": "1970-01-01T00:00:00.001Z", "lat": 10.5, "lon": -20.3, "alt": 1500.0}],
        }
        if debug:
            payload["debug"] = {"files_ok": 24, "files_failed": 0}
            payload["enriched"] = False
        return payload


class _FailingStore(_FakeStore):
    def get_data(self, debug=False, skip_enrich=False):
        raise FeedIngestionError("All 24 bucket fetches failed")


class _BrokenStore(_FakeStore):
    def get_data(self, debug=False, skip_enrich=False):
        raise KeyError("points")


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def test_health_reports_store_state(self):
        with patch.object(app_module, "store", _FakeStore()):
            payload = app_module.health()
        self.assertEqual(payload["cached_age_ms"], 1200)
        self.assertTrue(payload["ok"])

    def test_data_parses_query_flags(self):
        fake_store = _FakeStore()
        with patch.object(app_module, "store", fake_store):
            payload = app_module.data(debug="1", noenrich="1")
        self.assertEqual(fake_store.data_calls[-1], {"debug": True, "skip_enrich": True})
        self.assertEqual(payload["debug"]["files_ok"], 24)
        self.assertEqual(payload["points"][0]["id"], "03-0")

    def test_data_defaults_to_cached_path(self):
        fake_store = _FakeStore()
        with patch.object(app_module, "store", fake_store):
            payload = app_module.data(debug="", noenrich="0")
        self.assertEqual(fake_store.data_calls[-1], {"debug": False, "skip_enrich": False})
        self.assertNotIn("debug", payload)

    def test_data_reports_total_failure_as_500(self):
        with patch.object(app_module, "store", _FailingStore()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.data(debug="", noenrich="")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertIn("bucket fetches failed", ctx.exception.detail)

    def test_data_reports_unexpected_error_as_500(self):
        with patch.object(app_module, "store", _BrokenStore()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.data(debug="", noenrich="")
        self.assertEqual(ctx.exception.status_code, 500)


if __name__ == "__main__":
    unittest.main()
