import unittest
from fastapi.testclient import TestClient
from bookjack import server
from bookjack.config import settings
from bookjack.errors import DecodeError
from bookjack.session import PlaybackSession
from fakes import FakeAudioEngine, FakeStore, RecordingNowPlaying, make_book

class TestServer(unittest.TestCase):
    def setUp(self):
        settings.POLL_INTERVAL_SECONDS = 60
        settings.SLEEP_TIMER_TICK_SECONDS = 1.0
        settings.AUTOPLAY_ON_LOAD = True
        settings.HTTP_SERVER_TOKEN = None
        self.engine = FakeAudioEngine()
        self.book = make_book()
        self.store = FakeStore([self.book])
        self.now_playing = RecordingNowPlaying()
        server.session = PlaybackSession(self.engine, self.store, self.now_playing)

    def tearDown(self):
        server.session = None
        settings.HTTP_SERVER_TOKEN = None

    def load(self, client):
        resp = client.post("/load", json={"item_id": "book-1"})
        self.assertEqual(resp.status_code, 200)
        return resp.json()

    def test_healthz_before_start(self):
        server.session = None
        with TestClient(server.app) as client:
            self.assertEqual(client.get("/healthz").json(), {"status": "starting"})
            self.assertEqual(client.get("/status").status_code, 503)

    def test_idle_status_and_empty_commands(self):
        with TestClient(server.app) as client:
            self.assertEqual(client.get("/status").json()["status"], "idle")
            self.assertEqual(client.post("/commands/play").status_code, 409)
            self.assertEqual(client.post("/commands/seek", json={"position": 10}).status_code, 409)
            self.assertEqual(client.get("/now-playing").status_code, 404)
            self.assertEqual(client.post("/commands/pause").status_code, 200)

    def test_load_and_transport(self):
        with TestClient(server.app) as client:
            snap = self.load(client)
            self.assertEqual(snap["status"], "playing")
            self.assertEqual(snap["chapter_title"], "Ch1")

            snap = client.post("/commands/seek", json={"position": 1000}).json()
            self.assertEqual(snap["current_time"], 1000)

            snap = client.post("/commands/skip-backward", json={"seconds": 10}).json()
            self.assertEqual(snap["current_time"], 990)

            snap = client.post("/commands/skip-forward").json()
            self.assertEqual(snap["current_time"], 1020)

            snap = client.post("/commands/toggle").json()
            self.assertEqual(snap["status"], "paused")

            info = client.get("/now-playing").json()
            self.assertEqual(info["title"], "The Long Way")
            self.assertEqual(info["playback_rate"], 0.0)

    def test_load_unknown_and_broken_items(self):
        with TestClient(server.app) as client:
            self.assertEqual(client.post("/load", json={"item_id": "nope"}).status_code, 404)
            self.engine.load_error = DecodeError("garbage")
            self.assertEqual(client.post("/load", json={"item_id": "book-1"}).status_code, 422)
            self.assertEqual(client.get("/status").json()["status"], "idle")

    def test_engine_failure_on_play_is_bad_gateway(self):
        self.engine.play_error = DecodeError("no output device")
        with TestClient(server.app) as client:
            resp = client.post("/load", json={"item_id": "book-1"})
            self.assertEqual(resp.status_code, 502)
            self.assertIn("no output device", resp.json()["detail"])

            self.assertEqual(client.post("/commands/play").status_code, 502)
            self.assertEqual(client.post("/commands/toggle").status_code, 502)

            snap = client.get("/status").json()
            self.assertEqual(snap["status"], "paused")
            self.assertEqual(snap["last_error"], "no output device")
            self.assertEqual(client.get("/healthz").json()["status"], "degraded")

            self.engine.play_error = None
            self.assertEqual(client.post("/commands/play").json()["status"], "playing")

    def test_interruption_resume_failure_reports_error(self):
        with TestClient(server.app) as client:
            self.load(client)
            client.post("/interruption", json={"kind": "began"})
            self.engine.play_error = DecodeError("device lost")
            resp = client.post("/interruption", json={"kind": "ended", "should_resume": True})
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json()["status"], "paused")
            self.assertEqual(resp.json()["last_error"], "device lost")

    def test_rate_volume_and_chapters(self):
        with TestClient(server.app) as client:
            self.load(client)
            self.assertEqual(client.post("/commands/rate", json={"rate": 5}).json()["playback_rate"], 3.0)

            client.post("/commands/volume", json={"volume": 0.5})
            snap = client.post("/commands/volume-boost").json()
            self.assertEqual(snap["effective_volume"], 1.0)

            snap = client.post("/chapters/1/jump").json()
            self.assertEqual(snap["current_time"], 1800)
            self.assertEqual(snap["chapter_title"], "Ch2")
            self.assertEqual(client.post("/chapters/5/jump").status_code, 404)

    def test_sleep_timer_endpoints(self):
        with TestClient(server.app) as client:
            self.assertEqual(client.post("/sleep-timer/end-of-chapter").status_code, 409)
            self.load(client)
            client.post("/commands/seek", json={"position": 1000})

            snap = client.post("/sleep-timer/end-of-chapter").json()
            self.assertEqual(snap["sleep_timer_remaining"], 800)

            snap = client.post("/sleep-timer", json={"duration": 900}).json()
            self.assertEqual(snap["sleep_timer_remaining"], 900)
            self.assertEqual(client.post("/sleep-timer", json={"duration": 0}).status_code, 422)

            snap = client.delete("/sleep-timer").json()
            self.assertEqual(snap["sleep_timer_remaining"], 0)

    def test_interruption_endpoint(self):
        with TestClient(server.app) as client:
            self.load(client)
            snap = client.post("/interruption", json={"kind": "began"}).json()
            self.assertEqual(snap["status"], "paused")
            snap = client.post("/interruption", json={"kind": "ended", "should_resume": True}).json()
            self.assertEqual(snap["status"], "playing")

    def test_stop_and_metrics(self):
        with TestClient(server.app) as client:
            self.load(client)
            self.assertIn("bookjack_playing 1", client.get("/metrics").text)
            snap = client.post("/commands/stop").json()
            self.assertEqual(snap["status"], "paused")
            self.assertIn("bookjack_playing 0", client.get("/metrics").text)

    def test_token_required_when_configured(self):
        settings.HTTP_SERVER_TOKEN = "secret"
        with TestClient(server.app) as client:
            self.assertEqual(client.get("/status").status_code, 401)
            self.assertEqual(client.get("/status", headers={"X-Token": "secret"}).status_code, 200)
            self.assertEqual(client.get("/healthz").status_code, 200)

if __name__ == '__main__':
    unittest.main()
