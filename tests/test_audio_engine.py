import os
import tempfile
import unittest
from types import SimpleNamespace
from bookjack.clients.audio_engine import VlcAudioEngine
from bookjack.errors import DecodeError
from bookjack.models import EngineEventKind

class FakeMedia:
    def __init__(self, path, duration_ms):
        self.path = path
        self.duration_ms = duration_ms
        self.released = False

    def parse(self):
        pass

    def get_duration(self):
        return self.duration_ms

    def release(self):
        self.released = True

class FakeEventManager:
    def __init__(self):
        self.callbacks = {}

    def event_attach(self, kind, callback):
        self.callbacks[kind] = callback

class FakePlayer:
    def __init__(self):
        self.media = None
        self.time_ms = 0
        self.playing = False
        self.rate = 1.0
        self.volume = 100
        self.events = FakeEventManager()

    def event_manager(self):
        return self.events

    def set_media(self, media):
        self.media = media

    def play(self):
        self.playing = True
        return 0

    def stop(self):
        self.playing = False
        self.time_ms = 0

    def set_pause(self, on):
        self.playing = not on

    def set_rate(self, rate):
        self.rate = rate

    def audio_set_volume(self, volume):
        self.volume = volume

    def set_time(self, ms):
        self.time_ms = ms

    def get_time(self):
        return self.time_ms

    def is_playing(self):
        return int(self.playing)

    def release(self):
        pass

class FakeInstance:
    durations = {}

    def __init__(self, args):
        self.args = args
        self.player = FakePlayer()

    def media_player_new(self):
        return self.player

    def media_new(self, path):
        return FakeMedia(path, self.durations.get(path, 0))

    def release(self):
        pass

fake_vlc = SimpleNamespace(
    Instance=FakeInstance,
    EventType=SimpleNamespace(MediaPlayerEndReached="end", MediaPlayerEncounteredError="error"),
)

class TestVlcAudioEngine(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.good = os.path.join(self.tmp.name, "book.m4b")
        self.bad = os.path.join(self.tmp.name, "notes.txt")
        for path in (self.good, self.bad):
            with open(path, "wb") as f:
                f.write(b"\0")
        FakeInstance.durations = {os.path.abspath(self.good): 3_600_000}
        self.engine = VlcAudioEngine(vlc_module=fake_vlc, platform_name="linux")

    def tearDown(self):
        self.tmp.cleanup()

    def test_load_reports_duration(self):
        self.assertEqual(self.engine.load(self.good), 3600.0)
        self.assertIn("--no-xlib", self.engine.instance.args)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            self.engine.load(os.path.join(self.tmp.name, "gone.m4b"))

    def test_undecodable_file_keeps_previous_media(self):
        self.engine.load(self.good)
        previous = self.engine.media
        with self.assertRaises(DecodeError):
            self.engine.load(self.bad)
        self.assertIs(self.engine.media, previous)
        self.assertIs(self.engine.player.media, previous)

    def test_seek_before_play_is_applied_on_start(self):
        self.engine.load(self.good)
        self.engine.set_current_time(120.5)
        self.assertEqual(self.engine.get_current_time(), 120.5)
        self.assertEqual(self.engine.player.time_ms, 0)

        self.engine.play(1.5, 0.8)
        self.assertEqual(self.engine.player.time_ms, 120500)
        self.assertEqual(self.engine.player.rate, 1.5)
        self.assertEqual(self.engine.player.volume, 80)
        self.assertTrue(self.engine.is_playing())

    def test_stop_remembers_position(self):
        self.engine.load(self.good)
        self.engine.play(1.0, 1.0)
        self.engine.set_current_time(42)
        self.engine.stop()
        self.assertEqual(self.engine.get_current_time(), 42)

    def test_play_without_media(self):
        with self.assertRaises(DecodeError):
            self.engine.play(1.0, 1.0)

    def test_events_are_forwarded(self):
        events = []
        self.engine.set_event_handler(events.append)
        callbacks = self.engine.player.events.callbacks
        callbacks["end"](None)
        callbacks["error"](None)
        self.assertEqual([e.kind for e in events], [EngineEventKind.FINISHED, EngineEventKind.DECODE_ERROR])
        self.assertTrue(events[0].success)

if __name__ == '__main__':
    unittest.main()
