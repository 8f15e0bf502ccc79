import pytest

from livecoach.core.models import DetectedObject
from livecoach.processing.signals import CommandKind, DetectionFeed, VoiceCommandParser


def objs(*labels):
    return [DetectedObject(label=l) for l in labels]


class TestDetectionFeed:
    def test_latest_only(self):
        feed = DetectionFeed(stale_timeout=2.0)
        feed.push(objs("knife"), now=0.0)
        feed.push(objs("bread", "toaster"), now=0.5)
        assert [o.label for o in feed.latest(now=0.6)] == ["bread", "toaster"]
        assert feed.snapshots_received == 2

    def test_empty_snapshot_does_not_overwrite(self):
        feed = DetectionFeed(stale_timeout=2.0)
        feed.push(objs("knife"), now=0.0)
        feed.push([], now=0.5)
        assert [o.label for o in feed.latest(now=1.0)] == ["knife"]

    def test_stale_snapshot_cleared(self):
        feed = DetectionFeed(stale_timeout=2.0)
        feed.push(objs("knife"), now=0.0)
        feed.push([], now=1.5)
        assert feed.latest(now=2.5) == ()

    def test_unlabelled_objects_dropped(self):
        feed = DetectionFeed()
        feed.push([DetectedObject(label="")], now=0.0)
        assert feed.latest(now=0.1) == ()

    def test_clear(self):
        feed = DetectionFeed()
        feed.push(objs("knife"), now=0.0)
        feed.clear()
        assert feed.latest(now=0.0) == ()
        assert feed.last_seen == 0.0


class TestVoiceCommandParser:
    @pytest.fixture
    def parser(self):
        return VoiceCommandParser("hey adapt", ("done", "next", "next step", "i'm done"))

    def test_interim_ignored(self, parser):
        assert parser.parse("hey adapt what now", is_final=False) is None

    @pytest.mark.parametrize("text", ["Done", "next step.", "I'm done!", "hey adapt, next"])
    def test_advance_phrases(self, parser, text):
        assert parser.parse(text).kind == CommandKind.ADVANCE

    def test_query_keeps_original_casing(self, parser):
        cmd = parser.parse("Hey Adapt, how thin should I slice the Onion?")
        assert cmd.kind == CommandKind.QUERY
        assert cmd.text == "how thin should I slice the Onion?"

    def test_wake_phrase_alone(self, parser):
        assert parser.parse("hey adapt") is None

    def test_chatter_without_wake_phrase(self, parser):
        assert parser.parse("this knife is sharp") is None
        assert parser.parse("   ") is None

    def test_done_inside_sentence_is_not_advance(self, parser):
        assert parser.parse("I think I'm nearly done with this") is None


def test_detected_object_from_dict():
    o = DetectedObject.from_dict({"label": "knife", "score": "0.9", "box": [0.1, 0.2, 0.3, 0.4, 9]})
    assert o.label == "knife"
    assert o.score == pytest.approx(0.9)
    assert o.box == (0.1, 0.2, 0.3, 0.4)
    assert o.to_dict()["box"] == [0.1, 0.2, 0.3, 0.4]
