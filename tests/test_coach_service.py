import asyncio
import base64

import cv2
import numpy as np
import pytest

from livecoach.core.config import CoachConfig
from livecoach.core.errors import ModuleUnavailableError, PermanentServiceError
from livecoach.core.models import CoachEventType, CoachStatus, DetectedObject
from livecoach.processing.vision import ScriptedDetector
from livecoach.services.coach_service import LiveCoachService


async def wait_until(cond, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not cond():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def objs(*labels):
    return [DetectedObject(label=l) for l in labels]


def jpeg_b64():
    ok, buf = cv2.imencode(".jpg", np.zeros((16, 16, 3), dtype=np.uint8))
    assert ok
    return base64.b64encode(buf.tobytes()).decode("ascii")


@pytest.fixture
def build(fakes, modules, catalog, session_store, fast_coach, fast_pipeline):
    """Factory for a service wired to fakes. Returns (service, chat, synth, messages)."""
    def _build(module_id="sandwich-making", chat=None, synth=None, chat_fail=None,
               detector=None, feedback=None, store=None, coach=None):
        chat = chat or fakes.Chat()
        synth = synth or fakes.Synth()
        messages = []
        svc = LiveCoachService(
            session_id="s1",
            module_id=module_id,
            session_token="tok",
            modules=modules,
            catalog=catalog,
            chat_service=fakes.ChatService(chat, fail=chat_fail),
            synthesizer=synth,
            session_store=store or session_store,
            feedback_store=feedback,
            detector=detector,
            on_message=messages.append,
            coach=coach or fast_coach,
            pipeline=fast_pipeline,
        )
        return svc, chat, synth, messages
    return _build


def types_of(messages):
    return [m["type"] for m in messages]


class TestStartup:
    def test_start_reports_listening(self, build):
        svc, _, _, _ = build()

        async def scenario():
            info = await svc.start()
            await svc.stop()
            return info

        info = asyncio.run(scenario())
        assert info["session"]["status"] == "listening"
        assert info["session"]["score_percentage"] == 100
        assert info["policy"]["mode"] == "full"

    def test_unknown_module(self, build):
        svc, _, _, _ = build(module_id="nope")
        with pytest.raises(ModuleUnavailableError):
            asyncio.run(svc.start())

    def test_chat_failure_ends_session(self, build):
        svc, _, _, messages = build(chat_fail=PermanentServiceError("no key"))

        async def scenario():
            await svc.start()
            await wait_until(lambda: "session_stopped" in types_of(messages))

        asyncio.run(scenario())
        assert svc.status == CoachStatus.IDLE
        assert not svc.is_active
        assert "error" in types_of(messages)
        stopped = [m for m in messages if m["type"] == "session_stopped"][0]
        assert stopped["completed"] is False

    def test_resume_from_store(self, build, session_store):
        svc, _, _, _ = build()

        async def scenario():
            await session_store.put("sandwich-making", "tok", {"current_step_index": 2, "score": 80})
            info = await svc.start(vision_available=False)
            await svc.stop()
            return info

        info = asyncio.run(scenario())
        assert info["session"]["current_step_index"] == 2
        assert info["session"]["score"] == 80

    def test_vision_init_failure_degrades(self, build):
        svc, _, _, messages = build(detector=ScriptedDetector(fail_init=True))

        async def scenario():
            info = await svc.start()
            frame = await svc.handle_frame(jpeg_b64())
            await svc.stop()
            return info, frame

        info, frame = asyncio.run(scenario())
        assert info["session"]["status"] == "listening"
        assert info["policy"]["mode"] == "voice_only"
        assert frame is None
        assert "error" in types_of(messages)


class TestProactiveCoaching:
    def test_hint_after_missing_items(self, build, fakes, session_store):
        svc, chat, synth, messages = build(synth=fakes.Synth(hold=True))

        async def scenario():
            await svc.start()
            await svc.handle_detections(objs("cutting board"))
            await wait_until(lambda: synth.spoken)
            status, score = svc.status, svc.session.score
            await svc.stop()
            return status, score

        status, score = asyncio.run(scenario())
        assert status == CoachStatus.SPEAKING
        assert score == 95
        assert synth.spoken[0] == ("Look for the knife.", "coach")
        assert "This step requires: cutting board, knife." in chat.prompts[0]
        assert {"type": "score", "score": 95} in messages
        record = asyncio.run(session_store.get("sandwich-making", "tok"))
        assert record.score == 95
        assert [e.event_type for e in record.live_coach_events] == [CoachEventType.HINT]

    def test_auto_advance_when_items_in_view(self, build, session_store):
        svc, _, synth, messages = build()

        async def scenario():
            await svc.start()
            await svc.handle_detections(objs("cutting board", "knife"))
            await wait_until(lambda: "Step 2: Toast the Sourdough Bread." in synth.texts)
            await svc.stop()

        asyncio.run(scenario())
        assert ("Step 2: Toast the Sourdough Bread.", "system") in synth.spoken
        assert svc.session.current_step_index == 1
        record = asyncio.run(session_store.get("sandwich-making", "tok"))
        assert record.current_step_index == 1

    def test_branch_and_return(self, build, session_store):
        # long hint delay: no hint fires once back on the main module
        coach = CoachConfig(hint_delay=5.0, completion_delay=5.0, vision_poll_interval=0.01,
                            detection_stale_timeout=5.0)
        svc, _, synth, messages = build(coach=coach)

        async def scenario():
            await svc.start()
            await svc.handle_detections(objs("cutting board", "raw chicken"))
            await wait_until(lambda: any(t.startswith("Hold on.") for t in synth.texts))
            assert svc.session.is_branched
            assert svc.session.score == 85
            await svc.handle_detections(objs("soap"))
            for _ in range(4):
                await svc.advance_step()
            await wait_until(lambda: any(t.startswith("Great, Handwashing") for t in synth.texts))
            snapshot = svc.session
            await svc.stop()
            return snapshot

        session = asyncio.run(scenario())
        assert not session.is_branched
        assert session.active_module.slug == "sandwich-making"
        assert session.current_step_index == 0
        phases = [m["phase"] for m in messages if m["type"] == "branch"]
        assert phases == ["loading", "started", "ended"]
        record = asyncio.run(session_store.get("sandwich-making", "tok"))
        assert record.current_step_index == 0
        assert record.score == 85

    def test_frame_mode_detection(self, build):
        svc, _, synth, _ = build(detector=ScriptedDetector(("cutting board", "knife")))

        async def scenario():
            await svc.start()
            detected = await svc.handle_frame(jpeg_b64())
            await wait_until(lambda: svc.session.current_step_index == 1)
            await svc.stop()
            return detected

        detected = asyncio.run(scenario())
        assert [o.label for o in detected] == ["cutting board", "knife"]
        assert svc.telemetry.frames_detected == 1


class TestVoice:
    def test_query_answered(self, build, fakes, feedback_store):
        svc, chat, synth, messages = build(chat=fakes.Chat(replies=("About two millimetres.",)),
                                           feedback=feedback_store)

        async def scenario():
            await svc.start(vision_available=False)
            await svc.handle_transcript("hey adapt how", is_final=False)
            await svc.handle_transcript("Hey adapt, how thin should I slice?", is_final=True)
            await wait_until(lambda: synth.spoken)
            await svc.stop()

        asyncio.run(scenario())
        assert 'The user asked: "how thin should I slice?"' in chat.prompts[0]
        assert synth.spoken == [("About two millimetres.", "coach")]
        finals = [m for m in messages if m["type"] == "ai_text" and m["final"]]
        assert finals[0]["text"] == "About two millimetres."
        assert finals[0]["log_id"] is not None
        assert any(m["type"] == "ai_text" and not m["final"] for m in messages)
        assert svc.telemetry.transcripts_received == 2

    def test_status_sent_before_its_effects(self, build, fakes):
        svc, _, synth, messages = build(chat=fakes.Chat(replies=("Thin slices.",)))

        async def scenario():
            await svc.start(vision_available=False)
            await svc.handle_transcript("hey adapt how thin?")
            await wait_until(lambda: synth.spoken)
            await svc.stop()

        asyncio.run(scenario())
        order = [(m["type"], m.get("status", m.get("final"))) for m in messages
                 if m["type"] in ("status", "ai_text")]
        thinking = order.index(("status", "thinking"))
        speaking = order.index(("status", "speaking"))
        first_partial = order.index(("ai_text", False))
        final = order.index(("ai_text", True))
        assert thinking < first_partial
        assert speaking < final

    def test_done_advances(self, build):
        svc, _, synth, _ = build()

        async def scenario():
            await svc.start(vision_available=False)
            await svc.handle_transcript("Done.")
            await svc.stop()

        asyncio.run(scenario())
        assert svc.session.current_step_index == 1

    def test_pipeline_failure_speaks_fallback(self, build, fakes, fast_pipeline):
        chat = fakes.Chat(errors=(PermanentServiceError("bad request"),))
        svc, _, synth, messages = build(chat=chat)

        async def scenario():
            await svc.start(vision_available=False)
            await svc.handle_transcript("hey adapt what now")
            await wait_until(lambda: synth.spoken)
            await svc.stop()

        asyncio.run(scenario())
        assert synth.texts == [fast_pipeline.fallback_message]
        assert svc.telemetry.pipeline_failures == 1
        assert "error" in types_of(messages)


class TestCompletion:
    def test_last_step_completes_and_stops(self, build, session_store):
        svc, _, synth, messages = build()

        async def scenario():
            await session_store.put("sandwich-making", "tok", {"current_step_index": 5})
            await svc.start(vision_available=False)
            await svc.advance_step()
            await wait_until(lambda: "session_stopped" in types_of(messages))

        asyncio.run(scenario())
        assert synth.texts[-1] == "Well done, you've completed How to Make Our Signature Sandwich!"
        stopped = [m for m in messages if m["type"] == "session_stopped"][0]
        assert stopped["completed"] is True
        assert stopped["summary"]["is_completed"] is True
        record = asyncio.run(session_store.get("sandwich-making", "tok"))
        assert record.is_completed

    def test_wind_down_can_be_cancelled(self, build, fakes, session_store):
        svc, _, synth, messages = build(synth=fakes.Synth(hold=True))

        async def scenario():
            await session_store.put("sandwich-making", "tok", {"current_step_index": 5})
            await svc.start(vision_available=False)
            await svc.advance_step()
            await wait_until(lambda: synth.texts and synth.texts[-1].startswith("Well done"))
            task = svc._wind_down_task
            assert task is not None and not task.done()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            cancelled = task.cancelled()
            await svc.stop()
            return cancelled

        assert asyncio.run(scenario()) is True
        assert "session_stopped" not in types_of(messages)

    def test_stop_is_idempotent(self, build):
        svc, _, _, _ = build()

        async def scenario():
            await svc.start()
            first = await svc.stop()
            second = await svc.stop()
            return first, second

        first, second = asyncio.run(scenario())
        assert first["score"] == second["score"] == 100
