import asyncio
import base64
import json

import httpx
import pytest

from livecoach.core.config import SDKConfig
from livecoach.core.errors import (
    ModuleUnavailableError,
    PermanentServiceError,
    TransientServiceError,
    classify_status,
    parse_retry_after,
)
from livecoach.core.health import CoachMode, CoachPolicy
from livecoach.core.latency import LatencyTracer
from livecoach.services.gemini import GeminiChatHandle, GeminiChatService, translate_error
from livecoach.services.modules import InMemoryModuleRepository, load_modules
from livecoach.services.speech import (
    VOICE_MAP,
    ClientSpeechSynthesizer,
    ElevenLabsAudio,
    estimate_duration,
    voice_id_for,
)


class TestErrorTaxonomy:
    @pytest.mark.parametrize("code", [429, 500, 503])
    def test_transient_codes(self, code):
        assert isinstance(classify_status(code, "x"), TransientServiceError)

    @pytest.mark.parametrize("code", [400, 401, 404, None])
    def test_permanent_codes(self, code):
        assert isinstance(classify_status(code, "x"), PermanentServiceError)

    def test_retry_after(self):
        assert parse_retry_after("2.5") == 2.5
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        assert parse_retry_after(None) is None
        assert classify_status(429, "x", retry_after=4).retry_after == 4


class TestGemini:
    def test_transport_errors_are_transient(self):
        err = translate_error(httpx.ConnectError("refused"))
        assert isinstance(err, TransientServiceError)

    def test_unknown_errors_are_permanent(self):
        assert isinstance(translate_error(KeyError("x")), PermanentServiceError)

    def test_missing_key(self):
        service = GeminiChatService(SDKConfig(gemini_api_key=""))
        with pytest.raises(PermanentServiceError):
            asyncio.run(service.start_chat("Step 1: ..."))

    def test_handle_streams_chunk_text(self):
        class Chunk:
            def __init__(self, text):
                self.text = text

        class FakeChat:
            async def send_message_stream(self, prompt):
                async def gen():
                    for t in ("Hel", None, "lo"):
                        yield Chunk(t)
                return gen()

        async def collect():
            return [c async for c in GeminiChatHandle(FakeChat()).send("hi")]

        assert asyncio.run(collect()) == ["Hel", "lo"]


class TestElevenLabs:
    def _audio(self, handler, **kw):
        return ElevenLabsAudio(SDKConfig(elevenlabs_api_key="k"), transport=httpx.MockTransport(handler), **kw)

    def test_render_is_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            assert request.headers["xi-api-key"] == "k"
            return httpx.Response(200, headers={"content-type": "audio/mpeg"}, content=b"mp3")

        audio = self._audio(handler)

        async def scenario():
            a = await audio.render("Hello", VOICE_MAP["coach"])
            b = await audio.render("Hello", VOICE_MAP["coach"])
            return a, b

        assert asyncio.run(scenario()) == (b"mp3", b"mp3")
        assert len(calls) == 1
        assert json.loads(calls[0].content)["text"] == "Hello"

    def test_cache_evicts_oldest(self):
        audio = self._audio(
            lambda r: httpx.Response(200, headers={"content-type": "audio/mpeg"}, content=b"x"),
            max_cache=2,
        )

        async def scenario():
            for text in ("a", "b", "c"):
                await audio.render(text, "v")

        asyncio.run(scenario())
        assert audio.cache_size == 2

    def test_rate_limit_is_transient(self):
        audio = self._audio(lambda r: httpx.Response(429))
        with pytest.raises(TransientServiceError):
            asyncio.run(audio.render("Hello", "v"))

    def test_non_audio_rejected(self):
        audio = self._audio(lambda r: httpx.Response(200, json={"detail": "nope"}))
        with pytest.raises(ValueError):
            asyncio.run(audio.render("Hello", "v"))


class TestClientSpeech:
    def test_voice_lookup(self):
        assert voice_id_for("COACH") == VOICE_MAP["coach"]
        assert voice_id_for("unknown") == VOICE_MAP["default"]
        assert estimate_duration("") == 2.0

    def test_speak_waits_for_ack(self):
        sent = []

        async def send(msg):
            sent.append(msg)

        async def scenario():
            synth = ClientSpeechSynthesizer(send, duration_estimator=lambda t: 5.0)
            task = asyncio.create_task(synth.speak("Step 2: Toast.", "system"))
            while not sent:
                await asyncio.sleep(0)
            assert not task.done()
            synth.acknowledge(sent[0]["speech_id"])
            await asyncio.wait_for(task, 1.0)

        asyncio.run(scenario())
        assert sent[0]["type"] == "speak"
        assert sent[0]["voice_id"] == VOICE_MAP["system"]
        assert sent[0]["audio"] is None

    def test_speak_times_out_without_ack(self):
        async def send(msg):
            pass

        synth = ClientSpeechSynthesizer(send, duration_estimator=lambda t: 0.01)
        asyncio.run(asyncio.wait_for(synth.speak("Hi"), 1.0))

    def test_cancel_releases_and_notifies(self):
        sent = []

        async def send(msg):
            sent.append(msg)

        async def scenario():
            synth = ClientSpeechSynthesizer(send, duration_estimator=lambda t: 5.0)
            task = asyncio.create_task(synth.speak("Long answer"))
            while not sent:
                await asyncio.sleep(0)
            await synth.cancel()
            await asyncio.wait_for(task, 1.0)

        asyncio.run(scenario())
        assert [m["type"] for m in sent] == ["speak", "speech_cancel"]

    def test_audio_attached(self):
        sent = []

        async def send(msg):
            sent.append(msg)

        audio = ElevenLabsAudio(
            SDKConfig(elevenlabs_api_key="k"),
            transport=httpx.MockTransport(
                lambda r: httpx.Response(200, headers={"content-type": "audio/mpeg"}, content=b"mp3")
            ),
        )
        synth = ClientSpeechSynthesizer(send, audio=audio, duration_estimator=lambda t: 0.01)
        asyncio.run(synth.speak("Hi", "coach"))
        assert base64.b64decode(sent[0]["audio"]) == b"mp3"

    def test_audio_failure_falls_back_to_text(self):
        sent = []

        async def send(msg):
            sent.append(msg)

        audio = ElevenLabsAudio(
            SDKConfig(elevenlabs_api_key="k"),
            transport=httpx.MockTransport(lambda r: httpx.Response(500)),
        )
        synth = ClientSpeechSynthesizer(send, audio=audio, duration_estimator=lambda t: 0.01)
        asyncio.run(synth.speak("Hi", "coach"))
        assert sent[0]["audio"] is None
        assert sent[0]["text"] == "Hi"


class TestModules:
    def test_load_from_json(self, tmp_path):
        path = tmp_path / "modules.json"
        path.write_text(json.dumps([{
            "slug": "espresso",
            "title": "Pull a Shot",
            "steps": [{"title": "Grind"}, {"title": "Tamp", "description": "Level and firm."}],
        }]))
        repo = InMemoryModuleRepository(load_modules(path))
        module = asyncio.run(repo.get_module("espresso"))
        assert module.step_count == 2
        assert module.steps[1].description == "Level and firm."
        assert "Step 2: Tamp" in module.context()

    def test_missing_module(self, modules):
        with pytest.raises(ModuleUnavailableError):
            asyncio.run(modules.get_module("nope"))
        assert modules.slugs() == ["handwashing", "sandwich-making"]


class TestPolicy:
    def test_modes(self):
        policy = CoachPolicy(stale_timeout=2.0)
        assert policy.determine_mode() == CoachMode.UNAVAILABLE
        policy.report_chat_state(True)
        assert policy.determine_mode() == CoachMode.VOICE_ONLY
        policy.report_vision_state(True)
        assert policy.determine_mode() == CoachMode.FULL

    def test_detection_freshness(self):
        policy = CoachPolicy(stale_timeout=2.0)
        assert not policy.detections_fresh(now=10.0)
        policy.report_snapshot(True, timestamp=10.0)
        assert policy.detections_fresh(now=11.0)
        assert not policy.detections_fresh(now=12.5)


class TestLatency:
    def test_marks_once(self):
        tracer = LatencyTracer("s")
        tracer.mark("start_requested")
        first = tracer.trace.start_requested
        tracer.mark("start_requested")
        assert tracer.trace.start_requested == first
        assert "start_requested" in tracer.summary()

    def test_unknown_milestone(self):
        with pytest.raises(ValueError):
            LatencyTracer("s").mark("lunch")
