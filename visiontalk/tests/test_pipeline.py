"""Integration tests for the full pipeline (mocked components)."""
import asyncio

import pytest

from core.errors import AnalysisFailure
from core.pipeline import APOLOGY_TEXT, CAPTURE_PROMPT_TEXT, WELCOME_TEXT
from core.state import DeviceSession, PipelineState
from llm.base import AnalysisResult

from conftest import FakeAnalyzer, FakeAudio, FakeClock, ScriptedCamera, attach, make_orchestrator


def is_subsequence(expected, stages):
    it = iter(stages)
    return all(stage in it for stage in expected)


class TestButtonPress:
    @pytest.mark.asyncio
    async def test_end_to_end_with_one_retry(self, fast_config, registry, recorder, audio_queue):
        audio = FakeAudio()
        camera = ScriptedCamera([("hang", 1.0), b"\xff\xd8mug"])
        attach(registry, camera=camera, audio=audio)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)

        accepted = await orch.handle_button_press("u1")

        assert accepted
        stages = recorder.stages()
        assert is_subsequence([
            "button_press_accepted",
            "capture_init",
            "capture_attempt_failed",
            "capture_attempt_ok",
            "photo_cached",
            "analysis_ok",
            "speech_start",
            "speech_done",
            "pipeline_complete",
        ], stages)

        events = recorder.snapshot()
        failed = next(e for e in events if e.stage == "capture_attempt_failed")
        ok = next(e for e in events if e.stage == "capture_attempt_ok")
        assert failed.detail["attempt"] == 1
        assert ok.detail["attempt"] == 2

        assert audio.spoken[0] == CAPTURE_PROMPT_TEXT
        assert audio.spoken[-1] == "It is a red mug."
        assert audio.played == [("chime.wav", 0.6)]

        session = registry.get("u1")
        assert not session.processing
        assert session.pipeline_state == PipelineState.IDLE
        assert session.latest_photo().data == b"\xff\xd8mug"
        assert session.analysis_by_request_id["req-2"].short_answer == "It is a red mug."
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_second_press_while_busy_is_dropped(self, fast_config, registry, recorder, audio_queue):
        camera = ScriptedCamera()
        attach(registry, camera=camera)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue,
                                 analyzer=FakeAnalyzer(delay=0.1))

        results = await asyncio.gather(orch.handle_button_press("u1"), orch.handle_button_press("u1"))

        assert sorted(results) == [False, True]
        assert camera.requests == 1
        assert recorder.stages().count("button_press_accepted") == 1
        assert "button_press_ignored" in recorder.stages()
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_press_accepted_again_after_run(self, fast_config, registry, recorder, audio_queue):
        camera = ScriptedCamera()
        attach(registry, camera=camera)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)

        assert await orch.handle_button_press("u1")
        assert await orch.handle_button_press("u1")
        assert camera.requests == 2
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_background_press(self, fast_config, registry, recorder, audio_queue):
        camera = ScriptedCamera()
        attach(registry, camera=camera)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue,
                                 analyzer=FakeAnalyzer(delay=0.05))

        assert orch.press_in_background("u1")
        assert not orch.press_in_background("u1")
        await asyncio.gather(*orch._background)

        assert camera.requests == 1
        assert not registry.get("u1").processing
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_long_press_is_ignored(self, fast_config, registry, recorder, audio_queue):
        camera = ScriptedCamera()
        attach(registry, camera=camera)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)

        assert not await orch.handle_button_press("u1", press_type="long")
        assert camera.requests == 0
        assert not registry.get("u1").processing

    @pytest.mark.asyncio
    async def test_users_do_not_block_each_other(self, fast_config, registry, recorder, audio_queue):
        attach(registry, "a")
        attach(registry, "b")
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue,
                                 analyzer=FakeAnalyzer(delay=0.05))

        results = await asyncio.gather(orch.handle_button_press("a"), orch.handle_button_press("b"))
        assert results == [True, True]
        await orch.shutdown()


class TestFailurePaths:
    @pytest.mark.asyncio
    async def test_capture_failure_apologizes_and_resets(self, fast_config, registry, recorder, audio_queue):
        audio = FakeAudio()
        attach(registry, camera=ScriptedCamera([PermissionError("camera permission denied")]), audio=audio)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)

        await orch.handle_button_press("u1")

        error = next(e for e in recorder.snapshot() if e.stage == "pipeline_error")
        assert error.detail["kind"] == "CapturePermissionDenied"
        assert error.detail["stage"] == "capturing"
        assert audio.spoken[-1] == APOLOGY_TEXT
        assert "tts_error_done" in recorder.stages()

        session = registry.get("u1")
        assert not session.processing
        assert session.pipeline_state == PipelineState.IDLE
        assert session.last_error
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_analysis_failure_apologizes(self, fast_config, registry, recorder, audio_queue):
        audio = FakeAudio()
        attach(registry, audio=audio)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue,
                                 analyzer=FakeAnalyzer(error=ValueError("bad response")))

        await orch.handle_button_press("u1")

        error = next(e for e in recorder.snapshot() if e.stage == "pipeline_error")
        assert error.detail["kind"] == "AnalysisFailure"
        assert error.detail["stage"] == "analyzing"
        assert audio.spoken[-1] == APOLOGY_TEXT
        # The photo is still cached
        assert registry.get("u1").latest_photo() is not None
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_failed_apology_is_swallowed(self, fast_config, registry, recorder, audio_queue):
        audio = FakeAudio(fail_on={APOLOGY_TEXT})
        attach(registry, audio=audio)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue,
                                 analyzer=FakeAnalyzer(error=AnalysisFailure("down")))

        assert await orch.handle_button_press("u1")

        assert "apology_failed" in recorder.stages()
        assert not registry.get("u1").processing
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_watchdog_ends_hung_run(self, fast_config, registry, recorder, audio_queue):
        fast_config.pipeline.run_timeout_s = 0.1
        audio = FakeAudio()
        attach(registry, audio=audio)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue,
                                 analyzer=FakeAnalyzer(delay=5.0))

        await asyncio.wait_for(orch.handle_button_press("u1"), timeout=2.0)

        error = next(e for e in recorder.snapshot() if e.stage == "pipeline_error")
        assert error.detail["kind"] == "TimeoutError"
        assert "watchdog" in error.error
        assert audio.spoken[-1] == APOLOGY_TEXT
        assert not registry.get("u1").processing
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_press_without_device_fails_cleanly(self, fast_config, registry, recorder, audio_queue):
        registry.ensure("u1")
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)

        assert await orch.handle_button_press("u1")
        assert "pipeline_error" in recorder.stages()
        assert "apology_failed" in recorder.stages()
        assert not registry.get("u1").processing


class TestSpeechSelection:
    def test_short_answer_preferred(self, fast_config, registry, recorder, audio_queue):
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)
        result = AnalysisResult(full_text="long explanation", short_answer="short")
        assert orch.select_speech_text(result) == "short"

    def test_long_short_answer_falls_back_to_full_text(self, fast_config, registry, recorder, audio_queue):
        fast_config.pipeline.short_answer_max_chars = 5
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)
        result = AnalysisResult(full_text="full text", short_answer="too long answer")
        assert orch.select_speech_text(result) == "full text"

    def test_empty_result_uses_fallback(self, fast_config, registry, recorder, audio_queue):
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)
        assert orch.select_speech_text(AnalysisResult(full_text="")) == "I took a picture."

    @pytest.mark.asyncio
    async def test_long_result_spoken_in_chunks(self, fast_config, registry, recorder, audio_queue):
        fast_config.audio.max_chunk_chars = 30
        fast_config.pipeline.capture_prompt = False
        audio = FakeAudio()
        attach(registry, audio=audio)
        text = "The mug is red. It sits on a wooden desk. There is a pen beside it."
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue,
                                 analyzer=FakeAnalyzer(result=AnalysisResult(full_text=text)))

        await orch.handle_button_press("u1")

        assert audio.spoken == ["The mug is red.", "It sits on a wooden desk.", "There is a pen beside it."]
        await orch.shutdown()


class TestCaptureOnly:
    @pytest.mark.asyncio
    async def test_capture_only_skips_analysis(self, fast_config, registry, recorder, audio_queue):
        fast_config.pipeline.capture_only = True
        audio = FakeAudio()
        analyzer = FakeAnalyzer()
        attach(registry, audio=audio)
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue, analyzer=analyzer)

        await orch.handle_button_press("u1")

        stages = recorder.stages()
        assert "capture_only_init" in stages
        assert "capture_only_complete" in stages
        assert "analysis_start" not in stages
        assert analyzer.calls == []
        assert CAPTURE_PROMPT_TEXT not in audio.spoken
        assert registry.get("u1").latest_photo() is not None
        await orch.shutdown()


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_welcome_played_once(self, fast_config, registry, recorder, audio_queue):
        clock = FakeClock()
        audio = FakeAudio()
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue, clock=clock)
        device = DeviceSession(camera=ScriptedCamera(), audio=audio)

        await orch.start_session("u1", device)
        clock.advance(5)
        await orch.start_session("u1", device)

        assert audio.spoken == [WELCOME_TEXT]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_inside_debounce_is_silent(self, fast_config, registry, recorder, audio_queue):
        clock = FakeClock()
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue, clock=clock)
        first, second, third = FakeAudio(), FakeAudio(), FakeAudio()

        await orch.start_session("u1", DeviceSession(camera=ScriptedCamera(), audio=first))
        await orch.end_session("u1")
        clock.advance(0.5)
        await orch.start_session("u1", DeviceSession(camera=ScriptedCamera(), audio=second))
        await orch.end_session("u1")
        clock.advance(2.0)
        await orch.start_session("u1", DeviceSession(camera=ScriptedCamera(), audio=third))

        assert first.spoken == [WELCOME_TEXT]
        assert second.spoken == []
        assert third.spoken == [WELCOME_TEXT]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_startup_chime_instead_of_welcome(self, fast_config, registry, recorder, audio_queue):
        fast_config.audio.startup_chime = True
        audio = FakeAudio()
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)

        session = await orch.start_session("u1", DeviceSession(camera=ScriptedCamera(), audio=audio))

        async def _flush():
            pass

        # Anything queued after the chime completes after it
        await audio_queue.enqueue(session.user_id, _flush)

        assert audio.spoken == []
        assert audio.played == [("chime.wav", 0.6)]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_end_session_releases_device(self, fast_config, registry, recorder, audio_queue):
        camera, audio = ScriptedCamera(), FakeAudio()
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)
        await orch.start_session("u1", DeviceSession(camera=camera, audio=audio))

        await orch.end_session("u1")

        session = registry.get("u1")
        assert session.device is None
        assert session.audio_lane is None
        assert camera.closed
        assert audio.stops == 1
        assert recorder.stages()[-1] == "session_end"
        assert registry.active_user_ids() == []

    @pytest.mark.asyncio
    async def test_end_session_during_speech_fails_the_run(self, fast_config, registry, recorder, audio_queue):
        fast_config.pipeline.capture_prompt = False
        fast_config.audio.chime_enabled = False
        attach(registry, audio=FakeAudio(delay=0.5))
        orch = make_orchestrator(fast_config, registry, recorder, audio_queue)

        run = asyncio.create_task(orch.handle_button_press("u1"))
        await asyncio.sleep(0.2)
        await orch.end_session("u1")
        accepted = await asyncio.wait_for(run, timeout=2.0)

        assert accepted is True
        assert not run.cancelled()
        error = next(e for e in recorder.snapshot() if e.stage == "pipeline_error")
        assert error.detail == {"stage": "speaking", "kind": "AudioLaneClosed"}
        assert "speech_error" in recorder.stages()
        # The device is gone, so the apology cannot be spoken
        assert "apology_failed" in recorder.stages()
        session = registry.get("u1")
        assert not session.processing
        assert session.pipeline_state == PipelineState.IDLE
