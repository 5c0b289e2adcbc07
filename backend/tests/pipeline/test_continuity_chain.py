"""
Tests for SegmentContinuityChain

Tests cover:
- Anchoring each segment's first frame on the previous last frame
- CTA segments running unanchored
- Per-segment failure isolation
- Preview mode
- Video and voice rendering
"""

import pytest

from models import AssetSource, KeyframeContext, SegmentResult, SegmentStatus
from pipeline.error_handler import ProviderFailureError
from tests.fakes import failed, labelled, make_segment, make_storyboard, running, succeeded


def _uri(segment_index, frame):
    return f"https://cdn.test/seg{segment_index}-{frame}.png"


def _script_frames(gateway, count):
    """Give every base keyframe a recognisable URI and skip enhancement."""
    for i in range(count):
        for frame in ("first", "last"):
            gateway.on(labelled(stage="keyframe", segment_index=i, frame=frame), [succeeded(_uri(i, frame))])


class TestKeyframeChaining:

    @pytest.mark.asyncio
    async def test_first_frame_references_previous_last_frame(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook", "body", "body"))
        _script_frames(gateway, 3)

        results = await continuity_chain.generate_keyframes(storyboard, enhance=False)

        assert all(r.status == SegmentStatus.GENERATING for r in results)
        for i in (1, 2):
            [first] = gateway.submitted(stage="keyframe", segment_index=i, frame="first")
            assert first.references[-1] == results[i - 1].last_frame.image_uri == _uri(i - 1, "last")
            assert "CRITICAL VISUAL CONTINUITY" in first.prompt

    @pytest.mark.asyncio
    async def test_hook_first_frame_has_no_anchor(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook", "body"))

        await continuity_chain.generate_keyframes(storyboard, enhance=False)

        [hook_first] = gateway.submitted(stage="keyframe", segment_index=0, frame="first")
        assert hook_first.references == ["https://cdn.test/product.png"]

    @pytest.mark.asyncio
    async def test_last_frame_references_first_frame(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook",))
        _script_frames(gateway, 1)

        await continuity_chain.generate_keyframes(storyboard, enhance=False)

        [last] = gateway.submitted(stage="keyframe", segment_index=0, frame="last")
        assert last.references[-1] == _uri(0, "first")

    @pytest.mark.asyncio
    async def test_enhanced_frame_is_the_anchor(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook", "body"))
        gateway.on(labelled(stage="enhancement", segment_index=0, frame="last"), [succeeded("https://cdn.test/hook-hd.png")])

        results = await continuity_chain.generate_keyframes(storyboard)

        assert results[0].last_frame.source == AssetSource.ENHANCED
        [body_first] = gateway.submitted(stage="keyframe", segment_index=1, frame="first")
        assert body_first.references[-1] == "https://cdn.test/hook-hd.png"

    @pytest.mark.asyncio
    async def test_cta_is_not_anchored(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook", "body", "cta"))
        _script_frames(gateway, 3)

        results = await continuity_chain.generate_keyframes(storyboard, enhance=False)

        [cta_first] = gateway.submitted(stage="keyframe", segment_index=2, frame="first")
        assert cta_first.references == ["https://cdn.test/product.png"]
        assert "call-to-action" in cta_first.prompt
        assert results[2].first_frame.image_uri == _uri(2, "first")

    @pytest.mark.asyncio
    async def test_reference_list_is_capped(self, gateway, continuity_chain):
        images = [f"https://cdn.test/p{i}.png" for i in range(15)]
        storyboard = make_storyboard(("hook", "body"), product_images=images)

        await continuity_chain.generate_keyframes(storyboard, enhance=False)

        [body_first] = gateway.submitted(stage="keyframe", segment_index=1, frame="first")
        assert len(body_first.references) == continuity_chain.max_references
        assert body_first.references[-1].startswith("https://cdn.test/pred-")


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_failed_segment_does_not_stop_chain(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook", "body", "body"))
        gateway.on(labelled(stage="keyframe", segment_index=1, frame="first"), [failed("bad prompt")])

        results = await continuity_chain.generate_keyframes(storyboard, enhance=False)

        assert results[1].status == SegmentStatus.FAILED
        assert "bad prompt" in results[1].error
        assert results[2].status == SegmentStatus.GENERATING
        # segment 2 runs unanchored since segment 1 has no last frame
        [third_first] = gateway.submitted(stage="keyframe", segment_index=2, frame="first")
        assert third_first.references == ["https://cdn.test/product.png"]

    @pytest.mark.asyncio
    async def test_on_segment_called_for_every_segment(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook", "body", "cta"))
        gateway.on(labelled(stage="keyframe", segment_index=1, frame="last"), [running()])
        seen = []

        async def on_segment(result: SegmentResult):
            seen.append((result.index, result.status))

        await continuity_chain.generate_keyframes(storyboard, on_segment=on_segment, enhance=False)

        assert sorted(index for index, _ in seen) == [0, 1, 2]
        assert (1, SegmentStatus.FAILED) in seen


class TestPreviewMode:

    @pytest.mark.asyncio
    async def test_preview_generates_hook_only(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook", "body", "cta"), mode="preview")

        results = await continuity_chain.generate_keyframes(storyboard, enhance=False)

        assert {r.labels["segment_index"] for r in gateway.requests} == {0}
        assert results[0].first_frame is not None
        assert results[1].status == SegmentStatus.PENDING
        assert results[2].status == SegmentStatus.PENDING


class TestSingleSegment:

    @pytest.mark.asyncio
    async def test_supplied_frames_are_not_regenerated(self, gateway, continuity_chain):
        segment = make_segment(
            "body",
            first_frame_image="https://cdn.test/given-first.png",
            last_frame_image="https://cdn.test/given-last.png",
        )

        frames = await continuity_chain.generate_segment_keyframes(segment, KeyframeContext())

        assert frames.first.source == AssetSource.SUPPLIED
        assert frames.last.image_uri == "https://cdn.test/given-last.png"
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_base_failure_raises(self, gateway, continuity_chain):
        gateway.on(labelled(stage="keyframe"), [failed("nsfw")])

        with pytest.raises(ProviderFailureError):
            await continuity_chain.generate_segment_keyframes(make_segment("hook"), KeyframeContext())


class TestRendering:

    @pytest.mark.asyncio
    async def test_render_segment_video_and_voice(self, gateway, continuity_chain, cost_tracker):
        storyboard = make_storyboard(("hook",))
        storyboard.segments[0].audio_notes = "Voiceover: Never get caught in the rain."
        _script_frames(gateway, 1)
        gateway.on(labelled(stage="video"), [running(), succeeded("https://cdn.test/seg0.mp4")])
        gateway.on(labelled(stage="voice"), [succeeded("https://cdn.test/seg0.mp3")])

        results = await continuity_chain.generate_keyframes(storyboard, enhance=False)
        await continuity_chain.render_segments(storyboard, results)

        result = results[0]
        assert result.status == SegmentStatus.COMPLETED
        assert result.video_url == "https://cdn.test/seg0.mp4"
        assert result.voice_url == "https://cdn.test/seg0.mp3"
        assert result.attempts == 1
        [video] = gateway.submitted(stage="video")
        assert video.references == [_uri(0, "first"), _uri(0, "last")]
        [voice] = gateway.submitted(stage="voice")
        assert voice.prompt == "Never get caught in the rain."
        assert cost_tracker.counts["video_segment"] == 1
        assert cost_tracker.counts["voiceover"] == 1

    @pytest.mark.asyncio
    async def test_no_voice_without_audio_notes(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook",))

        results = await continuity_chain.generate_keyframes(storyboard, enhance=False)
        await continuity_chain.render_segments(storyboard, results)

        assert results[0].status == SegmentStatus.COMPLETED
        assert results[0].voice_url is None
        assert gateway.submitted(stage="voice") == []

    @pytest.mark.asyncio
    async def test_video_failure_marks_segment_failed(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook", "body"))
        gateway.on(labelled(stage="video", segment_index=1), [failed("video model crashed")])

        results = await continuity_chain.generate_keyframes(storyboard, enhance=False)
        await continuity_chain.render_segments(storyboard, results)

        assert results[0].status == SegmentStatus.COMPLETED
        assert results[1].status == SegmentStatus.FAILED
        assert "video model crashed" in results[1].error

    @pytest.mark.asyncio
    async def test_segments_without_keyframes_are_not_rendered(self, gateway, continuity_chain):
        storyboard = make_storyboard(("hook", "body"))
        gateway.on(labelled(stage="keyframe", segment_index=0), [failed("nope")])

        results = await continuity_chain.generate_keyframes(storyboard, enhance=False)
        await continuity_chain.render_segments(storyboard, results)

        assert [r.labels["segment_index"] for r in gateway.submitted(stage="video")] == [1]
