"""Tests for WebVTT subtitles."""


def _step(index, caption, start, end, role=None):
    from proofcast.models import StepRecord

    return StepRecord(index=index, caption=caption, start_ms=start, end_ms=end, role=role)


class TestSubtitles:
    """Tests for subtitle generation."""

    def test_format_vtt_time(self):
        """Test timestamp formatting."""
        from proofcast.subtitles import format_vtt_time

        assert format_vtt_time(0) == "00:00:00.000"
        assert format_vtt_time(3_723_045) == "01:02:03.045"
        assert format_vtt_time(-5) == "00:00:00.000"

    def test_one_cue_per_step(self):
        """Test cue text and timing."""
        from proofcast.subtitles import count_cues, generate_webvtt

        vtt = generate_webvtt([_step(1, "Open the app", 0, 1200), _step(2, "Sign in", 1200, 3400)])

        assert vtt.startswith("WEBVTT\n")
        assert "00:00:00.000 --> 00:00:01.200\nStep 1: Open the app" in vtt
        assert "00:00:01.200 --> 00:00:03.400\nStep 2: Sign in" in vtt
        assert count_cues(vtt) == 2

    def test_empty_run_is_a_valid_file(self):
        """Test the header-only document."""
        from proofcast.subtitles import count_cues, generate_webvtt

        vtt = generate_webvtt([])

        assert vtt.startswith("WEBVTT")
        assert count_cues(vtt) == 0

    def test_role_track_includes_shared_steps(self, tmp_path):
        """Test per-role filtering."""
        from proofcast.subtitles import write_subtitles

        steps = [
            _step(1, "Both open the board", 0, 100, role="both"),
            _step(2, 'Alice adds task: "Milk"', 100, 200, role="alice"),
            _step(3, 'Bob sees "Milk"', 200, 300, role="bob"),
        ]

        text = write_subtitles(tmp_path / "alice-captions.vtt", steps, role="alice").read_text()

        assert "Both open the board" in text
        assert "Alice adds" in text
        assert "Bob sees" not in text
