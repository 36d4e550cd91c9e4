"""
Tests for relay/policy.py encode policy selection.
"""

import pytest

from relay.config import RelayConfig
from relay.policy import (
    EncodeMode,
    RecodeProfile,
    Resolution,
    select_mode,
    select_policy,
)
from relay.source import SourceKind


class TestSelectMode:
    """Test cases for the passthrough/recode decision."""

    def test_unknown_resolution_passthrough(self):
        """Test a failed probe never forces a re-encode."""
        assert select_mode(None) == EncodeMode.PASSTHROUGH

    @pytest.mark.parametrize("width,height", [(640, 360), (854, 480), (1280, 720)])
    def test_up_to_720_passthrough(self, width, height):
        assert select_mode(Resolution(width, height)) == EncodeMode.PASSTHROUGH

    @pytest.mark.parametrize("width,height", [(1280, 721), (1920, 1080), (3840, 2160)])
    def test_above_720_recode(self, width, height):
        assert select_mode(Resolution(width, height)) == EncodeMode.RECODE


class TestSelectPolicy:
    """Test cases for argument templates."""

    def test_pure_function(self):
        """Test equal inputs give equal templates."""
        first = select_policy(Resolution(1920, 1080), SourceKind.PLAYLIST)
        second = select_policy(Resolution(1920, 1080), SourceKind.PLAYLIST)

        assert first == second
        assert first.to_dict() == second.to_dict()

    def test_passthrough_copies_codecs(self):
        template = select_policy(Resolution(854, 480), SourceKind.PLAYLIST)

        assert template.mode == EncodeMode.PASSTHROUGH
        assert "-c:v" in template.output_args
        assert template.output_args[template.output_args.index("-c:v") + 1] == "copy"
        assert template.output_args[template.output_args.index("-c:a") + 1] == "copy"
        assert template.output_format == "flv"

    def test_recode_scales_to_720(self):
        template = select_policy(Resolution(1920, 1080), SourceKind.PLAYLIST)
        args = list(template.output_args)

        assert template.mode == EncodeMode.RECODE
        assert args[args.index("-vf") + 1] == "scale=-2:720,fps=30"
        assert args[args.index("-c:v") + 1] == "libx264"
        assert args[args.index("-preset") + 1] == "veryfast"
        assert args[args.index("-g") + 1] == "60"
        assert args[args.index("-c:a") + 1] == "aac"
        assert args[args.index("-ar") + 1] == "44100"

    def test_recode_profile_from_config(self):
        """Test configured recode targets flow into the template."""
        config = RelayConfig(recode_height=540, recode_fps=25, video_bitrate="1500k")
        template = select_policy(Resolution(1920, 1080), SourceKind.PLAYLIST, RecodeProfile.from_config(config))
        args = list(template.output_args)

        assert args[args.index("-vf") + 1] == "scale=-2:540,fps=25"
        assert args[args.index("-b:v") + 1] == "1500k"
        assert args[args.index("-g") + 1] == "50"

    def test_playlist_input_reconnects(self):
        template = select_policy(None, SourceKind.PLAYLIST)

        assert "-reconnect" in template.input_args
        assert "-re" not in template.input_args

    def test_single_file_paced(self):
        template = select_policy(None, SourceKind.FILE)

        assert template.input_args == ("-re",)

    def test_concat_framing(self):
        """Test several local files are read through the concat demuxer."""
        template = select_policy(Resolution(1920, 1080), SourceKind.CONCAT)

        assert template.input_args == ("-re", "-f", "concat", "-safe", "0")
        assert template.source_kind == SourceKind.CONCAT
        assert template.mode == EncodeMode.RECODE

    def test_resolution_str(self):
        assert str(Resolution(1280, 720)) == "1280x720"
