"""
Tests for the ffmpeg render gateway
"""

import subprocess
from unittest.mock import Mock, patch

import pytest

from adaptive_alarm.exceptions import RenderFailedError
from adaptive_alarm.mixer import build_plan
from adaptive_alarm.render import FfmpegRenderGateway, build_filter_graph


class TestFilterGraph:
    """Test MixPlan compilation"""

    def test_plain_mix(self):
        graph, output = build_filter_graph(build_plan(0.25, pan_enabled=False))

        assert output == "a_mixed"
        assert graph == [
            "[0:a]volume=0.25[a_nonrem]",
            "[1:a]volume=0.75[a_rem]",
            "[a_nonrem][a_rem]amix=inputs=2:duration=longest:normalize=0[a_mixed]",
        ]

    def test_panned_mix(self):
        graph, output = build_filter_graph(build_plan(0.6, pan_enabled=True))

        assert output == "a_panned"
        assert graph[0] == "[0:a]aformat=channel_layouts=stereo,volume=0.60[a_nonrem]"
        assert graph[1] == "[1:a]aformat=channel_layouts=stereo,volume=0.40[a_rem]"
        assert "channelsplit=channel_layout=stereo[c_left][c_right]" in graph[3]
        assert graph[4] == "[c_left]volume='cos(min(t,30)/30*PI/2)':eval=frame[p_left]"
        assert graph[5] == "[c_right]volume='sin(min(t,30)/30*PI/2)':eval=frame[p_right]"
        assert graph[6] == "[p_left][p_right]amerge=inputs=2[a_panned]"


class TestFfmpegRenderGateway:
    """Test the subprocess boundary"""

    @pytest.fixture
    def gateway(self):
        return FfmpegRenderGateway(ffmpeg_binary="/usr/bin/ffmpeg", timeout_s=12)

    @pytest.fixture
    def dest(self, tmp_path):
        return str(tmp_path / "out" / "alarm.mp3")

    def test_command_line(self, gateway, dest):
        command = gateway.build_command("/s/a.mp3", "/s/b.mp3", build_plan(0.5, pan_enabled=False), dest)

        assert command[:5] == ["/usr/bin/ffmpeg", "-hide_banner", "-loglevel", "error", "-y"]
        assert command[5:9] == ["-i", "/s/a.mp3", "-i", "/s/b.mp3"]
        assert command[-3:] == ["-map", "[a_mixed]", dest]

    def test_success(self, gateway, dest, tmp_path):
        with patch("adaptive_alarm.render.subprocess.run", return_value=Mock(returncode=0, stderr="")) as run:
            assert gateway.render("/s/a.mp3", "/s/b.mp3", build_plan(0.5, pan_enabled=True), dest) == dest

        assert (tmp_path / "out").is_dir()
        assert run.call_args.kwargs["timeout"] == 12
        assert run.call_args.args[0][-1] == dest

    def test_nonzero_exit(self, gateway, dest):
        result = Mock(returncode=1, stderr="Input #0\n/s/a.mp3: Invalid data found when processing input\n")
        plan = build_plan(0.5, pan_enabled=False)

        with patch("adaptive_alarm.render.subprocess.run", return_value=result):
            with pytest.raises(RenderFailedError, match="Invalid data found") as excinfo:
                gateway.render("/s/a.mp3", "/s/b.mp3", plan, dest)
        assert excinfo.value.plan is plan

    def test_timeout(self, gateway, dest):
        error = subprocess.TimeoutExpired(cmd="ffmpeg", timeout=12)
        with patch("adaptive_alarm.render.subprocess.run", side_effect=error):
            with pytest.raises(RenderFailedError, match="timed out"):
                gateway.render("/s/a.mp3", "/s/b.mp3", build_plan(0.5, pan_enabled=False), dest)

    def test_missing_binary(self, gateway, dest):
        with patch("adaptive_alarm.render.subprocess.run", side_effect=FileNotFoundError("ffmpeg")):
            with pytest.raises(RenderFailedError, match="Could not run"):
                gateway.render("/s/a.mp3", "/s/b.mp3", build_plan(0.5, pan_enabled=False), dest)
