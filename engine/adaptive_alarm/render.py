"""
Audio render gateway: turns a MixPlan and two sources into one file
"""

import logging
import os
import subprocess
import time
from typing import List, Tuple

from .exceptions import RenderFailedError
from .models import MixPlan

logger = logging.getLogger(__name__)


class AudioRenderGateway:
    """Renders a MixPlan; implementations must bound their own run time"""

    def render(self, source_a: str, source_b: str, plan: MixPlan, dest_path: str) -> str:
        """
        Render source_a and source_b through plan into dest_path.

        Returns:
            dest_path on success

        Raises:
            RenderFailedError: on any backend failure or timeout
        """
        raise NotImplementedError


def _gain(value: float) -> str:
    return f"{value:.2f}"


def build_filter_graph(plan: MixPlan) -> Tuple[List[str], str]:
    """
    Compile a MixPlan to an ffmpeg filter_complex.

    Returns:
        (filter chains, label of the final output pad)
    """
    stereo = "aformat=channel_layouts=stereo," if plan.normalize_stereo else ""
    graph = [
        f"[0:a]{stereo}volume={_gain(plan.gain_a)}[a_nonrem]",
        f"[1:a]{stereo}volume={_gain(plan.gain_b)}[a_rem]",
        "[a_nonrem][a_rem]amix=inputs=2:duration=longest:normalize=0[a_mixed]",
    ]
    if plan.pan is None:
        return graph, "a_mixed"

    period = f"{plan.pan.period_s:g}"
    theta = f"min(t,{period})/{period}*PI/2"
    graph.extend([
        "[a_mixed]aformat=channel_layouts=stereo,channelsplit=channel_layout=stereo[c_left][c_right]",
        f"[c_left]volume='cos({theta})':eval=frame[p_left]",
        f"[c_right]volume='sin({theta})':eval=frame[p_right]",
        "[p_left][p_right]amerge=inputs=2[a_panned]",
    ])
    return graph, "a_panned"


class FfmpegRenderGateway(AudioRenderGateway):
    """Render gateway backed by the ffmpeg command-line tool"""

    def __init__(self, ffmpeg_binary: str = "ffmpeg", timeout_s: float = 30.0):
        self.ffmpeg_binary = ffmpeg_binary
        self.timeout_s = timeout_s

    def build_command(self, source_a: str, source_b: str, plan: MixPlan, dest_path: str) -> List[str]:
        graph, output = build_filter_graph(plan)
        return [
            self.ffmpeg_binary, "-hide_banner", "-loglevel", "error", "-y",
            "-i", source_a,
            "-i", source_b,
            "-filter_complex", ";".join(graph),
            "-map", f"[{output}]",
            dest_path,
        ]

    def render(self, source_a: str, source_b: str, plan: MixPlan, dest_path: str) -> str:
        out_dir = os.path.dirname(dest_path)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)

        command = self.build_command(source_a, source_b, plan, dest_path)
        logger.info(
            f"Rendering alarm mix to {dest_path}",
            extra={"plan": plan.to_dict()}
        )
        start = time.time()
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired as e:
            raise RenderFailedError(f"ffmpeg timed out after {self.timeout_s}s", plan=plan) from e
        except OSError as e:
            raise RenderFailedError(f"Could not run {self.ffmpeg_binary}: {e}", plan=plan) from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip().splitlines()
            detail = stderr[-1] if stderr else f"exit code {result.returncode}"
            raise RenderFailedError(f"ffmpeg failed: {detail}", plan=plan)

        logger.info(
            f"Rendered alarm mix in {int((time.time() - start) * 1000)}ms",
            extra={"dest_path": dest_path}
        )
        return dest_path
