from __future__ import annotations

"""
External correspondence tool adapter.

The tool is a black box launched once per pair:

    <command> --params <file> --p <image> --p-meta <json> --q <image> --q-meta <json> --out <file>

It writes one correspondence per line to the --out file:

    px py qx qy [w]      # coordinates in rendered (scaled) pixels, weight defaults to 1.0

Anything it prints on stdout/stderr is diagnostic only.
"""

import os
import signal
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

import numpy as np

from common.errors import ToolInvocationFailure
from common.logging_setup import get_logger
from common.types import CanvasArtifact, MatchSet


log = get_logger(__name__)


@dataclass(frozen=True)
class ToolConfig:
    command: str
    params_file: str
    log_tool_output: bool = False
    timeout_s: Optional[float] = 600.0
    extra_args: Sequence[str] = ()


class CorrespondenceTool(Protocol):
    def run(self, p: CanvasArtifact, q: CanvasArtifact) -> MatchSet:
        ...


def parse_match_output(text: str, pair_label: str) -> MatchSet:
    """
    Parse `px py qx qy [w]` rows. Blank lines and '#' comments are ignored.
    Raises ToolInvocationFailure on malformed rows.
    """
    rows: List[List[float]] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        parts = line.replace(",", " ").split()
        if len(parts) not in (4, 5):
            raise ToolInvocationFailure(pair_label, f"line {lineno}: expected 4 or 5 columns, got {len(parts)}")
        try:
            vals = [float(v) for v in parts]
        except ValueError as e:
            raise ToolInvocationFailure(pair_label, f"line {lineno}: {e}") from e
        if len(vals) == 4:
            vals.append(1.0)
        rows.append(vals)

    if not rows:
        return MatchSet.empty()
    a = np.asarray(rows, dtype=float)
    if not np.all(np.isfinite(a)):
        raise ToolInvocationFailure(pair_label, "non-finite values in tool output")
    return MatchSet(p=a[:, 0:2].T, q=a[:, 2:4].T, w=a[:, 4])


class ExternalMatchTool:
    """One handle per worker; output files live under `work_dir`."""

    def __init__(self, config: ToolConfig, work_dir: Path):
        self.config = config
        self.work_dir = Path(work_dir)

    def build_command(self, p: CanvasArtifact, q: CanvasArtifact, out_path: Path) -> List[str]:
        return [
            self.config.command,
            "--params", str(self.config.params_file),
            "--p", str(p.path),
            "--p-meta", str(p.meta_path),
            "--q", str(q.path),
            "--q-meta", str(q.meta_path),
            "--out", str(out_path),
            *[str(a) for a in self.config.extra_args],
        ]

    def run(self, p: CanvasArtifact, q: CanvasArtifact) -> MatchSet:
        label = f"({p.canvas_id}, {q.canvas_id})"
        self.work_dir.mkdir(parents=True, exist_ok=True)
        fd, out_name = tempfile.mkstemp(prefix="matches_", suffix=".txt", dir=self.work_dir)
        os.close(fd)
        out_path = Path(out_name)
        cmd = self.build_command(p, q, out_path)
        try:
            try:
                # own session so a timeout can take down anything the tool spawned
                proc = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    start_new_session=True,
                )
            except OSError as e:
                raise ToolInvocationFailure(label, f"could not launch {self.config.command}: {e}") from e

            try:
                stdout, stderr = proc.communicate(timeout=self.config.timeout_s)
            except subprocess.TimeoutExpired as e:
                _kill_group(proc)
                stdout, stderr = proc.communicate()
                output = _combine(stdout, stderr)
                log.warning("match tool timed out", extra={"extra": {"pair": label, "timeout_s": self.config.timeout_s, "output": output}})
                raise ToolInvocationFailure(label, f"timed out after {self.config.timeout_s}s", output) from e
            except BaseException:
                _kill_group(proc)
                proc.wait()
                raise

            output = _combine(stdout, stderr)
            if proc.returncode != 0:
                log.warning(
                    "match tool failed",
                    extra={"extra": {"pair": label, "returncode": proc.returncode, "cmd": cmd, "output": output}},
                )
                raise ToolInvocationFailure(label, f"exit status {proc.returncode}", output)
            if self.config.log_tool_output:
                log.info("match tool output", extra={"extra": {"pair": label, "cmd": cmd, "output": output}})

            try:
                text = out_path.read_text()
            except OSError as e:
                raise ToolInvocationFailure(label, f"could not read output {out_path}: {e}", output) from e
            return parse_match_output(text, label)
        finally:
            out_path.unlink(missing_ok=True)


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _combine(stdout, stderr) -> str:
    parts = []
    for s in (stdout, stderr):
        if not s:
            continue
        if isinstance(s, bytes):
            s = s.decode("utf-8", errors="replace")
        parts.append(s.strip())
    return "\n".join(p for p in parts if p)
