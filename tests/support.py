import json
import shutil
import sys
import textwrap
import unittest
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_bridge.session_config import SessionConfigBuilder

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class LineSource:
    """Feeds canned lines to a FrameDecoder, then end of stream."""

    def __init__(self, *lines: str | bytes | dict):
        self._lines = [self._encode(line) for line in lines]

    @staticmethod
    def _encode(line: str | bytes | dict) -> bytes:
        if isinstance(line, dict):
            line = json.dumps(line)
        if isinstance(line, str):
            line = line.encode("utf-8")
        return line if line.endswith(b"\n") else line + b"\n"

    async def readline(self) -> bytes:
        if not self._lines:
            return b""
        return self._lines.pop(0)


class RecordingWriter:
    def __init__(self):
        self.frames: list[dict[str, Any]] = []

    async def __call__(self, data: bytes) -> None:
        assert data.endswith(b"\n")
        self.frames.append(json.loads(data))


class RecordingSink:
    def __init__(self):
        self.events: list[tuple[str, str, dict | None]] = []

    def emit(self, session_id: str, event_type: str, data: dict | None) -> None:
        self.events.append((session_id, event_type, data))

    def types(self) -> list[str]:
        return [event_type for _, event_type, _ in self.events]


class ChildProcessTestCase(unittest.TestCase):
    """Runs fake child processes written as small Python scripts."""

    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def write_child(self, body: str) -> Path:
        script = self._tmp_dir / f"child_{uuid4().hex[:8]}.py"
        header = "import json, sys\n\ndef send(frame):\n    sys.stdout.write(json.dumps(frame) + '\\n')\n    sys.stdout.flush()\n\n"
        script.write_text(header + textwrap.dedent(body), encoding="utf-8")
        return script

    def builder(self, body: str) -> SessionConfigBuilder:
        script = self.write_child(body)
        return SessionConfigBuilder().with_command(sys.executable, "-u", str(script)).with_close_timeout(2.0)
