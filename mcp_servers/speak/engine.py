"""
Platform speech engines. Each utterance runs one native TTS command
(say, espeak, festival or PowerShell's System.Speech) as a child process.
"""
import logging
import math
import os
import re
import shutil
import signal
import subprocess
import sys
from typing import Dict, List, Optional, Protocol, Tuple, Type

import anyio
from anyio.abc import ByteReceiveStream, Process


log = logging.getLogger(__name__)

BASE_WORDS_PER_MIN = 175


class PlaybackError(RuntimeError):
    """The platform speech engine failed to start, play or stop."""


class SpeechEngine(Protocol):
    async def speak(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None) -> None:
        ...

    def stop(self) -> None:
        ...


class ProcessSpeechEngine:
    """Runs a single speech command at a time and kills it on stop()."""

    name = "process"
    default_binary = ""

    def __init__(self, binary: Optional[str] = None) -> None:
        self.binary = binary or self.default_binary
        self._busy = False
        self._process: Optional[Process] = None
        self._interrupted = False

    @property
    def speaking(self) -> bool:
        return self._process is not None

    def build_command(
        self, text: str, voice: Optional[str], speed: Optional[float]
    ) -> Tuple[List[str], Optional[str]]:
        """Return the argv to run and the text to write to its stdin, if any."""
        raise NotImplementedError

    async def speak(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None) -> None:
        # The slot is claimed before the first await so concurrent calls cannot both pass.
        if self._busy:
            raise PlaybackError("speech already in progress")
        self._busy = True
        self._interrupted = False
        try:
            await self._run(text, voice, speed)
        finally:
            self._busy = False

    async def _run(self, text: str, voice: Optional[str], speed: Optional[float]) -> None:
        argv, stdin_text = self.build_command(text, voice, speed)
        log.debug("%s: running %s", self.name, argv)
        try:
            process = await anyio.open_process(
                argv,
                stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                start_new_session=os.name != "nt",
            )
        except OSError as exc:
            raise PlaybackError(f"could not start {argv[0]}: {exc}") from exc

        self._process = process
        errors: List[bytes] = []
        try:
            # Leaving the block early (cancellation, errors) kills the process.
            async with process, anyio.create_task_group() as tg:
                if self._interrupted:
                    # stop() arrived while the process was being spawned.
                    self._signal(process)
                if process.stderr is not None:
                    tg.start_soon(_collect, process.stderr, errors)
                if stdin_text is not None and process.stdin is not None:
                    try:
                        await process.stdin.send(stdin_text.encode("utf-8"))
                        await process.stdin.aclose()
                    except (
                        anyio.BrokenResourceError,
                        anyio.ClosedResourceError,
                        BrokenPipeError,
                        ConnectionResetError,
                    ):
                        # Process exited before reading its input; the exit status tells why.
                        pass
                returncode = await process.wait()
        finally:
            self._process = None

        if self._interrupted:
            raise PlaybackError("speech was interrupted")
        if returncode != 0:
            detail = b"".join(errors).decode("utf-8", errors="ignore").strip()
            message = f"{self.name} exited with status {returncode}"
            raise PlaybackError(f"{message}: {detail}" if detail else message)

    def stop(self) -> None:
        if not self._busy:
            return
        process = self._process
        if process is not None and process.returncode is not None:
            return
        self._interrupted = True
        if process is not None:
            self._signal(process)

    def _signal(self, process: Process) -> None:
        log.debug("%s: stopping pid %s", self.name, process.pid)
        try:
            _terminate_tree(process.pid)
        except ProcessLookupError:
            return
        except (OSError, subprocess.CalledProcessError) as exc:
            raise PlaybackError(f"could not stop {self.name}: {exc}") from exc


class SayEngine(ProcessSpeechEngine):
    """macOS `say`."""

    name = "say"
    default_binary = "say"

    def build_command(self, text, voice, speed):
        cmd = [self.binary, "-f", "-"]
        if voice:
            cmd += ["-v", voice]
        if speed is not None:
            cmd += ["-r", str(math.ceil(BASE_WORDS_PER_MIN * speed))]
        return cmd, text


class EspeakEngine(ProcessSpeechEngine):
    name = "espeak"
    default_binary = "espeak"

    def build_command(self, text, voice, speed):
        cmd = [self.binary, "--stdin"]
        if voice:
            cmd += ["-v", voice]
        if speed is not None:
            cmd += ["-s", str(int(round(BASE_WORDS_PER_MIN * speed)))]
        return cmd, text


class FestivalEngine(ProcessSpeechEngine):
    """Festival in pipe mode; the utterance is sent as Scheme on stdin."""

    name = "festival"
    default_binary = "festival"
    voice_name = re.compile(r"^[A-Za-z0-9_]+$")

    def build_command(self, text, voice, speed):
        script = ""
        if speed is not None:
            script += "(Parameter.set 'Audio_Method 'Audio_Command)\n"
            script += f"(Parameter.set 'Duration_Stretch {round(1 / speed, 2)})\n"
        if voice:
            # The voice is spliced into Scheme as a function name.
            if not self.voice_name.fullmatch(voice):
                raise PlaybackError(f"invalid festival voice name: {voice!r}")
            script += f"({voice})\n"
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        script += f'(SayText "{escaped}")\n'
        return [self.binary, "--pipe"], script


class PowerShellEngine(ProcessSpeechEngine):
    """Windows System.Speech through PowerShell."""

    name = "powershell"
    default_binary = "powershell"

    def build_command(self, text, voice, speed):
        script = (
            "Add-Type -AssemblyName System.Speech;"
            "$speak = New-Object System.Speech.Synthesis.SpeechSynthesizer;"
        )
        if voice:
            quoted = voice.replace("'", "''")
            script += f"$speak.SelectVoice('{quoted}');"
        if speed is not None:
            script += f"$speak.Rate = {powershell_rate(speed)};"
        script += "$speak.Speak([Console]::In.ReadToEnd())"
        return [self.binary, "-NoProfile", "-NonInteractive", "-Command", script], text


def powershell_rate(speed: float) -> int:
    # SpeechSynthesizer.Rate is logarithmic in [-10, 10]; 0 is normal speed.
    rate = int(round(9.0686 * math.log(speed) - 0.1806))
    return max(-10, min(rate, 10))


ENGINES: Dict[str, Type[ProcessSpeechEngine]] = {
    SayEngine.name: SayEngine,
    EspeakEngine.name: EspeakEngine,
    FestivalEngine.name: FestivalEngine,
    PowerShellEngine.name: PowerShellEngine,
}


def build_engine(name: Optional[str] = None, binary: Optional[str] = None) -> ProcessSpeechEngine:
    name = (name or os.getenv("SPEAK_ENGINE") or "auto").strip().lower()
    binary = binary or (os.getenv("SPEAK_BIN") or "").strip() or None
    if name == "auto":
        name, detected = _detect_engine()
        binary = binary or detected
    if name not in ENGINES:
        raise ValueError(f"Unsupported SPEAK_ENGINE: {name}")
    engine = ENGINES[name](binary=binary)
    log.debug("using %s engine (%s)", engine.name, engine.binary)
    return engine


def _detect_engine() -> Tuple[str, Optional[str]]:
    if sys.platform == "darwin":
        return SayEngine.name, None
    if sys.platform.startswith("win"):
        return PowerShellEngine.name, None
    for candidate, engine in (("espeak-ng", "espeak"), ("espeak", "espeak"), ("festival", "festival")):
        path = shutil.which(candidate)
        if path:
            return engine, path
    return EspeakEngine.name, None


def _terminate_tree(pid: int) -> None:
    if os.name == "nt":
        subprocess.run(
            ["taskkill", "/pid", str(pid), "/T", "/F"],
            check=True,
            capture_output=True,
        )
        return
    # The child leads its own session, so this also reaches any audio player it spawned.
    os.killpg(pid, signal.SIGTERM)


async def _collect(stream: ByteReceiveStream, chunks: List[bytes]) -> None:
    async for chunk in stream:
        chunks.append(chunk)
