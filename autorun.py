"""Solibri autorun: XML generation and supervised execution.

Solibri runs headless when started with ``--autorun <file.xml>``. The XML
lists the steps to perform in order (open a model, apply rulesets, check,
write reports, exit). This module renders that XML from Command records and
runs Solibri against it as a supervised subprocess:

  execute() --writes--> autorun/<job id>.xml
            --spawns--> Solibri.exe --autorun <xml> [--rest-api-server-port=N --rest-api-server-http]
            <--stdout/stderr chunks, exit code--

Each run is a Job. A Job settles exactly once: clean exit, error exit,
spawn failure or timeout, whichever happens first.
"""

import asyncio
import codecs
import contextlib
import enum
import logging
import os
import platform
import re
import subprocess
import time
import uuid
from dataclasses import dataclass
from xml.sax.saxutils import escape

logger = logging.getLogger("solibri.autorun")

IS_WINDOWS = platform.system() == "Windows"


def ensure_dir(path: str) -> None:
    """Create directory if it doesn't exist."""
    os.makedirs(path, exist_ok=True)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class CommandType(str, enum.Enum):
    OPENMODEL = "openmodel"
    UPDATEMODEL = "updatemodel"
    SAVEMODEL = "savemodel"
    OPENCLASSIFICATION = "openclassification"
    OPENRULESET = "openruleset"
    OPENITO = "openito"
    CHECK = "check"
    TAKEOFF = "takeoff"
    ITOREPORT = "itoreport"
    BCFREPORT = "bcfreport"
    CREATEPRESENTATION = "createpresentation"
    UPDATEPRESENTATION = "updatepresentation"
    AUTOCOMMENT = "autocomment"
    AUTOUPDATEMODELS = "autoupdatemodels"
    EXIT = "exit"


_FIELDS = ("file", "name", "templatefile", "title", "version", "snapshots")

# Characters XML 1.0 cannot carry, escaped or not (C0 controls other than
# tab/LF/CR, lone surrogates, U+FFFE/U+FFFF).
_XML_INVALID = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")

# tag -> (required attributes, optional attributes), in render order
_ATTRIBUTES = {
    CommandType.OPENMODEL: (("file",), ()),
    CommandType.UPDATEMODEL: (("file",), ()),
    CommandType.SAVEMODEL: (("file",), ()),
    CommandType.OPENCLASSIFICATION: (("file",), ()),
    CommandType.OPENRULESET: (("file",), ()),
    CommandType.OPENITO: (("file",), ()),
    CommandType.CHECK: ((), ()),
    CommandType.TAKEOFF: ((), ("name",)),
    CommandType.ITOREPORT: (("file",), ("templatefile", "title", "name")),
    CommandType.BCFREPORT: (("file",), ("version",)),
    CommandType.CREATEPRESENTATION: ((), ()),
    CommandType.UPDATEPRESENTATION: ((), ()),
    CommandType.AUTOCOMMENT: ((), ("snapshots",)),
    CommandType.AUTOUPDATEMODELS: ((), ()),
    CommandType.EXIT: ((), ()),
}

if set(_ATTRIBUTES) != set(CommandType):
    raise RuntimeError(f"No attribute table for {set(CommandType) - set(_ATTRIBUTES)}")


@dataclass(frozen=True)
class Command:
    """One autorun step. Fields a tag doesn't take must stay None."""

    type: CommandType
    file: str | None = None
    name: str | None = None
    templatefile: str | None = None
    title: str | None = None
    version: str | None = None
    snapshots: bool | int | None = None

    def __post_init__(self):
        object.__setattr__(self, "type", CommandType(self.type))
        required, optional = _ATTRIBUTES[self.type]
        for attr in required:
            if getattr(self, attr) in (None, ""):
                raise ValueError(f"'{self.type.value}' command requires '{attr}'")
        for attr in _FIELDS:
            if attr not in required and attr not in optional and getattr(self, attr) is not None:
                raise ValueError(f"'{self.type.value}' command does not take '{attr}'")
            value = getattr(self, attr)
            if isinstance(value, str) and _XML_INVALID.search(value):
                raise ValueError(f"'{self.type.value}' {attr} contains characters not allowed in XML: {value!r}")

    def attributes(self) -> list[tuple[str, str]]:
        """(name, unescaped text) pairs for the attributes present, in render order."""
        required, optional = _ATTRIBUTES[self.type]
        return [
            (attr, _attr_text(getattr(self, attr)))
            for attr in required + optional
            if getattr(self, attr) is not None
        ]

    @classmethod
    def from_mapping(cls, raw) -> "Command | None":
        """Build a Command from a loose dict such as {"type": "openmodel", "file": ...}.

        Unknown tags return None after a warning. Fields the tag does not take
        are dropped; a missing required field raises ValueError.
        """
        tag = raw.get("type")
        try:
            ctype = CommandType(tag)
        except ValueError:
            logger.warning("Unknown command type: %s", tag)
            return None
        required, optional = _ATTRIBUTES[ctype]
        values = {
            attr: raw[attr]
            for attr in required + optional
            if raw.get(attr) not in (None, "")
        }
        return cls(ctype, **values)


def parse_commands(raw_commands) -> list[Command]:
    """Convert raw command dicts, skipping unknown tags."""
    commands = []
    for raw in raw_commands:
        cmd = raw if isinstance(raw, Command) else Command.from_mapping(raw)
        if cmd is not None:
            commands.append(cmd)
    return commands


def _attr_text(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


_QUOTE_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def escape_xml(value: str) -> str:
    """Escape &, <, >, " and ' for use inside an attribute value."""
    return escape(value, _QUOTE_ENTITIES)


def render(commands) -> str:
    """Render commands (Command instances or dicts) to autorun XML.

    Never raises for bad input: unknown or malformed dict commands are
    skipped with a warning. Output depends only on the command list.
    """
    lines = ['<?xml version="1.0" encoding="UTF-8"?>', "<autorun>"]
    for cmd in commands:
        if not isinstance(cmd, Command):
            try:
                cmd = Command.from_mapping(cmd)
            except ValueError as e:
                logger.warning("Skipping malformed command: %s", e)
                continue
            if cmd is None:
                continue
        attrs = "".join(f' {attr}="{escape_xml(text)}"' for attr, text in cmd.attributes())
        lines.append(f"  <{cmd.type.value}{attrs} />")
    lines.append("</autorun>")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------

ASSET_EXTENSIONS = {
    "classifications": (".classification",),
    "rulesets": (".cset",),
    "ito": (".ito",),
    "templates": (".xlsx", ".xls"),
}


def list_assets(kind: str, config) -> list[dict]:
    """List asset files of one kind from its configured directory."""
    dirs = {
        "classifications": config.classifications_dir,
        "rulesets": config.rulesets_dir,
        "ito": config.ito_dir,
        "templates": config.templates_dir,
    }
    directory = dirs.get(kind)
    if not directory or not os.path.isdir(directory):
        return []
    exts = ASSET_EXTENSIONS[kind]
    return [
        {"name": f, "path": os.path.join(directory, f)}
        for f in sorted(os.listdir(directory))
        if f.lower().endswith(exts)
    ]


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class AutorunError(Exception):
    """Base class for autorun failures."""


class AutorunLaunchError(AutorunError):
    """Solibri could not be started at all."""


class AutorunTimeout(AutorunError, TimeoutError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Autorun timed out after {timeout:g}s")


class AutorunFailed(AutorunError):
    def __init__(self, exit_code: int, output: str):
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Autorun exited with code {exit_code}: {output}")


@dataclass(frozen=True)
class AutorunResult:
    job_id: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class JobState(enum.Enum):
    CREATED = "created"
    LAUNCHED = "launched"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    LAUNCH_ERROR = "launch_error"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset({
    JobState.SUCCEEDED, JobState.FAILED, JobState.LAUNCH_ERROR, JobState.TIMED_OUT,
})


class Job:
    """One supervised Solibri run.

    The outcome lives in a single-assignment cell. The timer, the exit
    watcher and the spawn path all report through settle(); only the first
    call has any effect.
    """

    def __init__(self, job_id: str, script_path: str, timeout: float):
        self.job_id = job_id
        self.script_path = script_path
        self.timeout = timeout
        self.state = JobState.CREATED
        self.proc = None
        self.deadline = None
        self.stdout_chunks: list[str] = []
        self.stderr_chunks: list[str] = []
        self._outcome = asyncio.get_running_loop().create_future()

    @property
    def stdout(self) -> str:
        return "".join(self.stdout_chunks)

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_chunks)

    @property
    def settled(self) -> bool:
        return self.state in TERMINAL_STATES

    def launched(self, proc) -> None:
        self.proc = proc
        self.state = JobState.LAUNCHED
        self.deadline = time.monotonic() + self.timeout

    def settle(self, state: JobState, outcome) -> bool:
        """Record the terminal state and outcome. Returns False if already settled."""
        if self.settled or self._outcome.done():
            return False
        if isinstance(outcome, BaseException):
            self._outcome.set_exception(outcome)
        else:
            self._outcome.set_result(outcome)
        self.state = state
        return True

    async def result(self) -> AutorunResult:
        # A caller giving up must not cancel the outcome itself.
        return await asyncio.shield(self._outcome)


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------

class AutorunSupervisor:
    """Runs Solibri against generated autorun scripts.

    Holds only the (immutable) config and the runs still in progress, so
    concurrent execute() calls share nothing: each gets its own job id,
    script file, process and timer. A run ends on exit or timeout only;
    cancelling the caller of execute() leaves Solibri running to completion.
    """

    SIGTERM_GRACE_SECONDS = 2
    READ_CHUNK = 64 * 1024

    def __init__(self, config):
        self.config = config
        self.running: dict[str, asyncio.Task] = {}

    def command_line(self, script_path: str, enable_rest_api: bool = False) -> list[str]:
        args = [self.config.exe_path, "--autorun", script_path]
        if enable_rest_api:
            args.append(f"--rest-api-server-port={self.config.rest_port}")
            args.append("--rest-api-server-http")
        return args

    async def execute(self, commands, enable_rest_api: bool = False) -> AutorunResult:
        """Run Solibri with the given commands and wait for it to finish.

        Raises AutorunLaunchError, AutorunTimeout or AutorunFailed, or
        AutorunError when the script can't be written.
        """
        job_id = str(uuid.uuid4())
        run = asyncio.create_task(self._run(job_id, render(commands), enable_rest_api))
        self.running[job_id] = run
        run.add_done_callback(lambda task: self._finished(job_id, task))
        return await asyncio.shield(run)

    def _finished(self, job_id: str, run: asyncio.Task) -> None:
        self.running.pop(job_id, None)
        # Marks the error retrieved when the caller of execute() is gone.
        if not run.cancelled() and run.exception() is not None:
            logger.debug("[%s] run ended with %r", job_id, run.exception())

    async def _run(self, job_id: str, xml: str, enable_rest_api: bool) -> AutorunResult:
        ensure_dir(self.config.autorun_dir)
        ensure_dir(self.config.output_dir)

        script_path = os.path.join(self.config.autorun_dir, f"{job_id}.xml")
        job = Job(job_id, script_path, self.config.autorun_timeout)
        watcher = None
        try:
            self._write_script(job, xml)
            watcher = await self._launch(job, self.command_line(script_path, enable_rest_api))
            return await job.result()
        finally:
            if watcher is not None:
                await self._reap(job, watcher)
            self._discard_script(job)

    def _write_script(self, job: Job, xml: str) -> None:
        try:
            data = xml.encode("utf-8")
        except UnicodeEncodeError as e:
            raise AutorunError(f"Autorun script is not valid UTF-8: {e}") from e
        with open(job.script_path, "wb") as f:
            f.write(data)
        logger.info("[%s] generated autorun XML: %s", job.job_id, job.script_path)
        logger.debug("[%s] %s", job.job_id, xml)

    async def _launch(self, job: Job, argv: list[str]):
        logger.info("[%s] executing: %s", job.job_id, subprocess.list2cmdline(argv))
        kwargs = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **kwargs,
            )
        except OSError as e:
            logger.error("[%s] failed to start Solibri: %s", job.job_id, e)
            job.settle(JobState.LAUNCH_ERROR, AutorunLaunchError(f"Failed to start Solibri: {e}"))
            return None
        job.launched(proc)
        timer = asyncio.get_running_loop().call_later(job.timeout, self._on_timeout, job)
        return asyncio.create_task(self._watch(job, timer))

    def _on_timeout(self, job: Job) -> None:
        if not job.settle(JobState.TIMED_OUT, AutorunTimeout(job.timeout)):
            return
        logger.warning("[%s] timed out after %gs, terminating", job.job_id, job.timeout)
        with contextlib.suppress(ProcessLookupError):
            job.proc.terminate()

    async def _watch(self, job: Job, timer: asyncio.TimerHandle) -> None:
        proc = job.proc
        try:
            await asyncio.gather(
                self._pump(job, proc.stdout, job.stdout_chunks, "stdout"),
                self._pump(job, proc.stderr, job.stderr_chunks, "stderr"),
            )
            code = await proc.wait()
        except Exception as e:
            timer.cancel()
            job.settle(JobState.FAILED, AutorunError(f"Lost track of Solibri: {e}"))
            raise
        timer.cancel()

        if job.settled:
            logger.info("[%s] exited with code %s after %s, ignored", job.job_id, code, job.state.value)
            return
        logger.info("[%s] exited with code %s", job.job_id, code)
        if code == 0:
            job.settle(JobState.SUCCEEDED, AutorunResult(job.job_id, code, job.stdout, job.stderr))
        else:
            job.settle(JobState.FAILED, AutorunFailed(code, job.stderr or job.stdout))

    async def _pump(self, job: Job, stream, chunks: list[str], label: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(self.READ_CHUNK)
            text = decoder.decode(data, final=not data)
            if text:
                chunks.append(text)
                logger.debug("[%s] %s: %s", job.job_id, label, text.rstrip())
            if not data:
                break

    async def _reap(self, job: Job, watcher: asyncio.Task) -> None:
        """Make sure the process is gone and the watcher has finished."""
        proc = job.proc
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), self.SIGTERM_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("[%s] still running after SIGTERM, killing", job.job_id)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        try:
            await asyncio.wait_for(watcher, self.SIGTERM_GRACE_SECONDS)
        except asyncio.TimeoutError:
            # Output pipes held open by a grandchild; wait_for cancelled the watcher.
            logger.warning("[%s] output streams did not close", job.job_id)
        except Exception as e:
            logger.warning("[%s] watcher failed: %s", job.job_id, e)

    def _discard_script(self, job: Job) -> None:
        if self.config.keep_xml_files:
            return
        try:
            os.remove(job.script_path)
        except OSError as e:
            logger.warning("[%s] could not remove %s: %s", job.job_id, job.script_path, e)
