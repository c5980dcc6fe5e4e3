"""Supervision of the per-project worker process."""

from __future__ import annotations

import asyncio
import codecs
import hashlib
import io
import logging
import os
import shlex
import signal
from collections.abc import Callable, Mapping
from pathlib import Path

from dotenv import dotenv_values

from pairdesk.config import Settings
from pairdesk.orchestrator.backend.base import WorkerLaunchSpec, WorkerProcessError
from pairdesk.orchestrator.backend.stderr_classifier import (
    ERROR_TOKEN,
    USAGE_MARKER,
    WARNING_MARKER,
    StderrClassification,
    StderrKind,
    classify_stderr_line,
)
from pairdesk.orchestrator.store import ProjectSettings, Store

logger = logging.getLogger(__name__)

_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)
_READ_CHUNK_BYTES = 64 * 1024
_FIXED_WORKER_FLAGS = ("--no-check-update", "--no-show-model-warnings")


def liveness_marker_path(pid_files_dir: Path, base_dir: str) -> Path:
    digest = hashlib.sha256(base_dir.encode("utf-8")).hexdigest()
    return pid_files_dir / f"{digest}.pid"


def tokenize_options(options: str) -> list[str]:
    """Split free-text options shell-style, keeping quoted substrings together."""

    try:
        return shlex.split(options)
    except ValueError as error:
        logger.warning(
            "Could not parse worker options %r (%s); splitting on spaces",
            options,
            error,
        )
        return options.split()


def build_worker_args(
    *,
    worker_module: str,
    options: str,
    project_settings: ProjectSettings,
    default_main_model: str,
) -> list[str]:
    """Assemble the worker argv (without the interpreter)."""

    raw_args = tokenize_options(options)
    user_args: list[str] = []
    skip_next = False
    for arg in raw_args:
        if skip_next:
            skip_next = False
            continue
        if arg == "--model":
            skip_next = True
            continue
        if arg.startswith("--model="):
            continue
        user_args.append(arg)

    args = ["-m", worker_module, *user_args, *_FIXED_WORKER_FLAGS]
    args += ["--model", project_settings.main_model or default_main_model]
    if project_settings.weak_model:
        args += ["--weak-model", project_settings.weak_model]
    if project_settings.reasoning_effort and not _has_flag(raw_args, "--reasoning-effort"):
        args += ["--reasoning-effort", project_settings.reasoning_effort]
    if project_settings.thinking_tokens and not _has_flag(raw_args, "--thinking-tokens"):
        args += ["--thinking-tokens", project_settings.thinking_tokens]
    return args


def build_worker_env(
    *,
    base_env: Mapping[str, str],
    environment_variables: str,
    connector_dir: Path,
    server_port: int,
) -> dict[str, str]:
    overrides = {
        key: value
        for key, value in dotenv_values(stream=io.StringIO(environment_variables)).items()
        if value is not None
    }
    return {
        **base_env,
        **overrides,
        "PYTHONPATH": str(connector_dir),
        "CONNECTOR_SERVER_URL": f"http://localhost:{server_port}",
    }


def kill_process_tree(pid: int) -> bool:
    """SIGKILL a worker and its children; False when it was already gone.

    Workers are started as session leaders, so their process group id equals
    their pid and the whole group is the process tree.
    """

    try:
        if hasattr(os, "killpg"):
            try:
                os.killpg(pid, _KILL_SIGNAL)
            except ProcessLookupError:
                os.kill(pid, _KILL_SIGNAL)
        else:
            os.kill(pid, _KILL_SIGNAL)
    except ProcessLookupError:
        return False
    return True


def cleanup_stale_marker(marker_path: Path) -> None:
    """Kill the worker recorded by a leftover liveness marker, then remove it."""

    try:
        pid = int(marker_path.read_text("utf-8").strip())
    except FileNotFoundError:
        return
    except (OSError, ValueError) as error:
        logger.error("Error reading stale worker marker %s: %s", marker_path, error)
        _remove_marker(marker_path)
        return

    try:
        if kill_process_tree(pid):
            logger.info("Killed orphaned worker process %s", pid)
        marker_path.unlink(missing_ok=True)
    except OSError as error:
        logger.error("Error cleaning up stale worker marker %s: %s", marker_path, error)


class WorkerSupervisor:
    """Owns the worker process handle of one project."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_dir: str,
        runtime: Settings,
        store: Store,
        on_output: Callable[[str], object],
        on_error_message: Callable[[str], object],
        on_exit: Callable[[int | None], object],
    ) -> None:
        self.base_dir = base_dir
        self.runtime = runtime
        self.store = store
        self._on_output = on_output
        self._on_error_message = on_error_message
        self._on_exit = on_exit
        self._process: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = False
        self._stderr_partial = ""
        self._usage_lines: list[str] = []

    @property
    def is_running(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def marker_path(self) -> Path:
        return liveness_marker_path(self.runtime.worker.pid_files_dir, self.base_dir)

    def launch_spec(self) -> WorkerLaunchSpec:
        settings = self.store.get_settings()
        project_settings = self.store.get_project_settings(self.base_dir)
        worker = self.runtime.worker
        return WorkerLaunchSpec(
            program=worker.python_command,
            args=build_worker_args(
                worker_module=worker.worker_module,
                options=settings.worker.options,
                project_settings=project_settings,
                default_main_model=worker.default_main_model,
            ),
            cwd=Path(self.base_dir),
            env=build_worker_env(
                base_env=os.environ,
                environment_variables=settings.worker.environment_variables,
                connector_dir=worker.connector_dir,
                server_port=worker.server_port,
            ),
        )

    async def start(self) -> None:
        if self._process is not None:
            await self.stop()
        cleanup_stale_marker(self.marker_path)

        spec = self.launch_spec()
        logger.info("Running worker for %s with args: %s", self.base_dir, spec.args)
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            cwd=str(spec.cwd),
            env=spec.env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        self._process = process
        self._stopping = False
        self._stderr_partial = ""
        self._usage_lines = []
        self._write_marker(process.pid)
        self._tasks = [
            asyncio.create_task(self._pump(process.stdout, self._handle_stdout)),
            asyncio.create_task(
                self._pump(process.stderr, self._handle_stderr, self._flush_stderr),
            ),
            asyncio.create_task(self._watch_exit(process)),
        ]

    async def stop(self) -> None:
        """Kill the worker's process tree; failures other than "gone" propagate."""

        process = self._process
        if process is None:
            return
        logger.info("Killing worker %s for %s", process.pid, self.base_dir)
        self._stopping = True
        try:
            try:
                kill_process_tree(process.pid)
            except OSError as error:
                logger.error("Error killing worker process %s: %s", process.pid, error)
                raise WorkerProcessError(
                    f"Failed to kill worker process {process.pid}: {error}",
                    pid=process.pid,
                ) from error
            _remove_marker(self.marker_path)
            await process.wait()
        finally:
            self._process = None
            await self._cancel_tasks()

    def _write_marker(self, pid: int) -> None:
        marker_path = self.marker_path
        try:
            marker_path.parent.mkdir(parents=True, exist_ok=True)
            marker_path.write_text(str(pid), "utf-8")
        except OSError as error:
            logger.error("Failed to write worker marker %s: %s", marker_path, error)

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        handler: Callable[[str], None],
        on_eof: Callable[[], None] | None = None,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_CHUNK_BYTES)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    handler(tail)
                if on_eof is not None:
                    on_eof()
                return
            text = decoder.decode(data)
            if text:
                handler(text)

    def _handle_stdout(self, text: str) -> None:
        logger.debug("Worker output: %s", text)
        self._on_output(text)

    def _handle_stderr(self, text: str) -> None:
        """Classify complete stderr lines; a trailing partial line waits for more text."""

        *lines, self._stderr_partial = (self._stderr_partial + text).split("\n")
        for line in lines:
            self._handle_stderr_line(line)

    def _flush_stderr(self) -> None:
        partial, self._stderr_partial = self._stderr_partial, ""
        if partial:
            self._handle_stderr_line(partial)
        self._flush_usage()

    def _handle_stderr_line(self, line: str) -> None:
        line = line.rstrip("\r")
        if not line.strip():
            return
        # a usage block runs from its "usage:" line to the line carrying "error:"
        in_usage = bool(self._usage_lines) and not line.startswith(WARNING_MARKER)
        if line.startswith(USAGE_MARKER) or in_usage:
            self._usage_lines.append(line)
            if ERROR_TOKEN in line:
                self._flush_usage()
            return
        self._report_stderr(classify_stderr_line(line))

    def _flush_usage(self) -> None:
        if not self._usage_lines:
            return
        block = "\n".join(self._usage_lines)
        self._usage_lines = []
        self._report_stderr(classify_stderr_line(block))

    def _report_stderr(self, classification: StderrClassification) -> None:
        if classification.kind == StderrKind.WARNING:
            logger.debug("Worker warning: %s", classification.message)
        elif classification.kind == StderrKind.USAGE:
            logger.debug("Worker usage: %s", classification.message)
            self._on_error_message(classification.message)
        else:
            logger.error("Worker stderr for %s: %s", self.base_dir, classification.message)

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        logger.info("Worker process exited for %s with code %s", self.base_dir, code)
        if self._stopping or self._process is not process:
            return
        self._process = None
        _remove_marker(self.marker_path)
        self._on_exit(code)

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        self._tasks = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def _has_flag(args: list[str], flag: str) -> bool:
    return any(arg == flag or arg.startswith(f"{flag}=") for arg in args)


def _remove_marker(marker_path: Path) -> None:
    try:
        marker_path.unlink()
    except FileNotFoundError:
        return
    except OSError as error:
        logger.error("Failed to remove worker marker %s: %s", marker_path, error)
